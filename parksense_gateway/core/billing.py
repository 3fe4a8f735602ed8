# parksense_gateway/core/billing.py
"""
Billing policies.

Two pricing models exist for ParkSense deployments and either may be
selected by configuration:

* flat:   a one-time fee, replaced by a larger one-time fee once the stay
          exceeds the threshold.
* hourly: pro-rata accrual at the base hourly rate up to the threshold,
          then at the overtime hourly rate for the remainder.

Amounts are Decimals rounded half-up to the cent.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Union
import logging

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
MINUTES_PER_HOUR = Decimal(60)

Number = Union[int, float, str, Decimal]


def _money(value: Number) -> Decimal:
    return Decimal(str(value))


def round_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class BillingResult:
    amount: Decimal
    is_overtime: bool


class BillingPolicy(ABC):
    """Maps a stay length in minutes to a charge"""

    def __init__(self, threshold_minutes: int):
        if threshold_minutes < 0:
            raise ValueError("threshold_minutes must be non-negative")
        self.threshold_minutes = threshold_minutes

    def calculate(self, elapsed_minutes: int, threshold: Optional[int] = None) -> BillingResult:
        """
        Charge for a stay of elapsed_minutes.

        threshold overrides the policy default (the recorder passes the
        slot's allowed_minutes). Negative durations from clock skew are
        billed as zero minutes.
        """
        elapsed = max(0, int(elapsed_minutes))
        limit = self.threshold_minutes if threshold is None else max(0, int(threshold))
        is_overtime = elapsed > limit
        amount = self._amount(elapsed, limit, is_overtime)
        return BillingResult(amount=round_cents(amount), is_overtime=is_overtime)

    @abstractmethod
    def _amount(self, elapsed: int, threshold: int, is_overtime: bool) -> Decimal:
        pass

    @abstractmethod
    def describe(self) -> Dict[str, Any]:
        pass


class FlatFeePolicy(BillingPolicy):
    """One-time fee; the overtime fee replaces the base fee"""

    def __init__(self, base_fee: Number = 25, overtime_fee: Number = 100, threshold_minutes: int = 120):
        super().__init__(threshold_minutes)
        self.base_fee = _money(base_fee)
        self.overtime_fee = _money(overtime_fee)

    def _amount(self, elapsed: int, threshold: int, is_overtime: bool) -> Decimal:
        return self.overtime_fee if is_overtime else self.base_fee

    def describe(self) -> Dict[str, Any]:
        return {
            "policy": "flat",
            "base_fee": str(self.base_fee),
            "overtime_fee": str(self.overtime_fee),
            "threshold_minutes": self.threshold_minutes,
        }


class HourlyAccrualPolicy(BillingPolicy):
    """Pro-rata hourly charge with a higher rate past the threshold"""

    def __init__(self, rate_per_hour: Number = 25, overtime_rate_per_hour: Number = 100,
                 threshold_minutes: int = 180):
        super().__init__(threshold_minutes)
        self.rate_per_hour = _money(rate_per_hour)
        self.overtime_rate_per_hour = _money(overtime_rate_per_hour)

    def _amount(self, elapsed: int, threshold: int, is_overtime: bool) -> Decimal:
        if not is_overtime:
            return Decimal(elapsed) / MINUTES_PER_HOUR * self.rate_per_hour
        regular = Decimal(threshold) / MINUTES_PER_HOUR * self.rate_per_hour
        extra = Decimal(elapsed - threshold) / MINUTES_PER_HOUR * self.overtime_rate_per_hour
        return regular + extra

    def describe(self) -> Dict[str, Any]:
        return {
            "policy": "hourly",
            "rate_per_hour": str(self.rate_per_hour),
            "overtime_rate_per_hour": str(self.overtime_rate_per_hour),
            "threshold_minutes": self.threshold_minutes,
        }


def create_billing_policy(policy: str, *, base_fee: Number = 25, overtime_fee: Number = 100,
                          rate_per_hour: Number = 25, overtime_rate_per_hour: Number = 100,
                          threshold_minutes: int = 120) -> BillingPolicy:
    """Build the policy named by configuration"""
    name = policy.strip().lower()
    if name == "flat":
        billing = FlatFeePolicy(base_fee, overtime_fee, threshold_minutes)
    elif name == "hourly":
        billing = HourlyAccrualPolicy(rate_per_hour, overtime_rate_per_hour, threshold_minutes)
    else:
        raise ValueError(f"Unknown billing policy: {policy}")
    logger.info(f"Billing policy: {billing.describe()}")
    return billing
