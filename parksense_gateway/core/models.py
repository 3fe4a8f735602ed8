# parksense_gateway/core/models.py
"""
Record types shared by the state machine, the recorder and the repositories.

Persistent rows are pydantic models validated at construction; the local
per-slot mirror kept by the state machine is a frozen dataclass.
"""
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
DEFAULT_ALLOWED_MINUTES = 60


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SlotState(str, Enum):
    """Occupancy state of a slot"""
    VACANT = "vacant"
    OCCUPIED = "occupied"
    OVERTIME = "overtime"
    DISABLED = "disabled"

    @property
    def is_active(self) -> bool:
        """True while a vehicle is parked (occupied_since must be set)"""
        return self in (SlotState.OCCUPIED, SlotState.OVERTIME)


class Slot(BaseModel):
    """A named parking space (parking_slots row)"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Opaque slot identifier")
    name: str = Field(..., min_length=1, description="Label shared with the device, e.g. P1")
    allowed_minutes: int = Field(DEFAULT_ALLOWED_MINUTES, ge=0, description="Free minutes before overtime")
    is_disabled: bool = Field(False, description="Ignore device occupancy traffic")
    is_placeholder: bool = Field(False, description="Virtual slot created from the control UI")


class SlotStatus(BaseModel):
    """Current occupancy of a slot (slot_status row)"""
    model_config = ConfigDict(frozen=True)

    status: SlotState = SlotState.VACANT
    occupied_since: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("occupied_since", "updated_at")
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _check_occupied_since(self) -> "SlotStatus":
        if self.status.is_active and self.occupied_since is None:
            raise ValueError(f"status {self.status.value} requires occupied_since")
        if not self.status.is_active and self.occupied_since is not None:
            raise ValueError(f"status {self.status.value} must not carry occupied_since")
        return self


class SlotRecord(BaseModel):
    """Slot together with its status, as returned by get_slots()"""
    model_config = ConfigDict(frozen=True)

    slot: Slot
    status: SlotStatus

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SlotRecord":
        """
        Build from a parking_slots row with an embedded slot_status.

        Rows written by older clients are normalised rather than rejected:
        an occupied/overtime status without occupied_since starts at the
        row's updated_at, and a missing allowed_minutes takes the default.
        """
        status_row = row.get("slot_status")
        # PostgREST embeds one-to-one relations as an object or a one-item list
        if isinstance(status_row, list):
            status_row = status_row[0] if status_row else None

        allowed_minutes = row.get("allowed_minutes")
        slot = Slot(
            id=str(row["id"]),
            name=row["name"],
            allowed_minutes=DEFAULT_ALLOWED_MINUTES if allowed_minutes is None else allowed_minutes,
            is_disabled=bool(row.get("is_disabled", False)),
            is_placeholder=bool(row.get("is_placeholder", False)),
        )
        if status_row:
            state = SlotState(status_row.get("status") or SlotState.VACANT.value)
            updated_at = status_row.get("updated_at") or EPOCH
            occupied_since = None
            if state.is_active:
                occupied_since = status_row.get("occupied_since") or updated_at
            status = SlotStatus(status=state, occupied_since=occupied_since, updated_at=updated_at)
        else:
            status = SlotStatus(status=SlotState.VACANT, updated_at=EPOCH)
        return cls(slot=slot, status=status)


class ParkingSession(BaseModel):
    """Immutable record of one completed occupancy cycle"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    slot_id: Optional[str] = None
    slot_name: str = Field(..., min_length=1)
    started_at: datetime
    ended_at: datetime
    duration_minutes: int = Field(..., ge=0)
    amount_charged: Decimal = Field(..., ge=0, decimal_places=2)
    was_overtime: bool
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("started_at", "ended_at", "created_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_serializer("amount_charged")
    def _serialize_amount(self, value: Decimal) -> float:
        return float(value)

    def to_row(self) -> Dict[str, Any]:
        """Serialize for a parking_sessions insert"""
        return self.model_dump(mode="json")


class DeviceLinkState(BaseModel):
    """Connection quality of the sensor unit (device_status row)"""
    model_config = ConfigDict(frozen=True)

    device_id: str
    is_connected: bool = False
    rssi: Optional[int] = None
    last_ping: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utc_now)

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class CommandType(str, Enum):
    """Commands the control UI queues in device_commands"""
    PING_LED_5X = "PING_LED_5X"
    DISABLE_SLOT = "DISABLE_SLOT"
    ENABLE_SLOT = "ENABLE_SLOT"


class CommandStatus(str, Enum):
    """Lifecycle of a device_commands row"""
    PENDING = "pending"
    SENT = "sent"
    EXECUTED = "executed"
    FAILED = "failed"


class DeviceCommandRow(BaseModel):
    """
    A command queued for the sensor unit (device_commands row)

    command_type stays a plain string so rows with a type this gateway does
    not know can still be loaded and marked failed.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    slot_id: Optional[str] = None
    command_type: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: CommandStatus = CommandStatus.PENDING
    response: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    executed_at: Optional[datetime] = None

    @field_validator("payload", mode="before")
    @classmethod
    def _payload(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("created_at", "executed_at")
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class SensorSample(BaseModel):
    """Raw photoresistor reading for a slot (sensor_readings row)"""
    model_config = ConfigDict(frozen=True)

    slot_id: Optional[str] = None
    slot_name: str
    value: int
    is_occupied: bool
    created_at: datetime = Field(default_factory=utc_now)

    def to_row(self) -> Dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "photoresistor_value": self.value,
            "is_occupied": self.is_occupied,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class SlotSnapshot:
    """Local mirror of one slot, keyed by name in the slot registry"""
    slot_id: str
    name: str
    allowed_minutes: int
    status: SlotState = SlotState.VACANT
    occupied_since: Optional[datetime] = None
    updated_at: datetime = EPOCH

    @classmethod
    def from_record(cls, record: SlotRecord) -> "SlotSnapshot":
        status = record.status.status
        occupied_since = record.status.occupied_since
        if record.slot.is_disabled and status != SlotState.DISABLED:
            status, occupied_since = SlotState.DISABLED, None
        return cls(
            slot_id=record.slot.id,
            name=record.slot.name,
            allowed_minutes=record.slot.allowed_minutes,
            status=status,
            occupied_since=occupied_since,
            updated_at=record.status.updated_at,
        )

    def moved_to(self, status: SlotState, occupied_since: Optional[datetime], now: datetime) -> "SlotSnapshot":
        return replace(self, status=status, occupied_since=occupied_since, updated_at=now)

    def elapsed_minutes(self, now: datetime) -> int:
        if self.occupied_since is None:
            return 0
        return max(0, int((now - self.occupied_since).total_seconds() // 60))

    def to_payload(self) -> Dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "slot_name": self.name,
            "status": self.status.value,
            "occupied_since": self.occupied_since.isoformat() if self.occupied_since else None,
            "allowed_minutes": self.allowed_minutes,
            "updated_at": self.updated_at.isoformat(),
        }
