# parksense_gateway/core/slot_control.py
"""Administrative slot actions issued from the control UI."""
import logging
import re
from typing import List, Optional

from .errors import RepositoryError
from .models import SlotRecord, SlotState
from .outcome import Err, ErrorKind, Ok, Outcome
from ..storage.repository_interface import SlotRepository

logger = logging.getLogger(__name__)

_SLOT_NUMBER = re.compile(r"^P(\d+)$", re.IGNORECASE)


def _number(name: str) -> Optional[int]:
    match = _SLOT_NUMBER.match(name.strip())
    return int(match.group(1)) if match else None


def next_slot_name(existing: List[str]) -> str:
    """P<n+1> after the highest numbered slot"""
    numbers = [n for n in (_number(name) for name in existing) if n is not None]
    return f"P{max(numbers, default=0) + 1}"


def _ordered(records: List[SlotRecord]) -> List[SlotRecord]:
    return sorted(records, key=lambda r: (_number(r.slot.name) is None, _number(r.slot.name) or 0, r.slot.name))


class SlotControl:
    """Creates, removes and resets slots through the repository"""

    def __init__(self, repository: SlotRepository, default_slot_count: int = 5, default_allowed_minutes: int = 60):
        self.repository = repository
        self.default_slot_count = default_slot_count
        self.default_allowed_minutes = default_allowed_minutes

    async def add_slot(self, initial_status: SlotState = SlotState.VACANT,
                       allowed_minutes: Optional[int] = None) -> Outcome[SlotRecord]:
        """Add a virtual slot named after the highest existing one"""
        if initial_status not in (SlotState.VACANT, SlotState.OCCUPIED):
            return Err(ErrorKind.INVALID, f"new slots start vacant or occupied, not {initial_status.value}")
        try:
            records = await self.repository.get_slots()
            name = next_slot_name([r.slot.name for r in records])
            record = await self.repository.add_slot(
                name,
                allowed_minutes=self.default_allowed_minutes if allowed_minutes is None else allowed_minutes,
                is_placeholder=True,
                status=initial_status,
            )
        except RepositoryError as e:
            logger.error(f"Failed to add slot: {e}")
            return Err(ErrorKind.PERSISTENCE, str(e))
        logger.info(f"Added slot {record.slot.name} ({initial_status.value})")
        return Ok(record)

    async def remove_last_slot(self) -> Outcome[str]:
        """Delete the highest numbered slot"""
        try:
            records = await self.repository.get_slots()
            if not records:
                return Err(ErrorKind.UNKNOWN_SLOT, "No slots to remove")
            last = _ordered(records)[-1]
            await self.repository.delete_slot(last.slot.id)
        except RepositoryError as e:
            logger.error(f"Failed to remove slot: {e}")
            return Err(ErrorKind.PERSISTENCE, str(e))
        logger.info(f"Removed slot {last.slot.name}")
        return Ok(last.slot.name)

    async def reset_slots(self) -> Outcome[List[str]]:
        """Replace every slot with P1..Pn, all vacant"""
        try:
            for record in await self.repository.get_slots():
                await self.repository.delete_slot(record.slot.id)
            names = []
            for i in range(1, self.default_slot_count + 1):
                record = await self.repository.add_slot(f"P{i}", allowed_minutes=self.default_allowed_minutes)
                names.append(record.slot.name)
        except RepositoryError as e:
            logger.error(f"Failed to reset slots: {e}")
            return Err(ErrorKind.PERSISTENCE, str(e))
        logger.info(f"Reset slots to {names}")
        return Ok(names)

    async def vacate_all(self) -> Outcome[int]:
        """Clear every occupied/overtime slot without billing"""
        try:
            count = await self.repository.vacate_all()
        except RepositoryError as e:
            logger.error(f"Failed to vacate slots: {e}")
            return Err(ErrorKind.PERSISTENCE, str(e))
        logger.info(f"Vacated {count} slot(s)")
        return Ok(count)

    async def set_disabled(self, slot_id: str, disabled: bool) -> Outcome[bool]:
        try:
            await self.repository.set_slot_disabled(slot_id, disabled)
        except RepositoryError as e:
            logger.error(f"Failed to {'disable' if disabled else 'enable'} slot {slot_id}: {e}")
            return Err(ErrorKind.PERSISTENCE, str(e))
        return Ok(disabled)
