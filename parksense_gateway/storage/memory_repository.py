# parksense_gateway/storage/memory_repository.py
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.errors import RepositoryError
from ..core.models import (
    CommandStatus,
    DeviceCommandRow,
    DeviceLinkState,
    ParkingSession,
    SensorSample,
    Slot,
    SlotRecord,
    SlotState,
    SlotStatus,
    utc_now,
)
from .repository_interface import (
    COMMANDS_TABLE,
    DEVICE_TABLE,
    SENSOR_TABLE,
    SESSIONS_TABLE,
    SLOTS_TABLE,
    STATUS_TABLE,
    ChangeCallback,
    SlotRepository,
    Unsubscribe,
)

logger = logging.getLogger(__name__)


class MemorySlotRepository(SlotRepository):
    """
    In-process repository
    Used for offline runs and as the test double for the cloud store
    """

    def __init__(self):
        self.slots: Dict[str, Slot] = {}
        self.statuses: Dict[str, SlotStatus] = {}
        self.sessions: List[ParkingSession] = []
        self.device_states: Dict[str, DeviceLinkState] = {}
        self.sensor_readings: List[SensorSample] = []
        self.commands: Dict[str, DeviceCommandRow] = {}
        self._subscribers: Dict[str, List[ChangeCallback]] = {}

    async def get_slots(self) -> List[SlotRecord]:
        records = [
            SlotRecord(slot=slot, status=self.statuses.get(slot_id) or SlotStatus())
            for slot_id, slot in self.slots.items()
        ]
        return sorted(records, key=lambda r: r.slot.name)

    async def update_status(self, slot_id: str, status: SlotState, occupied_since: Optional[datetime],
                            updated_at: Optional[datetime] = None):
        if slot_id not in self.slots:
            raise RepositoryError("update_status", f"slot {slot_id} not found", 404)
        self.statuses[slot_id] = SlotStatus(
            status=status,
            occupied_since=occupied_since,
            updated_at=updated_at or utc_now(),
        )
        self._notify(STATUS_TABLE)

    async def insert_session(self, session: ParkingSession) -> ParkingSession:
        if any(existing.id == session.id for existing in self.sessions):
            raise RepositoryError("insert_session", f"duplicate id {session.id}", 409)
        self.sessions.append(session)
        self._notify(SESSIONS_TABLE)
        return session

    async def list_sessions(self, limit: int = 50) -> List[ParkingSession]:
        ordered = sorted(self.sessions, key=lambda s: s.ended_at, reverse=True)
        return ordered[:limit]

    async def add_slot(self, name: str, allowed_minutes: int = 60, is_placeholder: bool = False,
                       status: SlotState = SlotState.VACANT) -> SlotRecord:
        if any(slot.name.casefold() == name.casefold() for slot in self.slots.values()):
            raise RepositoryError("add_slot", f"slot name {name} already in use", 409)
        slot = Slot(
            id=str(uuid.uuid4()),
            name=name,
            allowed_minutes=allowed_minutes,
            is_disabled=(status == SlotState.DISABLED),
            is_placeholder=is_placeholder,
        )
        now = utc_now()
        slot_status = SlotStatus(
            status=status,
            occupied_since=now if status.is_active else None,
            updated_at=now,
        )
        self.slots[slot.id] = slot
        self.statuses[slot.id] = slot_status
        self._notify(SLOTS_TABLE)
        return SlotRecord(slot=slot, status=slot_status)

    async def delete_slot(self, slot_id: str) -> bool:
        if slot_id not in self.slots:
            return False
        del self.slots[slot_id]
        self.statuses.pop(slot_id, None)
        # Sessions survive their slot
        self.sessions = [
            s.model_copy(update={"slot_id": None}) if s.slot_id == slot_id else s
            for s in self.sessions
        ]
        self._notify(SLOTS_TABLE)
        return True

    async def set_slot_disabled(self, slot_id: str, disabled: bool):
        slot = self.slots.get(slot_id)
        if slot is None:
            raise RepositoryError("set_slot_disabled", f"slot {slot_id} not found", 404)
        self.slots[slot_id] = slot.model_copy(update={"is_disabled": disabled})
        self.statuses[slot_id] = SlotStatus(status=SlotState.DISABLED if disabled else SlotState.VACANT)
        self._notify(SLOTS_TABLE)

    async def vacate_all(self) -> int:
        count = 0
        now = utc_now()
        for slot_id, status in list(self.statuses.items()):
            if status.status.is_active:
                self.statuses[slot_id] = SlotStatus(status=SlotState.VACANT, updated_at=now)
                count += 1
        if count:
            self._notify(STATUS_TABLE)
        return count

    async def upsert_device_status(self, state: DeviceLinkState):
        self.device_states[state.device_id] = state
        self._notify(DEVICE_TABLE)

    async def insert_sensor_reading(self, sample: SensorSample):
        self.sensor_readings.append(sample)
        self._notify(SENSOR_TABLE)

    async def insert_command(self, slot_id: Optional[str], command_type: str,
                             payload: Optional[Dict[str, Any]] = None) -> DeviceCommandRow:
        command = DeviceCommandRow(slot_id=slot_id, command_type=command_type, payload=payload or {})
        self.commands[command.id] = command
        self._notify(COMMANDS_TABLE)
        return command

    async def get_pending_commands(self, limit: int = 20) -> List[DeviceCommandRow]:
        pending = [c for c in self.commands.values() if c.status == CommandStatus.PENDING]
        return sorted(pending, key=lambda c: c.created_at)[:limit]

    async def update_command(self, command_id: str, status: CommandStatus, response: Optional[str] = None,
                             executed_at: Optional[datetime] = None):
        command = self.commands.get(command_id)
        if command is None:
            raise RepositoryError("update_command", f"command {command_id} not found", 404)
        self.commands[command_id] = command.model_copy(
            update={"status": status, "response": response, "executed_at": executed_at}
        )
        self._notify(COMMANDS_TABLE)

    def subscribe(
self, table: str, on_change: ChangeCallback) -> Unsubscribe:
        self._subscribers.setdefault(table, []).append(on_change)

        def unsubscribe():
            callbacks = self._subscribers.get(table, [])
            if on_change in callbacks:
                callbacks.remove(on_change)

        return unsubscribe

    def _notify(self, table: str):
        for callback in list(self._subscribers.get(table, [])):
            try:
                callback(table)
            except Exception as e:
                logger.error(f"Change callback for {table} failed: {e}")
