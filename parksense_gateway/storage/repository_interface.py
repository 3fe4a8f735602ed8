# parksense_gateway/storage/repository_interface.py
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..core.models import (
    CommandStatus,
    DeviceCommandRow,
    DeviceLinkState,
    ParkingSession,
    SensorSample,
    SlotRecord,
    SlotState,
)

SLOTS_TABLE = "parking_slots"
STATUS_TABLE = "slot_status"
SESSIONS_TABLE = "parking_sessions"
DEVICE_TABLE = "device_status"
SENSOR_TABLE = "sensor_readings"
COMMANDS_TABLE = "device_commands"

ChangeCallback = Callable[[str], None]
Unsubscribe = Callable[[], None]


class SlotRepository(ABC):
    """Abstract interface for slot/session persistence backends"""

    async def initialize(self):
        """Open connections; default is a no-op"""
        pass

    async def close(self):
        """Release connections and stop subscriptions; default is a no-op"""
        pass

    @abstractmethod
    async def get_slots(self) -> List[SlotRecord]:
        """All slots with their current status, ordered by name"""
        pass

    @abstractmethod
    async def update_status(self, slot_id: str, status: SlotState, occupied_since: Optional[datetime],
                            updated_at: Optional[datetime] = None):
        """Overwrite a slot's status row"""
        pass

    @abstractmethod
    async def insert_session(self, session: ParkingSession) -> ParkingSession:
        """Persist one completed parking session"""
        pass

    @abstractmethod
    async def list_sessions(self, limit: int = 50) -> List[ParkingSession]:
        """Most recent sessions first"""
        pass

    @abstractmethod
    async def add_slot(self, name: str, allowed_minutes: int = 60, is_placeholder: bool = False,
                       status: SlotState = SlotState.VACANT) -> SlotRecord:
        """Create a slot and its status row"""
        pass

    @abstractmethod
    async def delete_slot(self, slot_id: str) -> bool:
        """Delete a slot and its status row; sessions keep their slot_name"""
        pass

    @abstractmethod
    async def set_slot_disabled(self, slot_id: str, disabled: bool):
        """Flip a slot in or out of service"""
        pass

    @abstractmethod
    async def vacate_all(self) -> int:
        """Mark every occupied/overtime slot vacant; returns how many changed"""
        pass

    @abstractmethod
    async def upsert_device_status(self, state: DeviceLinkState):
        """Store the sensor unit's link state"""
        pass

    @abstractmethod
    async def insert_sensor_reading(self, sample: SensorSample):
        """Store a raw sensor reading"""
        pass

    @abstractmethod
    async def insert_command(self, slot_id: Optional[str], command_type: str,
                             payload: Optional[Dict[str, Any]] = None) -> DeviceCommandRow:
        """Queue a pending device command"""
        pass

    @abstractmethod
    async def get_pending_commands(self, limit: int = 20) -> List[DeviceCommandRow]:
        """Pending device commands, oldest first"""
        pass

    @abstractmethod
    async def update_command(self, command_id: str, status: CommandStatus, response: Optional[str] = None,
                             executed_at: Optional[datetime] = None):
        """Move a device command to a new status"""
        pass

    @abstractmethod
    def subscribe(self, table: str, on_change: ChangeCallback) -> Unsubscribe:
        """Call on_change(table) whenever the table changes; returns an unsubscribe callable"""
        pass
