"""
Shared fakes and builders for the gateway tests.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from parksense_gateway.core.device_connection import ConnectionStatus, DeviceConnection
from parksense_gateway.core.errors import ConnectionLostError
from parksense_gateway.core.models import EPOCH, Slot, SlotRecord, SlotSnapshot, SlotState, SlotStatus

T0 = datetime(2030, 1, 1, 8, 0, tzinfo=timezone.utc)

_LOST = object()


class FakeClock:
    """Manually advanced clock, callable like utc_now"""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> datetime:
        self.now = self.now + timedelta(minutes=minutes, seconds=seconds)
        return self.now


class FakeConnection(DeviceConnection):
    """In-memory byte stream standing in for the serial link"""

    def __init__(self, connection_id: str = "fake", config: Optional[Dict[str, Any]] = None):
        super().__init__(connection_id, {"read_timeout": 0.01, "max_retries": 2, "retry_delay": 0, **(config or {})})
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.written: List[bytes] = []
        self.connect_results: List[bool] = []
        self.connect_calls = 0
        self.disconnect_calls = 0

    async def connect(self) -> bool:
        self.connect_calls += 1
        ok = self.connect_results.pop(0) if self.connect_results else True
        self.status = ConnectionStatus.CONNECTED if ok else ConnectionStatus.ERROR
        return ok

    async def disconnect(self) -> bool:
        self.disconnect_calls += 1
        self.status = ConnectionStatus.DISCONNECTED
        return True

    async def read_chunk(self) -> Optional[bytes]:
        if self.status != ConnectionStatus.CONNECTED:
            raise ConnectionLostError(self.connection_id, "not connected")
        try:
            item = await asyncio.wait_for(self.inbound.get(), timeout=self.read_timeout)
        except asyncio.TimeoutError:
            return None
        if item is _LOST:
            self.status = ConnectionStatus.ERROR
            raise ConnectionLostError(self.connection_id, "EOF")
        return item

    async def write(self, data: bytes) -> bool:
        if self.status != ConnectionStatus.CONNECTED:
            return False
        self.written.append(data)
        return True

    def feed(self, *chunks: bytes):
        for chunk in chunks:
            self.inbound.put_nowait(chunk)

    def drop(self):
        self.inbound.put_nowait(_LOST)

    @classmethod
    def get_connection_info(cls) -> Dict[str, Any]:
        return {"type": "fake"}

    @classmethod
    def get_default_config(cls) -> Dict[str, Any]:
        return {}


def make_record(name: str = "P1", status: SlotState = SlotState.VACANT, occupied_since: Optional[datetime] = None,
                allowed_minutes: int = 60, slot_id: Optional[str] = None, updated_at: datetime = EPOCH,
                is_disabled: bool = False) -> SlotRecord:
    if status.is_active and occupied_since is None:
        occupied_since = T0
    return SlotRecord(
        slot=Slot(id=slot_id or f"id-{name}", name=name, allowed_minutes=allowed_minutes, is_disabled=is_disabled),
        status=SlotStatus(status=status, occupied_since=occupied_since, updated_at=updated_at),
    )


def make_snapshot(name: str = "P1", status: SlotState = SlotState.VACANT, occupied_since: Optional[datetime] = None,
                  allowed_minutes: int = 60) -> SlotSnapshot:
    if status.is_active and occupied_since is None:
        occupied_since = T0
    return SlotSnapshot(
        slot_id=f"id-{name}",
        name=name,
        allowed_minutes=allowed_minutes,
        status=status,
        occupied_since=occupied_since,
    )


async def seed(repository, *names: str, allowed_minutes: int = 60) -> Dict[str, SlotRecord]:
    """Add slots to a repository, returning them by name"""
    records = {}
    for name in names:
        records[name] = await repository.add_slot(name, allowed_minutes=allowed_minutes)
    return records
