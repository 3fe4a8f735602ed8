# parksense_gateway/storage/supabase_repository.py
import asyncio
import hashlib
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import ValidationError

from ..core.errors import RepositoryError
from ..core.models import (
    CommandStatus,
    DeviceCommandRow,
    DeviceLinkState,
    ParkingSession,
    SensorSample,
    SlotRecord,
    SlotState,
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


class _TableWatcher:
    """Polls one table and fires callbacks when its contents change"""

    def __init__(self, repository: "SupabaseSlotRepository", table: str, interval: float):
        self.repository = repository
        self.table = table
        self.interval = interval
        self.callbacks: List[ChangeCallback] = []
        self.task: Optional[asyncio.Task] = None
        self._fingerprint: Optional[str] = None

    def start(self):
        if self.task is None or self.task.done():
            self.task = asyncio.ensure_future(self._poll())

    async def stop(self):
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None

    async def _poll(self):
        logger.info(f"Watching {self.table} every {self.interval}s")
        while True:
            try:
                rows = await self.repository._request("GET", self.table, params={"select": "*"},
                                                      operation=f"watch {self.table}")
                fingerprint = hashlib.sha1(
                    json.dumps(rows, sort_keys=True, default=str).encode("utf-8")
                ).hexdigest()
                if self._fingerprint is not None and fingerprint != self._fingerprint:
                    logger.debug(f"Change detected in {self.table}")
                    for callback in list(self.callbacks):
                        try:
                            callback(self.table)
                        except Exception as e:
                            logger.error(f"Change callback for {self.table} failed: {e}")
                self._fingerprint = fingerprint
            except RepositoryError as e:
                logger.warning(f"Polling {self.table} failed: {e}")
            await asyncio.sleep(self.interval)


class SupabaseSlotRepository(SlotRepository):
    """
    Slot repository backed by Supabase (PostgREST over HTTPS)
    Change subscriptions are implemented by polling each watched table
    """

    def __init__(self, url: str, api_key: str, poll_interval: float = 5.0, timeout: float = 10.0):
        self.base_url = url.rstrip("/") + "/rest/v1"
        self.api_key = api_key
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None
        self._watchers: Dict[str, _TableWatcher] = {}

    async def initialize(self):
        """Open the HTTP session"""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                headers={
                    "apikey": self.api_key,
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            logger.info(f"Supabase repository ready at {self.base_url}")

    async def close(self):
        """Stop watchers and close the HTTP session"""
        for watcher in self._watchers.values():
            await watcher.stop()
        self._watchers.clear()
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    async def get_slots(self) -> List[SlotRecord]:
        rows = await self._request(
            "GET", SLOTS_TABLE,
            params={"select": "*,slot_status(*)", "order": "name.asc"},
            operation="get_slots",
        )
        records = []
        for row in rows or []:
            try:
                records.append(SlotRecord.from_row(row))
            except (ValidationError, KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed slot row {row.get('id')}: {e}")
        return records

    async def update_status(self, slot_id: str, status: SlotState, occupied_since: Optional[datetime],
                            updated_at: Optional[datetime] = None):
        body = {
            "status": status.value,
            "occupied_since": occupied_since.isoformat() if occupied_since else None,
            "updated_at": (updated_at or utc_now()).isoformat(),
        }
        await self._request("PATCH", STATUS_TABLE, params={"slot_id": f"eq.{slot_id}"}, json_body=body,
                            operation="update_status")

    async def insert_session(self, session: ParkingSession) -> ParkingSession:
        rows = await self._request("POST", SESSIONS_TABLE, json_body=session.to_row(),
                                   prefer="return=representation", operation="insert_session")
        if rows:
            try:
                return ParkingSession.model_validate(rows[0])
            except ValidationError as e:
                logger.warning(f"Stored session {session.id} came back malformed: {e}")
        return session

    async def list_sessions(self, limit: int = 50) -> List[ParkingSession]:
        rows = await self._request(
            "GET", SESSIONS_TABLE,
            params={"order": "ended_at.desc", "limit": str(limit)},
            operation="list_sessions",
        )
        sessions = []
        for row in rows or []:
            try:
                sessions.append(ParkingSession.model_validate(row))
            except ValidationError as e:
                logger.warning(f"Skipping malformed session row {row.get('id')}: {e}")
        return sessions

    async def add_slot(self, name: str, allowed_minutes: int = 60, is_placeholder: bool = False,
                       status: SlotState = SlotState.VACANT) -> SlotRecord:
        slot_id = str(uuid.uuid4())
        now = utc_now()
        slot_row = {
            "id": slot_id,
            "name": name,
            "allowed_minutes": allowed_minutes,
            "is_disabled": status == SlotState.DISABLED,
            "is_placeholder": is_placeholder,
        }
        status_row = {
            "id": str(uuid.uuid4()),
            "slot_id": slot_id,
            "status": status.value,
            "occupied_since": now.isoformat() if status.is_active else None,
            "updated_at": now.isoformat(),
        }
        await self._request("POST", SLOTS_TABLE, json_body=slot_row, prefer="return=representation",
                            operation="add_slot")
        await self._request("POST", STATUS_TABLE, json_body=status_row, prefer="return=representation",
                            operation="add_slot_status")
        return SlotRecord.from_row({**slot_row, "slot_status": status_row})

    async def delete_slot(self, slot_id: str) -> bool:
        # Status first, it references the slot
        await self._request("DELETE", STATUS_TABLE, params={"slot_id": f"eq.{slot_id}"},
                            operation="delete_slot_status")
        rows = await self._request("DELETE", SLOTS_TABLE, params={"id": f"eq.{slot_id}"},
                                   prefer="return=representation", operation="delete_slot")
        return bool(rows)

    async def set_slot_disabled(self, slot_id: str, disabled: bool):
        await self._request("PATCH", SLOTS_TABLE, params={"id": f"eq.{slot_id}"},
                            json_body={"is_disabled": disabled}, operation="set_slot_disabled")
        await self.update_status(slot_id, SlotState.DISABLED if disabled else SlotState.VACANT, None)

    async def vacate_all(self) -> int:
        body = {"status": SlotState.VACANT.value, "occupied_since": None, "updated_at": utc_now().isoformat()}
        rows = await self._request("PATCH", STATUS_TABLE, params={"status": "in.(occupied,overtime)"},
                                   json_body=body, prefer="return=representation", operation="vacate_all")
        return len(rows or [])

    async def upsert_device_status(self, state: DeviceLinkState):
        await self._request("POST", DEVICE_TABLE, params={"on_conflict": "device_id"}, json_body=state.to_row(),
                            prefer="resolution=merge-duplicates", operation="upsert_device_status")

    async def insert_sensor_reading(self, sample: SensorSample):
        await self._request("POST", SENSOR_TABLE, json_body=sample.to_row(), operation="insert_sensor_reading")

    async def insert_command(self, slot_id: Optional[str], command_type: str,
                             payload: Optional[Dict[str, Any]] = None) -> DeviceCommandRow:
        command = DeviceCommandRow(slot_id=slot_id, command_type=command_type, payload=payload or {})
        rows = await self._request("POST", COMMANDS_TABLE, json_body=command.to_row(),
                                   prefer="return=representation", operation="insert_command")
        if rows:
            try:
                return DeviceCommandRow.model_validate(rows[0])
            except ValidationError as e:
                logger.warning(f"Stored command {command.id} came back malformed: {e}")
        return command

    async def get_pending_commands(self, limit: int = 20) -> List[DeviceCommandRow]:
        rows = await self._request(
            "GET", COMMANDS_TABLE,
            params={
                "select": "*",
                "status": f"eq.{CommandStatus.PENDING.value}",
                "order": "created_at.asc",
                "limit": str(limit),
            },
            operation="get_pending_commands",
        )
        commands = []
        for row in rows or []:
            try:
                commands.append(DeviceCommandRow.model_validate(row))
            except ValidationError as e:
                logger.warning(f"Skipping malformed command row {row.get('id')}: {e}")
        return commands

    async def update_command(self, command_id: str, status: CommandStatus, response: Optional[str] = None,
                             executed_at: Optional[datetime] = None):
        body = {
            "status": status.value,
            "response": response,
            "executed_at": executed_at.isoformat() if executed_at else None,
        }
        await self._request("PATCH", COMMANDS_TABLE, params={"id": f"eq.{command_id}"}, json_body=body,
                            operation="update_command")

    def subscribe(
self, table: str, on_change: ChangeCallback) -> Unsubscribe:
        watcher = self._watchers.get(table)
        if watcher is None:
            watcher = _TableWatcher(self, table, self.poll_interval)
            self._watchers[table] = watcher
        watcher.callbacks.append(on_change)
        watcher.start()

        def unsubscribe():
            if on_change in watcher.callbacks:
                watcher.callbacks.remove(on_change)

        return unsubscribe

    async def _request(self, method: str, table: str, params: Optional[Dict[str, str]] = None,
                       json_body: Optional[Dict[str, Any]] = None, prefer: Optional[str] = None,
                       operation: str = "request") -> Any:
        """Issue one PostgREST call; every failure surfaces as RepositoryError"""
        if self.session is None or self.session.closed:
            await self.initialize()

        headers = {"Prefer": prefer} if prefer else None
        url = f"{self.base_url}/{table}"
        try:
            async with self.session.request(method, url, params=params, json=json_body, headers=headers) as resp:
                text = await resp.text()
                if resp.status >= 400:
                    raise RepositoryError(operation, f"HTTP {resp.status}: {text[:200]}", resp.status)
                if not text:
                    return None
                return json.loads(text)
        except aiohttp.ClientError as e:
            raise RepositoryError(operation, str(e)) from e
        except asyncio.TimeoutError as e:
            raise RepositoryError(operation, "timed out") from e
        except json.JSONDecodeError as e:
            raise RepositoryError(operation, f"invalid JSON response: {e}") from e
