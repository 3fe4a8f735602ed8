"""
Tests for the Supabase (PostgREST) repository with the HTTP layer mocked.
"""

import unittest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import aiohttp

from parksense_gateway.core.errors import RepositoryError
from parksense_gateway.core.events import SlotOccupancy
from parksense_gateway.core.models import CommandStatus, DeviceLinkState, SlotRecord, SlotState
from parksense_gateway.core.occupancy import OccupancyStateMachine
from parksense_gateway.storage.supabase_repository import SupabaseSlotRepository

from tests.common import T0

SLOT_ROW = {
    "id": "7b1c",
    "name": "P1",
    "allowed_minutes": 60,
    "is_disabled": False,
    "is_placeholder": False,
    "slot_status": [{
        "id": "s1",
        "slot_id": "7b1c",
        "status": "occupied",
        "occupied_since": "2030-01-01T08:00:00+00:00",
        "updated_at": "2030-01-01T08:00:05+00:00",
    }],
}


def fake_session(status=200, body="[]"):
    response = MagicMock()
    response.status = status
    response.text = AsyncMock(return_value=body)
    session = MagicMock()
    session.closed = False
    session.request.return_value.__aenter__.return_value = response
    return session


class TestSlotRecordFromRow(unittest.TestCase):

    def test_embedded_status_list(self):
        record = SlotRecord.from_row(SLOT_ROW)
        self.assertEqual(record.slot.id, "7b1c")
        self.assertEqual(record.status.status, SlotState.OCCUPIED)
        self.assertEqual(record.status.occupied_since, T0)

    def test_missing_status_defaults_to_vacant(self):
        record = SlotRecord.from_row({"id": 3, "name": "P3", "allowed_minutes": None, "slot_status": []})
        self.assertEqual(record.slot.id, "3")
        self.assertEqual(record.slot.allowed_minutes, 60)
        self.assertEqual(record.status.status, SlotState.VACANT)

    def test_zero_allowed_minutes_kept(self):
        record = SlotRecord.from_row({"id": 4, "name": "P4", "allowed_minutes": 0})
        self.assertEqual(record.slot.allowed_minutes, 0)

    def test_active_status_without_start_uses_updated_at(self):
        row = {**SLOT_ROW, "slot_status": [{
            "status": "overtime",
            "occupied_since": None,
            "updated_at": "2030-01-01T08:00:00+00:00",
        }]}
        record = SlotRecord.from_row(row)
        self.assertEqual(record.status.status, SlotState.OVERTIME)
        self.assertEqual(record.status.occupied_since, T0)


class TestSupabaseSlotRepository(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.repository = SupabaseSlotRepository("https://example.supabase.co/", "anon-key")

    async def test_get_slots_embeds_status(self):
        self.repository._request = AsyncMock(return_value=[SLOT_ROW, {"id": "bad"}])
        records = await self.repository.get_slots()
        self.assertEqual([r.slot.name for r in records], ["P1"])
        method, table = self.repository._request.await_args.args
        self.assertEqual((method, table), ("GET", "parking_slots"))
        self.assertEqual(self.repository._request.await_args.kwargs["params"]["select"], "*,slot_status(*)")

    async def test_row_without_start_stays_tracked(self):
        row = {**SLOT_ROW, "slot_status": [{"status": "overtime", "occupied_since": None,
                                            "updated_at": "2030-01-01T08:00:00+00:00"}]}
        self.repository._request = AsyncMock(return_value=[row])
        machine = OccupancyStateMachine()
        machine.sync(await self.repository.get_slots())

        self.assertEqual(machine.snapshot("P1").status, SlotState.OVERTIME)
        transition = machine.handle(SlotOccupancy("P1", "vacant"), T0 + timedelta(minutes=90))
        self.assertEqual(transition.session.started_at, T0)

    async def test_update_status_patches_by_slot_id(self):
        self.repository._request = AsyncMock(return_value=None)
        await self.repository.update_status("7b1c", SlotState.OCCUPIED, T0, T0)
        kwargs = self.repository._request.await_args.kwargs
        self.assertEqual(self.repository._request.await_args.args, ("PATCH", "slot_status"))
        self.assertEqual(kwargs["params"], {"slot_id": "eq.7b1c"})
        self.assertEqual(kwargs["json_body"]["status"], "occupied")
        self.assertEqual(kwargs["json_body"]["occupied_since"], T0.isoformat())

    async def test_insert_session_returns_stored_row(self):
        from parksense_gateway.core.models import ParkingSession
        session = ParkingSession(slot_id="7b1c", slot_name="P1", started_at=T0, ended_at=T0,
                                 duration_minutes=0, amount_charged=Decimal("25"), was_overtime=False)
        self.repository._request = AsyncMock(return_value=[session.to_row()])
        stored = await self.repository.insert_session(session)
        self.assertEqual(stored.id, session.id)
        self.assertEqual(stored.amount_charged, Decimal("25"))

    async def test_vacate_all_counts_rows(self):
        self.repository._request = AsyncMock(return_value=[{"id": 1}, {"id": 2}])
        self.assertEqual(await self.repository.vacate_all(), 2)
        self.assertEqual(self.repository._request.await_args.kwargs["params"], {"status": "in.(occupied,overtime)"})

    async def test_device_status_upsert_merges(self):
        self.repository._request = AsyncMock(return_value=None)
        await self.repository.upsert_device_status(DeviceLinkState(device_id="hc05", rssi=-60))
        kwargs = self.repository._request.await_args.kwargs
        self.assertEqual(kwargs["params"], {"on_conflict": "device_id"})
        self.assertEqual(kwargs["prefer"], "resolution=merge-duplicates")

    async def test_pending_commands_query(self):
        rows = [
            {"id": "c1", "slot_id": "7b1c", "command_type": "PING_LED_5X", "payload": {"flicker_count": 5},
             "status": "pending", "response": None, "created_at": "2030-01-01T08:00:00+00:00", "executed_at": None},
            {"id": "c2", "slot_id": "7b1c", "command_type": "", "payload": None, "status": "pending"},
        ]
        self.repository._request = AsyncMock(return_value=rows)
        [command] = await self.repository.get_pending_commands(limit=10)
        self.assertEqual(command.id, "c1")
        self.assertEqual(command.created_at, T0)
        self.assertEqual(self.repository._request.await_args.args, ("GET", "device_commands"))
        params = self.repository._request.await_args.kwargs["params"]
        self.assertEqual(params["status"], "eq.pending")
        self.assertEqual(params["order"], "created_at.asc")
        self.assertEqual(params["limit"], "10")

    async def test_update_command_patches_by_id(self):
        self.repository._request = AsyncMock(return_value=None)
        await self.repository.update_command("c1", CommandStatus.FAILED, "Device link is down", T0)
        kwargs = self.repository._request.await_args.kwargs
        self.assertEqual(self.repository._request.await_args.args, ("PATCH", "device_commands"))
        self.assertEqual(kwargs["params"], {"id": "eq.c1"})
        self.assertEqual(kwargs["json_body"], {
            "status": "failed",
            "response": "Device link is down",
            "executed_at": T0.isoformat(),
        })

    async def test_insert_command_posts_pending_row(self):
        self.repository._request = AsyncMock(return_value=None)
        command = await self.repository.insert_command("7b1c", "DISABLE_SLOT", {"blink_indefinitely": True})
        self.assertEqual(command.status, CommandStatus.PENDING)
        body = self.repository._request.await_args.kwargs["json_body"]
        self.assertEqual(body["command_type"], "DISABLE_SLOT")
        self.assertEqual(body["status"], "pending")
        self.assertEqual(body["payload"], {"blink_indefinitely": True})

    async def test_request_http_error(self):
        self.repository.session = fake_session(status=503, body="unavailable")
        with self.assertRaises(RepositoryError) as ctx:
            await self.repository.list_sessions()
        self.assertEqual(ctx.exception.status_code, 503)

    async def test_request_client_error(self):
        session = fake_session()
        session.request.side_effect = aiohttp.ClientConnectionError("refused")
        self.repository.session = session
        with self.assertRaises(RepositoryError):
            await self.repository.get_slots()

    async def test_request_invalid_json(self):
        self.repository.session = fake_session(body="not json")
        with self.assertRaises(RepositoryError):
            await self.repository.get_slots()

    async def test_request_uses_rest_endpoint(self):
        session = fake_session(body="[]")
        self.repository.session = session
        await self.repository.list_sessions(limit=5)
        method, url = session.request.call_args.args
        self.assertEqual(method, "GET")
        self.assertEqual(url, "https://example.supabase.co/rest/v1/parking_sessions")
        self.assertEqual(session.request.call_args.kwargs["params"]["limit"], "5")


if __name__ == "__main__":
    unittest.main()
