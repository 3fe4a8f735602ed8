"""
Tests for SessionRecorder: billing of recorded cycles, duplicate protection,
retry on repository failure and background dispatch.
"""

import asyncio
import unittest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

from parksense_gateway.core.billing import FlatFeePolicy
from parksense_gateway.core.errors import RepositoryError
from parksense_gateway.core.occupancy import SessionToRecord
from parksense_gateway.core.outcome import ErrorKind
from parksense_gateway.core.session_recorder import SessionRecorder, dedup_key, duration_minutes
from parksense_gateway.storage.memory_repository import MemorySlotRepository

from tests.common import T0, make_snapshot


def at(minutes, seconds=0):
    return T0 + timedelta(minutes=minutes, seconds=seconds)


class TestHelpers(unittest.TestCase):

    def test_duration_floors_and_clamps(self):
        self.assertEqual(duration_minutes(at(0), at(59, 59)), 59)
        self.assertEqual(duration_minutes(at(10), at(0)), 0)

    def test_dedup_key_ignores_case(self):
        self.assertEqual(dedup_key("P1", at(0)), dedup_key("p1 ", at(0)))
        self.assertNotEqual(dedup_key("P1", at(0)), dedup_key("P1", at(1)))


class TestSessionRecorder(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.repository = MemorySlotRepository()
        self.billing = FlatFeePolicy(base_fee=25, overtime_fee=100, threshold_minutes=120)
        self.recorder = SessionRecorder(self.repository, self.billing, retry_delay=0)

    async def asyncTearDown(self):
        await self.recorder.shutdown()

    async def test_record_writes_billed_session(self):
        outcome = await self.recorder.record("P1", at(0), at(130), slot_id="id-P1", allowed_minutes=60)
        self.assertTrue(outcome.ok)
        session = outcome.value
        self.assertEqual(session.duration_minutes, 130)
        self.assertEqual(session.amount_charged, Decimal("100.00"))
        self.assertTrue(session.was_overtime)
        self.assertEqual(self.repository.sessions, [session])

    async def test_unknown_slot_uses_policy_threshold(self):
        outcome = await self.recorder.record("P9", at(0), at(100))
        self.assertFalse(outcome.value.was_overtime)
        self.assertEqual(outcome.value.amount_charged, Decimal("25.00"))

    async def test_slot_lookup_supplies_allowed_minutes(self):
        recorder = SessionRecorder(self.repository, self.billing,
                                   slot_lookup=lambda name: make_snapshot(name, allowed_minutes=30))
        outcome = await recorder.record("P1", at(0), at(31))
        self.assertTrue(outcome.value.was_overtime)
        self.assertEqual(outcome.value.slot_id, "id-P1")

    async def test_duplicate_cycle_written_once(self):
        first = await self.recorder.record("P1", at(0), at(30))
        second = await self.recorder.record("P1", at(0), at(31))
        self.assertTrue(first.ok)
        self.assertFalse(second.ok)
        self.assertEqual(second.kind, ErrorKind.DUPLICATE)
        self.assertEqual(len(self.repository.sessions), 1)
        self.assertTrue(self.recorder.is_recorded("P1", at(0)))

    async def test_concurrent_duplicate_rejected_while_in_flight(self):
        gate = asyncio.Event()
        saved = []

        async def slow_insert(session):
            await gate.wait()
            saved.append(session)
            return session

        self.repository.insert_session = slow_insert
        first = asyncio.ensure_future(self.recorder.record("P1", at(0), at(30)))
        await asyncio.sleep(0)
        second = await self.recorder.record("P1", at(0), at(30))
        gate.set()
        self.assertTrue((await first).ok)
        self.assertEqual(second.kind, ErrorKind.DUPLICATE)
        self.assertEqual(len(saved), 1)

    async def test_transient_failure_retried(self):
        real_insert = self.repository.insert_session
        calls = []

        async def flaky(session):
            calls.append(session)
            if len(calls) == 1:
                raise RepositoryError("insert_session", "timeout")
            return await real_insert(session)

        self.repository.insert_session = flaky
        outcome = await self.recorder.record("P1", at(0), at(30))
        self.assertTrue(outcome.ok)
        self.assertEqual(len(calls), 2)
        self.assertEqual(len(self.repository.sessions), 1)

    async def test_persistent_failure_reported(self):
        self.repository.insert_session = AsyncMock(side_effect=RepositoryError("insert_session", "down", 503))
        outcome = await self.recorder.record("P1", at(0), at(30))
        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.kind, ErrorKind.PERSISTENCE)
        self.assertEqual(self.repository.insert_session.await_count, 3)
        # A later redelivery may try again
        self.assertFalse(self.recorder.is_recorded("P1", at(0)))

    async def test_submit_records_in_background(self):
        published = []
        self.recorder.on_recorded = published.append
        self.recorder.submit(SessionToRecord("id-P1", "P1", at(0), at(45), 60))
        self.recorder.submit(SessionToRecord("id-P1", "P1", at(0), at(45), 60))
        await self.recorder.drain()
        self.assertEqual(len(self.repository.sessions), 1)
        self.assertEqual(published, self.repository.sessions)


if __name__ == "__main__":
    unittest.main()
