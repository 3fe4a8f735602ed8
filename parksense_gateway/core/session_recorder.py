# parksense_gateway/core/session_recorder.py
"""
SessionRecorder: turns finished occupancy cycles into ParkingSession rows.

Each cycle is keyed by slot name and start time. A key that was already
written, or is being written, is never written again, so a redelivered
vacate event cannot double-bill. Repository failures are retried and then
reported as an Err outcome; they never roll back the occupancy state.

submit() hands work to a background worker so the event consumer never
waits on the network.
"""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Optional

from .billing import BillingPolicy
from .errors import RepositoryError
from .models import ParkingSession, SlotSnapshot
from .occupancy import SessionToRecord
from .outcome import Err, ErrorKind, Ok, Outcome
from ..storage.repository_interface import SlotRepository

logger = logging.getLogger(__name__)

MAX_REMEMBERED_KEYS = 10000


def dedup_key(slot_name: str, started_at: datetime) -> str:
    return f"{slot_name.strip().casefold()}@{started_at.isoformat()}"


def duration_minutes(started_at: datetime, ended_at: datetime) -> int:
    """Whole minutes between two instants, never negative"""
    seconds = (ended_at - started_at).total_seconds()
    return max(0, int(seconds // 60))


class SessionRecorder:
    """Writes exactly one ParkingSession per occupancy cycle"""

    def __init__(
        self,
        repository: SlotRepository,
        billing: BillingPolicy,
        slot_lookup: Optional[Callable[[str], Optional[SlotSnapshot]]] = None,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        on_recorded: Optional[Callable[[ParkingSession], None]] = None,
    ) -> None:
        self.repository = repository
        self.billing = billing
        self.slot_lookup = slot_lookup
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self.on_recorded = on_recorded

        # dedup key -> session id, oldest first
        self._recorded: OrderedDict[str, str] = OrderedDict()
        self._in_flight: set[str] = set()
        self._queue: Optional[asyncio.Queue] = None
        self._worker_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def build_session(
        self,
        slot_name: str,
        started_at: datetime,
        ended_at: datetime,
        slot_id: Optional[str] = None,
        allowed_minutes: Optional[int] = None,
    ) -> ParkingSession:
        """Compute duration and charge for one cycle"""
        if allowed_minutes is None or slot_id is None:
            snapshot = self.slot_lookup(slot_name) if self.slot_lookup else None
            if snapshot is not None:
                slot_id = slot_id or snapshot.slot_id
                if allowed_minutes is None:
                    allowed_minutes = snapshot.allowed_minutes

        minutes = duration_minutes(started_at, ended_at)
        bill = self.billing.calculate(minutes, threshold=allowed_minutes)
        return ParkingSession(
            slot_id=slot_id,
            slot_name=slot_name,
            started_at=started_at,
            ended_at=ended_at,
            duration_minutes=minutes,
            amount_charged=bill.amount,
            was_overtime=bill.is_overtime,
        )

    async def record(
        self,
        slot_name: str,
        started_at: datetime,
        ended_at: datetime,
        slot_id: Optional[str] = None,
        allowed_minutes: Optional[int] = None,
    ) -> Outcome[ParkingSession]:
        """Persist the session for one cycle, at most once per (slot, start)"""
        key = dedup_key(slot_name, started_at)
        if key in self._recorded or key in self._in_flight:
            logger.warning(f"Session {key} already recorded or in flight; skipping")
            return Err(ErrorKind.DUPLICATE, f"session {key} already recorded")

        session = self.build_session(slot_name, started_at, ended_at, slot_id, allowed_minutes)
        self._in_flight.add(key)
        try:
            last_error: Optional[Exception] = None
            for attempt in range(1, self.retry_attempts + 1):
                try:
                    saved = await self.repository.insert_session(session)
                except RepositoryError as err:
                    last_error = err
                    logger.warning(
                        f"Session write for {slot_name} failed (attempt {attempt}/{self.retry_attempts}): {err}"
                    )
                    if attempt < self.retry_attempts:
                        await asyncio.sleep(self.retry_delay * attempt)
                    continue

                self._remember(key, saved.id)
                logger.info(
                    f"Session recorded: {saved.slot_name} {saved.duration_minutes} min "
                    f"charged {saved.amount_charged} (overtime={saved.was_overtime})"
                )
                if self.on_recorded:
                    self.on_recorded(saved)
                return Ok(saved)
        finally:
            self._in_flight.discard(key)

        logger.error(f"Giving up on session for {slot_name} started {started_at.isoformat()}: {last_error}")
        return Err(ErrorKind.PERSISTENCE, str(last_error))

    def submit(self, pending: SessionToRecord) -> None:
        """Queue a finished cycle for background recording"""
        self._ensure_worker()
        self._queue.put_nowait(pending)

    def is_recorded(self, slot_name: str, started_at: datetime) -> bool:
        return dedup_key(slot_name, started_at) in self._recorded

    def pending(self) -> int:
        return self._queue.qsize() if self._queue else 0

    async def drain(self) -> None:
        """Wait until every submitted cycle has been handled"""
        if self._queue is not None:
            await self._queue.join()

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Give queued writes a chance to finish, then stop the worker"""
        task = self._worker_task
        if task is None:
            return
        try:
            await asyncio.wait_for(self.drain(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Stopping recorder with {self.pending()} unsaved session(s)")
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        if self._worker_task is task:
            self._worker_task = None
            self._queue = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.ensure_future(self._worker())

    async def _worker(self) -> None:
        while True:
            pending: SessionToRecord = await self._queue.get()
            try:
                await self.record(
                    pending.slot_name,
                    pending.started_at,
                    pending.ended_at,
                    slot_id=pending.slot_id,
                    allowed_minutes=pending.allowed_minutes,
                )
            except Exception as exc:
                logger.exception(f"Unexpected error recording session for {pending.slot_name}: {exc}")
            finally:
                self._queue.task_done()

    def _remember(self, key: str, session_id: str) -> None:
        self._recorded[key] = session_id
        while len(self._recorded) > MAX_REMEMBERED_KEYS:
            self._recorded.popitem(last=False)
