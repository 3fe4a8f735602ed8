# parksense_gateway/core/gateway.py
import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .device_connection import DeviceConnection
from .errors import CommandValidationError, ConnectionLostError, RepositoryError
from .events import DeviceEvent, PingAck, SensorReading, SignalStrength, SlotOccupancy, Unrecognized
from .line_framer import LineFramer
from .message_processor import MessageProcessor
from .models import (
    CommandStatus,
    CommandType,
    DeviceCommandRow,
    DeviceLinkState,
    SensorSample,
    SlotSnapshot,
    SlotState,
    utc_now,
)
from .occupancy import OccupancyStateMachine, OvertimeSource, Transition
from .outcome import Err, ErrorKind, Ok, Outcome
from .session_recorder import SessionRecorder
from .slot_control import SlotControl
from ..processors.command_encoder import Command, Ping, SetEnabled, command_from_payload
from ..storage.repository_interface import COMMANDS_TABLE, SLOTS_TABLE, STATUS_TABLE, SlotRepository, Unsubscribe

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class ParkingGateway:
    """
    Event pipeline between the sensor unit and the slot repository

    Per link: a reader task frames and decodes inbound bytes into an event
    queue, and a writer task drains the outbound command queue. A single
    consumer applies events to the occupancy state machine in arrival order;
    everything that touches the network (status rows, sessions, link state,
    sensor samples, MQTT) is dispatched off the consumer.
    Pending device_commands rows are run on start and whenever that table
    changes.
    """

    def __init__(
        self,
        device_id: str,
        connection: DeviceConnection,
        processor: MessageProcessor,
        machine: OccupancyStateMachine,
        recorder: SessionRecorder,
        repository: SlotRepository,
        slot_control: Optional[SlotControl] = None,
        bridge=None,
        clock: Clock = utc_now,
        persist_sensor_readings: bool = False,
        overtime_sweep_interval: float = 30.0,
        outbound_queue_size: int = 64,
        command_write_timeout: float = 5.0,
    ):
        self.device_id = device_id
        self.connection = connection
        self.processor = processor
        self.machine = machine
        self.recorder = recorder
        self.repository = repository
        self.slot_control = slot_control or SlotControl(repository)
        self.bridge = bridge
        self.clock = clock
        self.persist_sensor_readings = persist_sensor_readings
        self.overtime_sweep_interval = overtime_sweep_interval
        self.outbound_queue_size = outbound_queue_size
        self.command_write_timeout = command_write_timeout

        self.link_state = DeviceLinkState(device_id=device_id, updated_at=clock())
        self.is_running = False

        self._events: asyncio.Queue = asyncio.Queue()
        self._consumer_task: Optional[asyncio.Task] = None
        # Status rows are written one at a time, in transition order
        self._status_writes: asyncio.Queue = asyncio.Queue()
        self._status_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._unsubscribers: List[Unsubscribe] = []
        self._refresh_task: Optional[asyncio.Task] = None
        self._commands_task: Optional[asyncio.Task] = None
        self._commands_rerun = False

        # Per-link state, replaced on every open_link()
        self._framer: Optional[LineFramer] = None
        self._outbound: Optional[asyncio.Queue] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._stop_reading = asyncio.Event()
        self._link_lost = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Load slots, subscribe to repository changes and start the consumer"""
        if self.is_running:
            return
        logger.info(f"Starting parking gateway for device {self.device_id}")
        await self.refresh_slots()

        for table in (SLOTS_TABLE, STATUS_TABLE):
            self._unsubscribers.append(self.repository.subscribe(table, self._on_repository_change))
        self._unsubscribers.append(self.repository.subscribe(COMMANDS_TABLE, self._on_commands_change))

        self._consumer_task = asyncio.ensure_future(self._consume())
        if self.machine.policy.overtime_source == OvertimeSource.ELAPSED:
            self._sweep_task = asyncio.ensure_future(self._sweep_loop())
            logger.info(f"Elapsed-time overtime sweep every {self.overtime_sweep_interval}s")
        self.is_running = True
        logger.info(f"Tracking slots: {self.machine.registry.get_all_names()}")
        # Commands queued while the gateway was down
        self._on_commands_change(COMMANDS_TABLE)

    async def stop(self):
        """Close the link, flush pending work and stop background tasks"""
        logger.info("Stopping parking gateway...")
        self.is_running = False
        await _cancel(self._commands_task)
        self._commands_task = None
        self._link_lost.set()
        await self.close_link()

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        if self._consumer_task:
            try:
                await asyncio.wait_for(self._events.join(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning(f"Dropping {self._events.qsize()} unprocessed event(s)")

        for task in (self._sweep_task, self._consumer_task, self._refresh_task):
            await _cancel(task)
        self._sweep_task = self._consumer_task = self._refresh_task = None

        if self._status_task:
            try:
                await asyncio.wait_for(self._status_writes.join(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning(f"Dropping {self._status_writes.qsize()} unsaved status update(s)")
            await _cancel(self._status_task)
            self._status_task = None

        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.recorder.shutdown()
        logger.info("Parking gateway stopped")

    async def open_link(self) -> bool:
        """Connect the transport and start reading with a fresh framer"""
        if self._reader_task and not self._reader_task.done():
            return True
        if self._reader_task is not None:
            # Previous link died on its own; release its writer and transport
            await self.close_link()
        if not await self.connection.connect():
            logger.error(f"Could not open link {self.connection.connection_id}: {self.connection.last_error}")
            return False
        self._attach()
        return True

    async def reconnect_link(self) -> bool:
        """Tear down the current link and retry the transport with backoff"""
        await self.close_link()
        if not await self.connection.reconnect():
            return False
        self._attach()
        return True

    async def close_link(self):
        """Stop reading and writing and disconnect; safe to call at any time"""
        self._stop_reading.set()
        await _cancel(self._reader_task)
        await _cancel(self._writer_task)
        self._reader_task = self._writer_task = None
        if self._outbound is not None:
            while not self._outbound.empty():
                _, written = self._outbound.get_nowait()
                self._outbound.task_done()
                if written is not None and not written.done():
                    written.set_result(False)
        self._outbound = None
        self._discard_framer()

        was_connected = self.link_state.is_connected
        await self.connection.disconnect()
        if was_connected:
            self._set_link_state(is_connected=False)

    async def wait_link_lost(self):
        """Block until the current link drops (or the gateway stops)"""
        await self._link_lost.wait()

    def is_link_up(self) -> bool:
        return self._reader_task is not None and not self._reader_task.done() and self.connection.is_connected()

    async def run(self):
        """Run until stopped, reopening the link when it drops"""
        await self.start()
        try:
            if not await self.open_link():
                logger.warning("Initial connection failed, retrying")
            while self.is_running:
                if self.is_link_up():
                    await self.wait_link_lost()
                    if not self.is_running:
                        break
                if await self.reconnect_link():
                    continue
                if self.connection.retries_exhausted:
                    logger.error(f"Giving up on {self.connection.connection_id} after {self.connection.max_retries} retries")
                    break
        finally:
            # stop() may already have been called from outside
            if self.is_running:
                await self.stop()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _attach(self):
        self._framer = self.processor.create_framer()
        self._outbound = asyncio.Queue(maxsize=self.outbound_queue_size)
        self._stop_reading = asyncio.Event()
        self._link_lost = asyncio.Event()
        self._reader_task = asyncio.ensure_future(self._read_loop(self._framer, self._stop_reading))
        self._writer_task = asyncio.ensure_future(self._write_loop(self._outbound))
        self.connection.reset_retries()
        self._set_link_state(is_connected=True)
        logger.info(f"Link {self.connection.connection_id} is up")

    async def _read_loop(self, framer: LineFramer, stop: asyncio.Event):
        try:
            while not stop.is_set():
                chunk = await self.connection.read_chunk()
                if chunk is None or stop.is_set():
                    continue
                for event in self.processor.decode_chunk(framer, chunk):
                    self._events.put_nowait(event)
        except ConnectionLostError as e:
            if stop.is_set():
                return
            logger.warning(f"Link lost: {e}")
            stop.set()
            self._discard_framer()
            self._set_link_state(is_connected=False)
            self._link_lost.set()

    def _discard_framer(self):
        if self._framer is not None:
            self._framer.reset()
            self._framer = None

    async def _consume(self):
        while True:
            event = await self._events.get()
            try:
                self.handle_event(event)
            except Exception as e:
                logger.exception(f"Error handling {event!r}: {e}")
            finally:
                self._events.task_done()

    def handle_event(self, event: DeviceEvent):
        """Apply one decoded device event"""
        now = self.clock()

        if isinstance(event, SignalStrength):
            self._set_link_state(rssi=event.rssi)
            return

        if isinstance(event, PingAck):
            logger.debug(f"PONG from {event.slot_name}")
            self._set_link_state(last_ping=now)
            return

        if isinstance(event, Unrecognized):
            logger.debug(f"Unrecognized device line: {event.raw!r}")
            return

        if isinstance(event, SensorReading):
            self._record_sample(event, now)

        if isinstance(event, (SlotOccupancy, SensorReading)):
            transition = self.machine.handle(event, now)
            if transition is not None and transition.changed:
                self._apply(transition)

    def _record_sample(self, reading: SensorReading, now: datetime):
        if not self.persist_sensor_readings:
            return
        snapshot = self.machine.snapshot(reading.slot_name)
        sample = SensorSample(
            slot_id=snapshot.slot_id if snapshot else None,
            slot_name=snapshot.name if snapshot else reading.slot_name,
            value=reading.value,
            is_occupied=reading.value < self.machine.policy.sensor_threshold,
            created_at=now,
        )
        self._spawn(self.repository.insert_sensor_reading(sample), f"store sensor reading for {sample.slot_name}")

    def _apply(self, transition: Transition):
        current = transition.current
        self._queue_status_write(current)
        if transition.session is not None:
            self.recorder.submit(transition.session)
        if self.bridge:
            self.bridge.publish_slot_status(current)

    def _queue_status_write(self, snapshot: SlotSnapshot):
        if self._status_task is None or self._status_task.done():
            self._status_task = asyncio.ensure_future(self._status_write_loop())
        self._status_writes.put_nowait(snapshot)

    async def _status_writes_done(self):
        if self._status_task is not None and not self._status_task.done():
            await self._status_writes.join()

    async def _status_write_loop(self):
        while True:
            snapshot: SlotSnapshot = await self._status_writes.get()
            try:
                await self.repository.update_status(
                    snapshot.slot_id, snapshot.status, snapshot.occupied_since, snapshot.updated_at
                )
            except RepositoryError as e:
                logger.error(f"Failed to update status of {snapshot.name}: {e}")
            except Exception as e:
                logger.exception(f"Unexpected error updating status of {snapshot.name}: {e}")
            finally:
                self._status_writes.task_done()

    def _set_link_state(self, **changes):
        self.link_state = self.link_state.model_copy(update={**changes, "updated_at": self.clock()})
        self._spawn(self.repository.upsert_device_status(self.link_state), "update device status")
        if self.bridge:
            self.bridge.publish_device_status(self.link_state)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send_command(self, command: Command) -> bool:
        """
        Queue a command for the device.

        Raises CommandValidationError for invalid arguments before anything
        is queued; returns False when there is no link or the queue is full.
        """
        return self._enqueue(self.processor.encode(command))

    async def deliver(self, command: Command) -> bool:
        """
        Queue a command and wait until the transport has written it.

        False when there is no link, the queue is full, the write fails or
        it does not happen within command_write_timeout.
        """
        written = asyncio.get_running_loop().create_future()
        if not self._enqueue(self.processor.encode(command), written):
            return False
        try:
            return await asyncio.wait_for(written, timeout=self.command_write_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Timed out writing {type(command).__name__} to the device")
            return False

    def _enqueue(self, data: bytes, written: Optional[asyncio.Future] = None) -> bool:
        if not self.is_link_up() or self._outbound is None:
            logger.warning(f"Not connected, dropping command {data!r}")
            return False
        try:
            self._outbound.put_nowait((data, written))
        except asyncio.QueueFull:
            logger.warning(f"Outbound queue full, dropping command {data!r}")
            return False
        return True

    async def _write_loop(self, outbound: asyncio.Queue):
        while True:
            data, written = await outbound.get()
            ok = False
            try:
                ok = await self.connection.write(data)
                if ok:
                    logger.debug(f"TX {data!r}")
                else:
                    logger.error(f"Failed to write {data!r} to {self.connection.connection_id}")
            finally:
                if written is not None and not written.done():
                    written.set_result(ok)
                outbound.task_done()

    async def flush(self):
        """Wait until queued events, commands and dispatched writes are done"""
        while self._commands_task is not None and not self._commands_task.done():
            await asyncio.wait({self._commands_task})
        await self._events.join()
        await self._status_writes_done()
        if self._outbound is not None:
            await self._outbound.join()
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.recorder.drain()

    # ------------------------------------------------------------------
    # Slot actions
    # ------------------------------------------------------------------

    async def set_slot_enabled(self, name: str, enabled: bool) -> Outcome[SlotSnapshot]:
        """Enable or disable a slot locally, in the repository and on the device"""
        now = self.clock()
        transition = self.machine.enable(name, now) if enabled else self.machine.disable(name, now)
        if transition is None:
            return Err(ErrorKind.UNKNOWN_SLOT, f"Unknown slot {name}")
        if self.bridge and transition.changed:
            self.bridge.publish_slot_status(transition.current)

        # Earlier status writes for this slot must land before the disable does
        await self._status_writes_done()
        outcome = await self.slot_control.set_disabled(transition.current.slot_id, not enabled)
        if not outcome.ok:
            return outcome
        if self.is_link_up():
            self.send_command(SetEnabled(transition.current.name, enabled))
        return Ok(transition.current)

    async def vacate_all(self) -> Outcome[int]:
        """Clear every occupied slot without billing"""
        for transition in self.machine.vacate_all(self.clock()):
            if self.bridge:
                self.bridge.publish_slot_status(transition.current)
        await self._status_writes_done()
        return await self.slot_control.vacate_all()

    async def refresh_slots(self) -> List[str]:
        """Pull slot rows from the repository into the local mirror"""
        try:
            records = await self.repository.get_slots()
        except RepositoryError as e:
            logger.error(f"Failed to refresh slots: {e}")
            return []
        return self.machine.sync(records)

    def _on_repository_change(self, table: str):
        logger.debug(f"Repository change on {table}")
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self.refresh_slots())

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.overtime_sweep_interval)
            for transition in self.machine.sweep_overtime(self.clock()):
                self._apply(transition)

    # ------------------------------------------------------------------
    # Queued device commands (device_commands table)
    # ------------------------------------------------------------------

    def _on_commands_change(self, table: str):
        if not self.is_running:
            return
        if self._commands_task is None or self._commands_task.done():
            self._commands_task = asyncio.ensure_future(self.process_pending_commands())
        else:
            self._commands_rerun = True

    async def process_pending_commands(self) -> int:
        """Run pending device_commands rows oldest first; returns how many were attempted"""
        attempted: Set[str] = set()
        while True:
            self._commands_rerun = False
            try:
                rows = await self.repository.get_pending_commands()
            except RepositoryError as e:
                logger.error(f"Failed to fetch pending device commands: {e}")
                break
            for row in rows:
                # A row whose status update failed is still pending; run it once per pass
                if row.id in attempted:
                    continue
                attempted.add(row.id)
                await self.execute_command_row(row)
            if not self._commands_rerun:
                break
        return len(attempted)

    async def execute_command_row(self, row: DeviceCommandRow) -> Outcome[str]:
        """Carry out one queued command and write the result back to its row"""
        logger.info(f"Device command {row.command_type} for slot {row.slot_id}")
        outcome = await self._run_command_row(row)
        if outcome.ok:
            status, response = CommandStatus.EXECUTED, outcome.value
        else:
            status, response = CommandStatus.FAILED, outcome.message
            logger.warning(f"Device command {row.id} failed: {outcome.message}")
        await self._mark_command(row, status, response, self.clock())
        return outcome

    async def _run_command_row(self, row: DeviceCommandRow) -> Outcome[str]:
        try:
            command_type = CommandType(row.command_type)
        except ValueError:
            return Err(ErrorKind.INVALID, f"Unknown command type {row.command_type}")
        snapshot = self.machine.registry.get_by_id(row.slot_id) if row.slot_id else None
        if snapshot is None:
            return Err(ErrorKind.UNKNOWN_SLOT, f"Unknown slot {row.slot_id}")

        if command_type == CommandType.PING_LED_5X:
            if not self.is_link_up():
                return Err(ErrorKind.NOT_CONNECTED, "Device link is down")
            await self._mark_command(row, CommandStatus.SENT)
            if not await self.deliver(Ping(snapshot.name)):
                return Err(ErrorKind.NOT_CONNECTED, f"PING:{snapshot.name} was not written")
            return Ok(f"PING:{snapshot.name} written")

        enabled = command_type == CommandType.ENABLE_SLOT
        on_device = self.is_link_up()
        outcome = await self.set_slot_enabled(snapshot.name, enabled)
        if not outcome.ok:
            return outcome
        result = f"{snapshot.name} {'enabled' if enabled else 'disabled'}"
        return Ok(result if on_device else f"{result}, device offline")

    async def _mark_command(self, row: DeviceCommandRow, status: CommandStatus, response: Optional[str] = None,
                            executed_at: Optional[datetime] = None):
        try:
            await self.repository.update_command(row.id, status, response, executed_at)
        except RepositoryError as e:
            logger.error(f"Failed to mark device command {row.id} {status.value}: {e}")

    # ------------------------------------------------------------------
    # Control commands (MQTT)
    # ------------------------------------------------------------------

    async def handle_control_command(self, scope: str, slot_name: Optional[str],
                                     payload: Dict[str, Any]) -> Dict[str, Any]:
        """Execute a control-UI command and describe the result"""
        action = str(payload.get("action", "")).strip().lower() if isinstance(payload, dict) else ""
        response: Dict[str, Any] = {"scope": scope, "action": action, "timestamp": self.clock().isoformat()}
        if slot_name:
            response["slot_name"] = slot_name

        try:
            if scope == "admin":
                outcome = await self._admin_command(action, payload)
            elif scope == "slot" and (not slot_name or slot_name not in self.machine.registry):
                outcome = Err(ErrorKind.UNKNOWN_SLOT, f"Unknown slot {slot_name}")
            elif scope == "slot" and action in ("enable", "disable"):
                outcome = await self.set_slot_enabled(slot_name, action == "enable")
            elif scope == "slot":
                outcome = self._device_outcome(command_from_payload(payload, slot_name))
            elif scope == "device":
                outcome = self._device_outcome(command_from_payload(payload))
            else:
                outcome = Err(ErrorKind.INVALID, f"Unknown command scope {scope}")
        except CommandValidationError as e:
            outcome = Err(ErrorKind.INVALID, str(e))

        response["success"] = outcome.ok
        if outcome.ok:
            response["result"] = _describe(outcome.value)
        else:
            response["error"] = outcome.message
            response["error_kind"] = outcome.kind.value
        return response

    def _device_outcome(self, command: Command) -> Outcome[str]:
        if self.send_command(command):
            return Ok(type(command).__name__)
        return Err(ErrorKind.NOT_CONNECTED, "Device link is down")

    async def _admin_command(self, action: str, payload: Dict[str, Any]) -> Outcome:
        if action == "add_slot":
            status = str(payload.get("status", SlotState.VACANT.value)).lower()
            try:
                initial = SlotState(status)
            except ValueError:
                return Err(ErrorKind.INVALID, f"Unknown slot status {status}")
            outcome = await self.slot_control.add_slot(initial, payload.get("allowed_minutes"))
        elif action == "remove_last_slot":
            outcome = await self.slot_control.remove_last_slot()
        elif action == "reset_slots":
            outcome = await self.slot_control.reset_slots()
        elif action == "vacate_all":
            outcome = await self.vacate_all()
        else:
            return Err(ErrorKind.INVALID, f"Unknown admin action {action or '<missing>'}")
        await self.refresh_slots()
        return outcome

    def _spawn(self, coro: Awaitable, what: str):
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def done(t: asyncio.Task):
            self._background.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Failed to {what}: {t.exception()}")

        task.add_done_callback(done)


def _describe(value: Any) -> Any:
    if isinstance(value, SlotSnapshot):
        return value.to_payload()
    if hasattr(value, "slot"):
        return {"slot_id": value.slot.id, "slot_name": value.slot.name}
    return value


async def _cancel(task: Optional[asyncio.Task]):
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
