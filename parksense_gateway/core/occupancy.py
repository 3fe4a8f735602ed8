# parksense_gateway/core/occupancy.py
"""
Per-slot occupancy state machine.

    vacant   --occupied--> occupied   (occupied_since = now)
    occupied --overtime--> overtime   (occupied_since kept)
    occupied --vacant-->   vacant     (session emitted)
    overtime --vacant-->   vacant     (session emitted from the original start)
    disabled ignores occupancy traffic until enabled again

apply() is a pure function of (snapshot, event, now, policy). The
OccupancyStateMachine wraps it with the slot registry and the external
enable/disable/sync actions. Nothing here blocks or schedules work; the
caller drives it event by event.
"""
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional
import logging

from .events import DeviceEvent, SensorReading, SlotOccupancy
from .models import SlotRecord, SlotSnapshot, SlotState
from .slot_registry import SlotRegistry

logger = logging.getLogger(__name__)


class OccupancySource(str, Enum):
    """Which device message decides occupancy"""
    STATUS = "status"
    SENSOR = "sensor"


class OvertimeSource(str, Enum):
    """Who decides that a stay has run into overtime"""
    DEVICE = "device"
    ELAPSED = "elapsed"


@dataclass(frozen=True)
class DetectionPolicy:
    occupancy_source: OccupancySource = OccupancySource.STATUS
    overtime_source: OvertimeSource = OvertimeSource.DEVICE
    # Photoresistor readings below this mean the light is blocked
    sensor_threshold: int = 500


DEFAULT_POLICY = DetectionPolicy()

WIRE_STATES = {
    "occupied": SlotState.OCCUPIED,
    "vacant": SlotState.VACANT,
    "overtime": SlotState.OVERTIME,
}


@dataclass(frozen=True)
class SessionToRecord:
    """A finished occupancy cycle awaiting persistence"""
    slot_id: str
    slot_name: str
    started_at: datetime
    ended_at: datetime
    allowed_minutes: int


@dataclass(frozen=True)
class Transition:
    previous: SlotSnapshot
    current: SlotSnapshot
    session: Optional[SessionToRecord] = None

    @property
    def changed(self) -> bool:
        return (self.previous.status != self.current.status
                or self.previous.occupied_since != self.current.occupied_since)


def target_state(event: DeviceEvent, policy: DetectionPolicy = DEFAULT_POLICY) -> Optional[SlotState]:
    """The state an event asks for under the given policy, or None if it carries no occupancy"""
    if isinstance(event, SlotOccupancy):
        if policy.occupancy_source != OccupancySource.STATUS:
            return None
        state = WIRE_STATES.get(event.raw_status.lower())
        if state == SlotState.OVERTIME and policy.overtime_source != OvertimeSource.DEVICE:
            return None
        return state

    if isinstance(event, SensorReading):
        if policy.occupancy_source != OccupancySource.SENSOR:
            return None
        return SlotState.OCCUPIED if event.value < policy.sensor_threshold else SlotState.VACANT

    return None


def move(current: SlotSnapshot, target: SlotState, now: datetime) -> Transition:
    """Move a slot towards target; unsupported or redundant moves are no-ops"""
    status = current.status

    if status == SlotState.DISABLED:
        return Transition(current, current)

    if target == SlotState.OCCUPIED and status == SlotState.VACANT:
        return Transition(current, current.moved_to(SlotState.OCCUPIED, now, now))

    if target == SlotState.OVERTIME:
        if status == SlotState.OCCUPIED:
            return Transition(current, current.moved_to(SlotState.OVERTIME, current.occupied_since, now))
        if status == SlotState.VACANT:
            # Entry was missed; start the clock now so the exit still bills
            return Transition(current, current.moved_to(SlotState.OVERTIME, now, now))

    if target == SlotState.VACANT and status.is_active and current.occupied_since is not None:
        session = SessionToRecord(
            slot_id=current.slot_id,
            slot_name=current.name,
            started_at=current.occupied_since,
            ended_at=now,
            allowed_minutes=current.allowed_minutes,
        )
        return Transition(current, current.moved_to(SlotState.VACANT, None, now), session)

    return Transition(current, current)


def apply(current: SlotSnapshot, event: DeviceEvent, now: datetime,
          policy: DetectionPolicy = DEFAULT_POLICY) -> Transition:
    """Next snapshot (and any session to record) for one event"""
    target = target_state(event, policy)
    if target is None:
        return Transition(current, current)
    return move(current, target, now)


class OccupancyStateMachine:
    """
    Slot registry plus the transition rules
    Events naming slots outside the registry are logged and ignored
    """

    def __init__(self, policy: DetectionPolicy = DEFAULT_POLICY, registry: Optional[SlotRegistry] = None):
        self.policy = policy
        self.registry = registry or SlotRegistry()

    def handle(self, event: DeviceEvent, now: datetime) -> Optional[Transition]:
        """Apply a device event; None when it names no known slot or carries no occupancy"""
        if not isinstance(event, (SlotOccupancy, SensorReading)):
            return None

        current = self.registry.get(event.slot_name)
        if current is None:
            logger.warning(f"Ignoring {type(event).__name__} for unknown slot {event.slot_name!r}")
            return None

        if isinstance(event, SlotOccupancy) and event.raw_status not in WIRE_STATES:
            logger.warning(f"Ignoring unsupported status {event.raw_status!r} for slot {current.name}")
            return None

        if target_state(event, self.policy) is None:
            logger.debug(f"{type(event).__name__} for {current.name} does not drive occupancy under {self.policy}")
            return None

        transition = apply(current, event, now, self.policy)
        self._commit(transition)
        return transition

    def disable(self, name: str, now: datetime) -> Optional[Transition]:
        """Take a slot out of service; an open stay is dropped without a session"""
        current = self.registry.get(name)
        if current is None:
            logger.warning(f"Cannot disable unknown slot {name!r}")
            return None
        if current.status == SlotState.DISABLED:
            return Transition(current, current)
        if current.status.is_active:
            logger.info(f"Disabling {current.name} while {current.status.value}; open stay is not billed")
        transition = Transition(current, current.moved_to(SlotState.DISABLED, None, now))
        self._commit(transition)
        return transition

    def enable(self, name: str, now: datetime) -> Optional[Transition]:
        """Return a disabled slot to vacant"""
        current = self.registry.get(name)
        if current is None:
            logger.warning(f"Cannot enable unknown slot {name!r}")
            return None
        if current.status != SlotState.DISABLED:
            return Transition(current, current)
        transition = Transition(current, current.moved_to(SlotState.VACANT, None, now))
        self._commit(transition)
        return transition

    def sweep_overtime(self, now: datetime) -> List[Transition]:
        """Promote stays past allowed_minutes to overtime (elapsed-time mode only)"""
        if self.policy.overtime_source != OvertimeSource.ELAPSED:
            return []

        transitions = []
        for current in self.registry.get_all():
            if current.status != SlotState.OCCUPIED:
                continue
            if current.elapsed_minutes(now) > current.allowed_minutes:
                transition = move(current, SlotState.OVERTIME, now)
                self._commit(transition)
                transitions.append(transition)
        return transitions

    def vacate_all(self, now: datetime) -> List[Transition]:
        """Clear every occupied/overtime slot; administrative, so nothing is billed"""
        transitions = []
        for current in self.registry.get_all():
            if current.status.is_active:
                transition = Transition(current, current.moved_to(SlotState.VACANT, None, now))
                self._commit(transition)
                transitions.append(transition)
        return transitions

    def sync(self, records: Iterable[SlotRecord]) -> List[str]:
        """
        Merge repository rows into the registry.

        New slots are added and vanished ones dropped. Slot metadata always
        follows the repository; status and the disabled flag are adopted only
        when the repository row is newer than the local mirror. Never emits sessions.
        """
        changes = []
        seen = set()

        for record in records:
            remote = SlotSnapshot.from_record(record)
            seen.add(remote.slot_id)
            local = self.registry.get_by_id(remote.slot_id) or self.registry.get(remote.name)

            if local is None:
                self.registry.register(remote)
                changes.append(f"+{remote.name}")
                continue

            if local.name != remote.name:
                self.registry.unregister(local.name)

            merged = replace(local, slot_id=remote.slot_id, name=remote.name,
                             allowed_minutes=remote.allowed_minutes)
            # Status and the disabled flag only come from a newer row
            if remote.updated_at > local.updated_at:
                merged = replace(merged, status=remote.status, occupied_since=remote.occupied_since,
                                 updated_at=remote.updated_at)
                if record.slot.is_disabled and merged.status != SlotState.DISABLED:
                    merged = replace(merged, status=SlotState.DISABLED, occupied_since=None)
                elif not record.slot.is_disabled and merged.status == SlotState.DISABLED:
                    merged = replace(merged, status=SlotState.VACANT, occupied_since=None)

            if merged != local:
                changes.append(f"~{merged.name}")
            self.registry.register(merged)

        for snapshot in self.registry.get_all():
            if snapshot.slot_id not in seen:
                self.registry.unregister(snapshot.name)
                changes.append(f"-{snapshot.name}")

        if changes:
            logger.info(f"Slot cache synced: {', '.join(changes)}")
        return changes

    def snapshot(self, name: str) -> Optional[SlotSnapshot]:
        return self.registry.get(name)

    def snapshots(self) -> List[SlotSnapshot]:
        return self.registry.get_all()

    def _commit(self, transition: Transition):
        if not transition.changed:
            return
        self.registry.register(transition.current)
        logger.info(
            f"Slot {transition.current.name}: {transition.previous.status.value} -> "
            f"{transition.current.status.value}"
        )
