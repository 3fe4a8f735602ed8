# parksense_gateway/core/slot_registry.py
from typing import Dict, List, Optional

from .models import SlotSnapshot


def slot_key(name: str) -> str:
    """Device traffic names slots case-insensitively"""
    return name.strip().casefold()


class SlotRegistry:
    """
    Registry for locally mirrored slots
    Single Responsibility: keyed storage of SlotSnapshots by slot name
    """

    def __init__(self):
        self.slots: Dict[str, SlotSnapshot] = {}

    def register(self, snapshot: SlotSnapshot):
        """Register or replace a slot"""
        self.slots[slot_key(snapshot.name)] = snapshot

    def unregister(self, name: str) -> bool:
        """Unregister a slot"""
        key = slot_key(name)
        if key in self.slots:
            del self.slots[key]
            return True
        return False

    def get(self, name: str) -> Optional[SlotSnapshot]:
        """Get a slot by name"""
        return self.slots.get(slot_key(name))

    def get_by_id(self, slot_id: str) -> Optional[SlotSnapshot]:
        """Get a slot by repository id"""
        for snapshot in self.slots.values():
            if snapshot.slot_id == slot_id:
                return snapshot
        return None

    def get_all(self) -> List[SlotSnapshot]:
        """Get all slots, ordered by name"""
        return sorted(self.slots.values(), key=lambda s: s.name)

    def get_all_names(self) -> List[str]:
        return [s.name for s in self.get_all()]

    def clear(self):
        self.slots.clear()

    def __contains__(self, name: str) -> bool:
        return slot_key(name) in self.slots

    def __len__(self) -> int:
        return len(self.slots)
