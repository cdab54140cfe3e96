#vps_autoscaler\controller\slots.py

"""Slot accounting for the reconcile worker pool."""

import threading
from datetime import datetime
from typing import List, Optional


class Slot:
    """A single worker slot, bound to one key while it reconciles."""

    def __init__(self, slot_id: int):
        self.slot_id = slot_id
        self.key: Optional[str] = None
        self.deadline: Optional[datetime] = None

    def is_free(self) -> bool:
        return self.key is None

    def bind(self, key: str, deadline: Optional[datetime] = None) -> None:
        if not self.is_free():
            raise ValueError(f"Slot {self.slot_id} already occupied")
        self.key = key
        self.deadline = deadline

    def release(self) -> None:
        self.key = None
        self.deadline = None

    def overdue(self, now: datetime) -> bool:
        return self.deadline is not None and now > self.deadline

    def __repr__(self) -> str:
        status = "free" if self.is_free() else f"occupied({self.key})"
        return f"<Slot(id={self.slot_id}, {status})>"


class SlotManager:
    """Bounded set of slots shared by the worker threads."""

    def __init__(self, max_slots: int):
        if max_slots < 1:
            raise ValueError("max_slots must be at least 1")

        self._slots = [Slot(i) for i in range(max_slots)]
        self._lock = threading.Lock()

    def acquire(self, key: str, deadline: Optional[datetime] = None) -> Optional[Slot]:
        """Bind the first free slot to key, or None when all are busy."""
        with self._lock:
            for slot in self._slots:
                if slot.is_free():
                    slot.bind(key, deadline)
                    return slot
        return None

    def release(self, slot: Slot) -> None:
        with self._lock:
            slot.release()

    def active_slots(self) -> List[Slot]:
        with self._lock:
            return [s for s in self._slots if not s.is_free()]

    def find_slot_by_key(self, key: str) -> Optional[Slot]:
        with self._lock:
            for slot in self._slots:
                if slot.key == key:
                    return slot
        return None

    def overdue(self, now: datetime) -> List[Slot]:
        with self._lock:
            return [s for s in self._slots if s.overdue(now)]

    def total_slots(self) -> int:
        return len(self._slots)

    def free_slots(self) -> int:
        with self._lock:
            return sum(1 for s in self._slots if s.is_free())

    def __repr__(self) -> str:
        return (
            f"<SlotManager(total={self.total_slots()}, "
            f"free={self.free_slots()}, "
            f"active={len(self.active_slots())})>"
        )
