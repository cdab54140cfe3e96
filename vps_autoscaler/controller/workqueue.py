#vps_autoscaler\controller\workqueue.py

"""Rate-limited, de-duplicating work queue with single writer per key."""

import heapq
import itertools
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple


@dataclass
class WorkItem:
    key: str
    reason: str = ""


class WorkQueue:
    """
    Keys are handed to at most one worker at a time.

    - add() of a key already queued only keeps the first reason
    - add() of a key currently being processed is deferred until done()
    - add_after() schedules a key; the earliest schedule wins
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: List[str] = []
        self._reasons: Dict[str, str] = {}
        self._processing: Set[str] = set()
        self._dirty: Dict[str, str] = {}
        self._delayed: List[Tuple[float, int, str, str]] = []
        self._scheduled: Dict[str, float] = {}
        self._counter = itertools.count()
        self._shutdown = False

    # -------------------------
    # PRODUCERS
    # -------------------------

    def add(self, key: str, reason: str = "") -> None:
        with self._cond:
            if self._shutdown:
                return
            self._add_locked(key, reason)

    def add_after(self, key: str, delay_seconds: float, reason: str = "") -> None:
        if delay_seconds <= 0:
            self.add(key, reason)
            return
        with self._cond:
            if self._shutdown:
                return
            due = self._clock() + delay_seconds
            current = self._scheduled.get(key)
            if current is not None and current <= due:
                return
            self._scheduled[key] = due
            heapq.heappush(self._delayed, (due, next(self._counter), key, reason))
            self._cond.notify()

    def _add_locked(self, key: str, reason: str) -> None:
        if key in self._processing:
            self._dirty.setdefault(key, reason)
            return
        if key in self._reasons:
            return
        self._reasons[key] = reason
        self._queue.append(key)
        self._cond.notify()

    # -------------------------
    # CONSUMERS
    # -------------------------

    def get(self, timeout: Optional[float] = None) -> Optional[WorkItem]:
        """Block until a key is ready; None on shutdown or timeout."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutdown:
                    return None
                self._promote_due_locked()
                if self._queue:
                    key = self._queue.pop(0)
                    reason = self._reasons.pop(key)
                    self._processing.add(key)
                    return WorkItem(key, reason)

                wait = self._next_wait_locked()
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: str) -> None:
        """Release a key; a re-add that arrived while processing is queued now."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                reason = self._dirty.pop(key)
                if not self._shutdown:
                    self._add_locked(key, reason)

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    # -------------------------
    # INTROSPECTION
    # -------------------------

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def is_processing(self, key: str) -> bool:
        with self._cond:
            return key in self._processing

    def pending_delayed(self) -> int:
        with self._cond:
            return len(self._scheduled)

    # -------------------------
    # INTERNALS
    # -------------------------

    def _promote_due_locked(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            due, _, key, reason = heapq.heappop(self._delayed)
            # stale entry superseded by an earlier schedule
            if self._scheduled.get(key) != due:
                continue
            del self._scheduled[key]
            self._add_locked(key, reason)

    def _next_wait_locked(self) -> Optional[float]:
        if not self._delayed:
            return None
        return max(self._delayed[0][0] - self._clock(), 0.0)
