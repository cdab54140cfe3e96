# vps_autoscaler/provider/breaker.py
"""Circuit breaker that stops calling the provider API while it keeps failing."""

import logging
import time
from enum import Enum
from threading import Lock
from typing import Callable

logger = logging.getLogger(__name__)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """
    Closed: calls pass, consecutive failures are counted.
    Open: calls are refused until reset_timeout_seconds has elapsed.
    Half-open: one trial call at a time; success_threshold successes close
    the circuit and any failure opens it again.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        reset_timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self._clock = clock
        self._lock = Lock()
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._successes = 0
        self._trial_in_flight = False
        self._opened_at = 0.0

    @property
    def state(self) -> BreakerState:
        return self._state

    def allow(self) -> bool:
        """True if a call may go out now. A True in half-open reserves the trial slot."""
        with self._lock:
            if self._state == BreakerState.OPEN:
                if self._clock() - self._opened_at < self.reset_timeout_seconds:
                    return False
                self._transition(BreakerState.HALF_OPEN, "reset timeout elapsed")

            if self._state == BreakerState.HALF_OPEN:
                if self._trial_in_flight:
                    return False
                self._trial_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state == BreakerState.HALF_OPEN:
                self._trial_in_flight = False
                self._successes += 1
                if self._successes >= self.success_threshold:
                    self._transition(BreakerState.CLOSED, f"{self._successes} successful trial calls")
                return
            self._failures = 0

    def record_failure(self) -> None:
        with self._lock:
            if self._state == BreakerState.HALF_OPEN:
                self._trial_in_flight = False
                self._transition(BreakerState.OPEN, "trial call failed")
                return
            self._failures += 1
            if self._state == BreakerState.CLOSED and self._failures >= self.failure_threshold:
                self._transition(BreakerState.OPEN, f"{self._failures} consecutive failures")

    def _transition(self, state: BreakerState, reason: str) -> None:
        # Caller holds the lock.
        previous = self._state
        self._state = state
        self._failures = 0
        self._successes = 0
        self._trial_in_flight = False
        if state == BreakerState.OPEN:
            self._opened_at = self._clock()
        log = logger.warning if state == BreakerState.OPEN else logger.info
        log(f"[provider] circuit {previous.value} -> {state.value}: {reason}")
