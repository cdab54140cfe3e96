"""Event emitters for the autoscaler controller."""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Iterable, List, Optional

from vps_autoscaler.core.events_model import ControllerEvent, NORMAL, WARNING

logger = logging.getLogger(__name__)


ALLOWED_REASONS = {
    # scaling
    "ScalingUp",
    "ScalingDown",
    "ScaleLimitReached",
    "ProvisioningFailed",
    "InvalidConfiguration",
    # node lifecycle
    "VPSCreated",
    "NodeJoined",
    "NodeReady",
    "Terminating",
    "NodeDeleted",
    "JoinFailed",
    "DrainFailed",
    # rebalancing
    "RebalanceStarted",
    "RebalanceCompleted",
    "RebalanceFailed",
    "RebalanceRolledBack",
    "RebalancePaused",
    "RollbackFailed",
    "SafetyCheckFailed",
}


class EventEmitter(ABC):
    """Abstract event emitter."""

    @abstractmethod
    def emit(self, events: Iterable[ControllerEvent]) -> None:
        """Emit one or more events."""
        pass


def _check(event: ControllerEvent) -> None:
    if event.reason not in ALLOWED_REASONS:
        raise ValueError(f"Invalid event reason: {event.reason}")
    if event.event_type not in (NORMAL, WARNING):
        raise ValueError(f"Invalid event type: {event.event_type}")
    if not event.object_name:
        raise ValueError("Event must reference an object")


class LogEventEmitter(EventEmitter):
    """Logs events and keeps the most recent ones in memory for the status API."""

    def __init__(self, capacity: int = 1000):
        self.events = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def emit(self, events: Iterable[ControllerEvent]) -> None:
        for event in events:
            _check(event)

            with self._lock:
                self.events.append(event)

            line = (
                f"[event] {event.reason} | {event.object_kind}/{event.object_name} | "
                f"{event.message}"
            )
            if event.event_type == WARNING:
                logger.warning(line)
            else:
                logger.info(line)

    def recent(self, limit: int = 100, object_name: Optional[str] = None) -> List[ControllerEvent]:
        with self._lock:
            items = list(self.events)
        if object_name is not None:
            items = [e for e in items if e.object_name == object_name]
        return items[-limit:]

    def reasons(self) -> List[str]:
        with self._lock:
            return [e.reason for e in self.events]


class MultiEventEmitter(EventEmitter):
    """Fan-out to multiple emitters."""

    def __init__(self, emitters: Iterable[EventEmitter]):
        self._emitters = list(emitters)

    def emit(self, events: Iterable[ControllerEvent]) -> None:
        events = list(events)
        for emitter in self._emitters:
            emitter.emit(events)


class NullEventEmitter(EventEmitter):
    """No-op emitter (used when events are not needed)."""

    def emit(self, events: Iterable[ControllerEvent]) -> None:
        pass
