#vps_autoscaler\controller\leader.py

"""Lease-based leader election."""

import logging
import threading
from typing import Callable, Optional

from vps_autoscaler.core.errors import LeaseError
from vps_autoscaler.core.models import utcnow
from vps_autoscaler.core.repository import LeaseRepository

logger = logging.getLogger(__name__)


class LeaderElector:
    """
    Holds the controller lease while the process is leader.

    `step()` is one acquire/renew round and is what tests drive; `start()`
    runs it in a background thread every renew interval.
    """

    def __init__(
        self,
        *,
        leases: LeaseRepository,
        identity: str,
        lease_name: str,
        lease_duration_seconds: int = 15,
        renew_interval_seconds: float = 5.0,
        on_started_leading: Optional[Callable[[], None]] = None,
        on_stopped_leading: Optional[Callable[[], None]] = None,
    ):
        if renew_interval_seconds >= lease_duration_seconds:
            raise ValueError("renew interval must be shorter than the lease duration")

        self.leases = leases
        self.identity = identity
        self.lease_name = lease_name
        self.lease_duration = lease_duration_seconds
        self.renew_interval = renew_interval_seconds
        self.on_started_leading = on_started_leading
        self.on_stopped_leading = on_stopped_leading

        self._leader = threading.Event()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def is_leader(self) -> bool:
        return self._leader.is_set()

    def step(self, now=None) -> bool:
        now = now or utcnow()

        if self.is_leader():
            try:
                self.leases.renew(self.lease_name, self.identity, self.lease_duration, now)
                return True
            except LeaseError as e:
                logger.warning(f"[leader] {self.identity} lost lease {self.lease_name}: {e}")
                self._set_leader(False)

        acquired = self.leases.try_acquire(self.lease_name, self.identity, self.lease_duration, now)
        if acquired:
            self._set_leader(True)
        return acquired

    def start(self) -> None:
        logger.info(f"[leader] {self.identity} campaigning for {self.lease_name}")
        self._thread = threading.Thread(target=self._run_loop, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join()
        if self.is_leader():
            self.leases.release(self.lease_name, self.identity)
            self._set_leader(False)
            logger.info(f"[leader] {self.identity} released {self.lease_name}")

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.step()
            except Exception as e:
                # a broken lease store must not leave us acting as leader
                logger.error(f"[leader] election round failed: {e}", exc_info=True)
                self._set_leader(False)
            self._stop_event.wait(self.renew_interval)

    def _set_leader(self, leading: bool) -> None:
        if leading == self.is_leader():
            return
        if leading:
            self._leader.set()
            logger.info(f"[leader] {self.identity} became leader")
            if self.on_started_leading:
                self.on_started_leading()
        else:
            self._leader.clear()
            logger.info(f"[leader] {self.identity} is no longer leader")
            if self.on_stopped_leading:
                self.on_stopped_leading()
