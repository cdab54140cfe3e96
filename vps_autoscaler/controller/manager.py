# vps_autoscaler/controller/manager.py
"""Controller manager - runs reconcilers on a bounded pool of worker threads."""

import logging
import threading
import time
from datetime import timedelta
from typing import Dict, List, Optional

from vps_autoscaler.controller.leader import LeaderElector
from vps_autoscaler.controller.reconcilers import (
    NODE,
    NODEGROUP,
    REBALANCE,
    ReconcileResult,
    make_key,
    split_key,
)
from vps_autoscaler.controller.slots import SlotManager
from vps_autoscaler.controller.workqueue import WorkItem, WorkQueue
from vps_autoscaler.core.errors import AutoscalerError, ConcurrencyError
from vps_autoscaler.core.models import utcnow
from vps_autoscaler.core.repository import ManagedNodeRepository, NodeGroupRepository

logger = logging.getLogger(__name__)


class ControllerManager:
    """
    Owns the work queue, the worker threads and the resync loop.

    Only the leader reconciles; a standby puts keys back with the default
    requeue so nothing is lost when it takes over.
    """

    def __init__(
        self,
        *,
        groups: NodeGroupRepository,
        nodes: ManagedNodeRepository,
        reconcilers: Dict[str, object],
        queue: Optional[WorkQueue] = None,
        elector: Optional[LeaderElector] = None,
        workers: int = 4,
        default_requeue_seconds: float = 30.0,
        fast_requeue_seconds: float = 10.0,
        reconcile_deadline_seconds: float = 60.0,
        shutdown_grace_seconds: float = 30.0,
        resync_interval_seconds: float = 60.0,
    ):
        self.groups = groups
        self.nodes = nodes
        self.reconcilers = reconcilers
        self.queue = queue if queue is not None else WorkQueue()
        self.elector = elector
        self.slots = SlotManager(workers)
        self.default_requeue = default_requeue_seconds
        self.fast_requeue = fast_requeue_seconds
        self.reconcile_deadline = reconcile_deadline_seconds
        self.shutdown_grace = shutdown_grace_seconds
        self.resync_interval = resync_interval_seconds

        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    # -------------------------
    # LIFECYCLE
    # -------------------------

    def start(self) -> None:
        logger.info(f"[manager] starting {self.slots.total_slots()} worker(s)")
        if self.elector is not None:
            self.elector.start()

        for i in range(self.slots.total_slots()):
            thread = threading.Thread(target=self._worker_loop, name=f"reconcile-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)

        resync = threading.Thread(target=self._resync_loop, name="resync", daemon=True)
        resync.start()
        self._threads.append(resync)

    def stop(self) -> None:
        """Stop taking work and wait up to the grace period for in-flight reconciles."""
        logger.info(f"[manager] stopping, grace period {self.shutdown_grace:.0f}s")
        self._stop_event.set()
        self.queue.shutdown()

        deadline = time.monotonic() + self.shutdown_grace
        for thread in self._threads:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            thread.join(remaining)

        still_running = [s.key for s in self.slots.active_slots()]
        if still_running:
            logger.warning(f"[manager] shutdown grace expired with reconciles in flight: {still_running}")

        if self.elector is not None:
            self.elector.stop()

    def is_leader(self) -> bool:
        return self.elector is None or self.elector.is_leader()

    # -------------------------
    # RESYNC
    # -------------------------

    def enqueue_all(self, reason: str = "resync") -> int:
        count = 0
        for group in self.groups.list():
            self.queue.add(make_key(NODEGROUP, group.name), reason)
            self.queue.add(make_key(REBALANCE, group.name), reason)
            count += 2
        for node in self.nodes.list_all():
            self.queue.add(make_key(NODE, node.node_id), reason)
            count += 1
        return count

    def _resync_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                if self.is_leader():
                    queued = self.enqueue_all()
                    logger.debug(f"[manager] resync queued {queued} key(s)")
                self._warn_overdue()
            except Exception as e:
                logger.error(f"[manager] resync failed: {e}", exc_info=True)
            self._stop_event.wait(self.resync_interval)

    def _warn_overdue(self) -> None:
        for slot in self.slots.overdue(utcnow()):
            logger.warning(f"[manager] reconcile of {slot.key} exceeded {self.reconcile_deadline:.0f}s deadline")

    # -------------------------
    # WORKERS
    # -------------------------

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            item = self.queue.get(timeout=1.0)
            if item is None:
                continue
            try:
                self.process(item)
            finally:
                self.queue.done(item.key)

    def process(self, item: WorkItem) -> Optional[ReconcileResult]:
        """Run one key through its reconciler and schedule follow-ups."""
        if not self.is_leader():
            self.queue.add_after(item.key, self.default_requeue, "standby")
            return None

        now = utcnow()
        slot = self.slots.acquire(item.key, now + timedelta(seconds=self.reconcile_deadline))
        if slot is None:
            self.queue.add_after(item.key, 1.0, item.reason)
            return None

        try:
            kind, name = split_key(item.key)
            reconciler = self.reconcilers.get(kind)
            if reconciler is None:
                logger.error(f"[manager] no reconciler for key {item.key}")
                return None

            result = reconciler.reconcile(name, now=now)

        except ConcurrencyError as e:
            logger.info(f"[manager] {item.key} conflict, retrying: {e}")
            self.queue.add_after(item.key, self.fast_requeue, "conflict")
            return None
        except AutoscalerError as e:
            logger.error(f"[manager] {item.key} reconcile failed: {e}")
            self.queue.add_after(item.key, self.default_requeue, "error")
            return None
        except Exception as e:
            logger.error(f"[manager] {item.key} unexpected error: {e}", exc_info=True)
            self.queue.add_after(item.key, self.default_requeue, "error")
            return None
        finally:
            self.slots.release(slot)

        for key in result.enqueue:
            if key != item.key:
                self.queue.add(key, f"from {item.key}")
        if result.requeue_after is not None:
            self.queue.add_after(item.key, result.requeue_after, "requeue")
        return result
