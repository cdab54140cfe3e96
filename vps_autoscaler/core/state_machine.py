#vps_autoscaler\core\state_machine.py

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from vps_autoscaler.core.conditions import is_condition_true, set_condition
from vps_autoscaler.core.errors import (
    DrainError,
    InvalidPhaseTransition,
    LifecycleError,
    ProviderError,
)
from vps_autoscaler.core.events import EventEmitter
from vps_autoscaler.core.events_model import ControllerEvent
from vps_autoscaler.core.models import ConditionType, ManagedNode, NodeGroup, NodePhase, utcnow
from vps_autoscaler.core.repository import ManagedNodeRepository, NodeGroupRepository
from vps_autoscaler.provider.interface import (
    CloudProvider,
    ClusterClient,
    InstanceSpec,
    InstanceStatus,
)
from vps_autoscaler.provider.retry import BackoffPolicy, is_transient

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    NodePhase.PENDING: {
        NodePhase.PROVISIONING,
        NodePhase.TERMINATING,
        NodePhase.FAILED,
    },
    NodePhase.PROVISIONING: {
        NodePhase.PROVISIONED,
        NodePhase.TERMINATING,
        NodePhase.FAILED,
    },
    NodePhase.PROVISIONED: {
        NodePhase.JOINING,
        NodePhase.TERMINATING,
        NodePhase.FAILED,
    },
    NodePhase.JOINING: {
        NodePhase.READY,
        NodePhase.TERMINATING,
        NodePhase.FAILED,
    },
    NodePhase.READY: {
        NodePhase.TERMINATING,
        NodePhase.FAILED,
    },
    NodePhase.TERMINATING: {
        NodePhase.DELETING,
        NodePhase.READY,  # rollback, only before deletion was requested
        NodePhase.FAILED,
    },
    NodePhase.DELETING: {
        NodePhase.FAILED,
    },
    NodePhase.FAILED: {
        NodePhase.TERMINATING,
    },
}


@dataclass
class LifecycleResult:
    requeue_after: Optional[float] = None
    removed: bool = False


class NodeLifecycleStateMachine:
    """
    Drives one ManagedNode through provisioning, join, readiness, drain and
    deletion.

    Every call to `reconcile` performs at most one external step and returns
    how long to wait before the next one. Checkpoints (create/join/delete
    requested-at) are persisted before the matching provider call so that a
    restart between the two never issues a duplicate create.
    """

    def __init__(
        self,
        *,
        nodes: ManagedNodeRepository,
        groups: NodeGroupRepository,
        provider: CloudProvider,
        cluster: ClusterClient,
        emitter: EventEmitter,
        backoff: BackoffPolicy = BackoffPolicy(),
        provisioning_timeout_seconds: int = 600,
        join_timeout_seconds: int = 900,
        drain_timeout_seconds: int = 300,
        force_drain_on_timeout: bool = False,
        default_requeue_seconds: float = 30.0,
        fast_requeue_seconds: float = 10.0,
    ):
        self.nodes = nodes
        self.groups = groups
        self.provider = provider
        self.cluster = cluster
        self.emitter = emitter
        self.backoff = backoff
        self.provisioning_timeout = provisioning_timeout_seconds
        self.join_timeout = join_timeout_seconds
        self.drain_timeout = drain_timeout_seconds
        self.force_drain_on_timeout = force_drain_on_timeout
        self.default_requeue = default_requeue_seconds
        self.fast_requeue = fast_requeue_seconds

    # -------------------------
    # TRANSITIONS
    # -------------------------

    @staticmethod
    def transition(
        node: ManagedNode,
        new_phase: NodePhase,
        *,
        now: Optional[datetime] = None,
    ) -> ManagedNode:
        now = now or utcnow()

        current = node.phase

        if current == new_phase:
            return node

        allowed = ALLOWED_TRANSITIONS.get(current, set())
        if new_phase not in allowed:
            raise InvalidPhaseTransition(
                f"Cannot transition node {node.node_id} from {current.value} to {new_phase.value}"
            )

        # Timestamp semantics
        if new_phase == NodePhase.PROVISIONED:
            node.provisioned_at = now

        elif new_phase == NodePhase.READY:
            if node.joined_at is None:
                node.joined_at = now
            if node.ready_at is None:
                node.ready_at = now

        elif new_phase == NodePhase.TERMINATING:
            node.terminating_at = now

        node.phase = new_phase
        node.phase_changed_at = now
        node.attempts = 0
        node.next_attempt_at = None
        return node

    # -------------------------
    # PUBLIC API
    # -------------------------

    def request_termination(self, node: ManagedNode, *, now: datetime, drained: bool = False, reason: str = "") -> ManagedNode:
        """Move a node to Terminating and persist. No-op when already leaving."""
        if node.is_leaving():
            return node

        self.transition(node, NodePhase.TERMINATING, now=now)
        if drained:
            node.cordoned = True
            node.drained = True
        self._save(node)
        self._event(node, "Terminating", reason or "Node termination requested")
        logger.info(f"[lifecycle] {node.node_id} -> Terminating ({reason or 'requested'})")
        return node

    def cancel_termination(self, node: ManagedNode, *, now: datetime) -> ManagedNode:
        """Roll a Terminating node back to Ready. Fails once deletion was requested."""
        if node.phase != NodePhase.TERMINATING or node.delete_requested_at is not None:
            raise LifecycleError(
                f"node {node.node_id} cannot be returned to service from {node.phase.value}"
            )
        if node.node_name and node.cordoned:
            self.cluster.uncordon_node(node.node_name)

        node.cordoned = False
        node.drained = False
        node.drain_started_at = None
        node.terminating_at = None
        self.transition(node, NodePhase.READY, now=now)
        self._save(node)
        logger.info(f"[lifecycle] {node.node_id} termination cancelled -> Ready")
        return node

    def reconcile(self, node_id: str, *, now: Optional[datetime] = None) -> LifecycleResult:
        now = now or utcnow()

        node = self.nodes.get(node_id)
        if node is None:
            return LifecycleResult(removed=True)

        if node.next_attempt_at is not None and now < node.next_attempt_at:
            return LifecycleResult(requeue_after=(node.next_attempt_at - now).total_seconds())

        handler = {
            NodePhase.PENDING: self._reconcile_pending,
            NodePhase.PROVISIONING: self._reconcile_provisioning,
            NodePhase.PROVISIONED: self._reconcile_provisioned,
            NodePhase.JOINING: self._reconcile_joining,
            NodePhase.READY: self._reconcile_ready,
            NodePhase.TERMINATING: self._reconcile_terminating,
            NodePhase.DELETING: self._reconcile_deleting,
            NodePhase.FAILED: self._reconcile_failed,
        }[node.phase]

        try:
            return handler(node, now)
        except ProviderError as e:
            if not is_transient(e):
                raise
            return self._retry_later(node, e, now)

    # -------------------------
    # PHASE HANDLERS
    # -------------------------

    def _reconcile_pending(self, node: ManagedNode, now: datetime) -> LifecycleResult:
        group = self.groups.get(node.group_name)
        if group is None:
            self.fail(node, f"node group {node.group_name} no longer exists", now=now)
            return LifecycleResult()

        instance = None
        if node.create_requested_at is None:
            node.create_requested_at = now
            self._save(node)
        else:
            # a create may already have gone through before a restart
            instance = self.provider.find_instance(node.node_id)

        if instance is None:
            try:
                instance = self.provider.create_instance(self._instance_spec(node, group))
            except ProviderError as e:
                if is_transient(e):
                    raise
                self.fail(node, f"create failed: {e}", now=now, reason="ProvisioningFailed")
                return LifecycleResult()

        node.instance_id = instance.instance_id
        node.ip_address = instance.ip_address
        self.transition(node, NodePhase.PROVISIONING, now=now)
        self._save(node)
        self._event(node, "VPSCreated", f"Created instance {instance.instance_id} ({node.offering_id})")
        return LifecycleResult(requeue_after=self.fast_requeue)

    def _reconcile_provisioning(self, node: ManagedNode, now: datetime) -> LifecycleResult:
        info = self.provider.get_instance(node.instance_id)

        if info.status == InstanceStatus.RUNNING:
            node.ip_address = info.ip_address or node.ip_address
            set_condition(node.conditions, ConditionType.VPS_READY, True, "InstanceRunning", now=now)
            self.transition(node, NodePhase.PROVISIONED, now=now)
            self._save(node)
            return LifecycleResult(requeue_after=0)

        if info.status in (InstanceStatus.ERROR, InstanceStatus.GONE, InstanceStatus.DELETING):
            self.fail(node, f"instance entered {info.status.value} while provisioning", now=now, reason="ProvisioningFailed")
            return LifecycleResult()

        started = node.create_requested_at or node.created_at
        if (now - started).total_seconds() > self.provisioning_timeout:
            self.fail(
                node,
                f"instance not running after {self.provisioning_timeout}s",
                now=now,
                reason="ProvisioningFailed",
            )
            return LifecycleResult()

        return LifecycleResult(requeue_after=self.fast_requeue)

    def _reconcile_provisioned(self, node: ManagedNode, now: datetime) -> LifecycleResult:
        if node.join_requested_at is None:
            node.join_requested_at = now
            self._save(node)

        node.node_name = self.cluster.join_cluster(node)
        self.transition(node, NodePhase.JOINING, now=now)
        self._save(node)
        return LifecycleResult(requeue_after=self.fast_requeue)

    def _reconcile_joining(self, node: ManagedNode, now: datetime) -> LifecycleResult:
        if self.cluster.is_node_ready(node.node_name):
            set_condition(node.conditions, ConditionType.NODE_JOINED, True, "Registered", now=now)
            set_condition(node.conditions, ConditionType.NODE_READY, True, "KubeletReady", now=now)
            self.transition(node, NodePhase.READY, now=now)
            self._save(node)
            self._event(node, "NodeJoined", f"Node {node.node_name} joined the cluster")
            self._event(node, "NodeReady", f"Node {node.node_name} is Ready")
            logger.info(f"[lifecycle] {node.node_id} -> Ready as {node.node_name}")
            return LifecycleResult(requeue_after=self.default_requeue)

        started = node.join_requested_at or node.provisioned_at or node.created_at
        if (now - started).total_seconds() > self.join_timeout:
            self.fail(node, f"node did not become Ready within {self.join_timeout}s", now=now, reason="JoinFailed")
            return LifecycleResult()

        return LifecycleResult(requeue_after=self.fast_requeue)

    def _reconcile_ready(self, node: ManagedNode, now: datetime) -> LifecycleResult:
        ready = self.cluster.is_node_ready(node.node_name)
        if is_condition_true(node.conditions, ConditionType.NODE_READY) == ready:
            return LifecycleResult(requeue_after=self.default_requeue)
        set_condition(
            node.conditions,
            ConditionType.NODE_READY,
            ready,
            "KubeletReady" if ready else "KubeletNotReady",
            now=now,
        )
        self._save(node)
        return LifecycleResult(requeue_after=self.default_requeue)

    def _reconcile_terminating(self, node: ManagedNode, now: datetime) -> LifecycleResult:
        joined = node.node_name is not None and node.ready_at is not None

        if joined and not node.drained:
            if not node.cordoned:
                self.cluster.cordon_node(node.node_name)
                node.cordoned = True
                node.drain_started_at = now
                self._save(node)

            started = node.drain_started_at or now
            timed_out = (now - started).total_seconds() > self.drain_timeout
            try:
                done = self.cluster.drain_node(
                    node.node_name,
                    self.drain_timeout,
                    force=timed_out and self.force_drain_on_timeout,
                )
            except DrainError as e:
                return self._drain_failed(node, e, now)

            if not done:
                if timed_out and not self.force_drain_on_timeout:
                    return self._drain_failed(node, DrainError(f"drain exceeded {self.drain_timeout}s"), now)
                return LifecycleResult(requeue_after=self.fast_requeue)

            node.drained = True
            self._save(node)

        if node.instance_id is None and node.create_requested_at is not None:
            found = self.provider.find_instance(node.node_id)
            if found is not None:
                node.instance_id = found.instance_id

        node.delete_requested_at = now
        self.transition(node, NodePhase.DELETING, now=now)
        self._save(node)

        if node.node_name:
            self.cluster.delete_node(node.node_name)
        if node.instance_id is not None:
            self.provider.delete_instance(node.instance_id)
        return LifecycleResult(requeue_after=self.fast_requeue)

    def _reconcile_deleting(self, node: ManagedNode, now: datetime) -> LifecycleResult:
        if node.instance_id is not None:
            info = self.provider.get_instance(node.instance_id)
            if info.status != InstanceStatus.GONE:
                if info.status != InstanceStatus.DELETING:
                    self.provider.delete_instance(node.instance_id)
                return LifecycleResult(requeue_after=self.fast_requeue)

        self.nodes.delete(node.node_id)
        self._event(node, "NodeDeleted", f"Instance {node.instance_id} deleted")
        logger.info(f"[lifecycle] {node.node_id} removed")
        return LifecycleResult(removed=True)

    def _reconcile_failed(self, node: ManagedNode, now: datetime) -> LifecycleResult:
        # Teardown of failed nodes is decided by the group reconciler
        return LifecycleResult()

    # -------------------------
    # FAILURE HANDLING
    # -------------------------

    def fail(self, node: ManagedNode, message: str, *, now: datetime, reason: str = "") -> ManagedNode:
        node.last_error = message
        set_condition(node.conditions, ConditionType.ERROR, True, reason or "Failed", message, now=now)
        self.transition(node, NodePhase.FAILED, now=now)
        self._save(node)
        if reason:
            self._event(node, reason, message, warning=True)
        logger.warning(f"[lifecycle] {node.node_id} -> Failed: {message}")
        return node

    def _retry_later(self, node: ManagedNode, error: Exception, now: datetime) -> LifecycleResult:
        node = self.nodes.get(node.node_id) or node
        node.attempts += 1
        node.last_error = str(error)

        if self.backoff.exhausted(node.attempts):
            reason = "ProvisioningFailed" if node.is_in_flight() else ""
            if node.phase == NodePhase.DELETING:
                # deletion is never abandoned; keep retrying at the cap
                node.next_attempt_at = self.backoff.next_attempt_at(node.attempts, now)
                self._save(node)
                return LifecycleResult(requeue_after=self.backoff.max_seconds)
            self.fail(node, f"giving up after {node.attempts} attempts: {error}", now=now, reason=reason)
            return LifecycleResult()

        delay = self.backoff.delay(node.attempts)
        node.next_attempt_at = self.backoff.next_attempt_at(node.attempts, now)
        self._save(node)
        logger.warning(
            f"[lifecycle] {node.node_id} transient error in {node.phase.value} "
            f"(attempt {node.attempts}): {error}; retry in {delay:.0f}s"
        )
        return LifecycleResult(requeue_after=delay)

    def _drain_failed(self, node: ManagedNode, error: DrainError, now: datetime) -> LifecycleResult:
        node.attempts += 1
        node.last_error = str(error)
        self._event(node, "DrainFailed", str(error), warning=True)

        if self.backoff.exhausted(node.attempts):
            logger.warning(f"[lifecycle] {node.node_id} drain abandoned after {node.attempts} attempts")
            self._save(node)
            self.cancel_termination(node, now=now)
            return LifecycleResult(requeue_after=self.default_requeue)

        node.next_attempt_at = self.backoff.next_attempt_at(node.attempts, now)
        self._save(node)
        return LifecycleResult(requeue_after=self.backoff.delay(node.attempts))

    # -------------------------
    # HELPERS
    # -------------------------

    @staticmethod
    def _instance_spec(node: ManagedNode, group: NodeGroup) -> InstanceSpec:
        return InstanceSpec(
            name=node.node_id,
            idempotency_key=node.node_id,
            datacenter_id=node.datacenter_id,
            offering_id=node.offering_id,
            os_image_id=group.os_image_id,
            ssh_key_ids=list(group.ssh_key_ids),
            tags=list(group.tags) + [f"nodegroup:{group.name}"],
            user_data=group.user_data,
            notes=f"{node.creation_reason.value} node for group {group.name}",
        )

    def _save(self, node: ManagedNode) -> None:
        self.nodes.update(node)

    def _event(self, node: ManagedNode, reason: str, message: str, warning: bool = False) -> None:
        self.emitter.emit([ControllerEvent.for_node(node, reason, message, warning=warning)])
