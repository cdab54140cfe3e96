# vps_autoscaler/scaler/engine.py
"""Scaling decisions: utilization -> desired node count -> create/terminate requests."""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple
from uuid import uuid4

from vps_autoscaler.core.conditions import is_condition_true, set_condition
from vps_autoscaler.core.errors import (
    OfferingUnavailableError,
    ProviderError,
    QuotaExceededError,
    ValidationError,
)
from vps_autoscaler.core.events import EventEmitter
from vps_autoscaler.core.events_model import ControllerEvent
from vps_autoscaler.core.models import (
    ConditionType,
    CreationReason,
    ManagedNode,
    NodeGroup,
    NodePhase,
    NodeResources,
    utcnow,
)
from vps_autoscaler.core.repository import (
    ManagedNodeRepository,
    NodeGroupRepository,
    RebalanceRepository,
)
from vps_autoscaler.core.state_machine import NodeLifecycleStateMachine
from vps_autoscaler.core.validation import effective_bounds, validate_node_group
from vps_autoscaler.provider.interface import (
    CloudProvider,
    Offering,
    PendingPod,
    PendingPodSource,
    UtilizationSample,
    UtilizationSource,
)
from vps_autoscaler.provider.retry import BackoffPolicy, is_transient
from vps_autoscaler.safety.gate import SafetyGate

logger = logging.getLogger(__name__)


UP = "up"
DOWN = "down"
NONE = "none"

MAX_PODS_PER_NODE = 110


@dataclass
class ScalingDecision:
    current: int
    desired: int
    direction: str
    reason: str
    limit_reached: bool = False
    cpu_percent: Optional[float] = None
    memory_percent: Optional[float] = None
    underutilized_since: Optional[datetime] = None
    min_nodes: int = 0
    max_nodes: int = 0
    pending_nodes: int = 0


@dataclass
class ScaleResult:
    decision: Optional[ScalingDecision] = None
    created: List[str] = field(default_factory=list)
    terminating: List[str] = field(default_factory=list)
    requeue_after: Optional[float] = None


def aggregate(samples: List[UtilizationSample]) -> Tuple[Optional[float], Optional[float]]:
    """Mean CPU% and memory% over the samples, or (None, None) without data."""
    if not samples:
        return None, None
    cpu = sum(s.cpu_percent for s in samples) / len(samples)
    memory = sum(s.memory_percent for s in samples) / len(samples)
    return cpu, memory


def _elapsed(since: Optional[datetime], now: datetime, seconds: int) -> bool:
    return since is None or (now - since).total_seconds() >= seconds


def nodes_for_pods(pods: List[PendingPod], offering: Offering) -> int:
    """Nodes of `offering` needed to fit the pods by CPU, memory and pod count, at least one."""
    if not pods:
        return 0
    cpu = sum(p.cpu_millicores for p in pods)
    memory = sum(p.memory_mb for p in pods)
    by_cpu = math.ceil(cpu / (offering.cpu * 1000)) if offering.cpu else 0
    by_memory = math.ceil(memory / offering.memory_mb) if offering.memory_mb else 0
    by_count = math.ceil(len(pods) / MAX_PODS_PER_NODE)
    return max(1, by_cpu, by_memory, by_count)


def offering_order(group: NodeGroup) -> List[str]:
    order = []
    for offering_id in [group.preferred_instance_type, *group.offering_ids]:
        if offering_id and offering_id not in order:
            order.append(offering_id)
    return order


class ScalingDecisionEngine:
    """
    Computes the desired node count of a group and applies it.

    decide() is pure; reconcile_group() reads state, decides, and turns the
    delta into Pending ManagedNodes or termination requests.
    """

    def __init__(
        self,
        *,
        groups: NodeGroupRepository,
        nodes: ManagedNodeRepository,
        rebalances: RebalanceRepository,
        lifecycle: NodeLifecycleStateMachine,
        provider: CloudProvider,
        gate: SafetyGate,
        utilization: UtilizationSource,
        emitter: EventEmitter,
        pending_pods: Optional[PendingPodSource] = None,
        backoff: BackoffPolicy = BackoffPolicy(base_seconds=30.0, max_seconds=600.0),
        default_requeue_seconds: float = 30.0,
    ):
        self.groups = groups
        self.nodes = nodes
        self.rebalances = rebalances
        self.lifecycle = lifecycle
        self.provider = provider
        self.gate = gate
        self.utilization = utilization
        self.pending_pods = pending_pods
        self.emitter = emitter
        self.backoff = backoff
        self.default_requeue = default_requeue_seconds

    # -------------------------
    # DECISION
    # -------------------------

    def decide(
        self,
        group: NodeGroup,
        nodes: List[ManagedNode],
        samples: List[UtilizationSample],
        now: datetime,
        *,
        excluded: Optional[Set[str]] = None,
        pending_nodes: int = 0,
    ) -> ScalingDecision:
        """
        `pending_nodes` is how many extra nodes unschedulable pods still need
        beyond those already on their way up. It wins over a scale-down.
        """
        low, high, _ = effective_bounds(group)
        excluded = excluded or set()

        counted = [
            n for n in nodes
            if n.node_id not in excluded
            and n.phase not in (NodePhase.FAILED, NodePhase.TERMINATING, NodePhase.DELETING)
        ]
        current = len(counted)
        ready_ids = {n.node_id for n in counted if n.is_ready()}
        cpu, memory = aggregate([s for s in samples if s.node_id in ready_ids])

        status = group.status
        up = group.scale_up_policy
        down = group.scale_down_policy

        desired = current
        direction = NONE
        reason = "within thresholds"
        underutilized_since = None

        if cpu is not None and up.enabled and (cpu > up.cpu_threshold or memory > up.memory_threshold):
            if _elapsed(status.last_scale_up_time, now, up.stabilization_window_seconds):
                desired = current + up.increment
                reason = f"utilization cpu={cpu:.1f}% memory={memory:.1f}% above scale-up thresholds"
            else:
                reason = "scale-up stabilization window active"

        elif cpu is not None and down.enabled and cpu < down.cpu_threshold and memory < down.memory_threshold:
            underutilized_since = status.underutilized_since or now
            unneeded = (now - underutilized_since).total_seconds() >= down.unneeded_time_seconds
            if not unneeded:
                reason = "underutilized, waiting for unneeded time"
            elif not _elapsed(status.last_scale_down_time, now, down.stabilization_window_seconds):
                reason = "scale-down stabilization window active"
            elif not _elapsed(status.last_scale_up_time, now, down.cooldown_seconds):
                reason = "scale-down cooldown after scale-up active"
            else:
                desired = current - down.decrement
                reason = f"utilization cpu={cpu:.1f}% memory={memory:.1f}% below scale-down thresholds"

        if pending_nodes > 0 and up.enabled:
            underutilized_since = None
            if not _elapsed(status.last_scale_up_time, now, up.stabilization_window_seconds):
                desired = max(desired, current)
                reason = "scale-up stabilization window active"
            elif current + pending_nodes > desired:
                desired = current + pending_nodes
                reason = f"unschedulable pods need {pending_nodes} more node(s)"

        limit_reached = desired > high
        clamped = max(low, min(high, desired))
        if clamped != desired:
            reason = f"{reason}; clamped to [{low}, {high}]"

        if clamped > current:
            direction = UP
        elif clamped < current:
            direction = DOWN

        return ScalingDecision(
            current=current,
            desired=clamped,
            direction=direction,
            reason=reason,
            limit_reached=limit_reached,
            cpu_percent=cpu,
            memory_percent=memory,
            underutilized_since=underutilized_since,
            min_nodes=low,
            max_nodes=high,
            pending_nodes=pending_nodes,
        )

    # -------------------------
    # RECONCILE
    # -------------------------

    def reconcile_group(self, group_name: str, *, now: Optional[datetime] = None) -> ScaleResult:
        now = now or utcnow()
        group = self.groups.get(group_name)
        if group is None:
            return ScaleResult()

        try:
            validate_node_group(group)
        except ValidationError as e:
            return self._invalid(group, e, now)

        nodes = self.nodes.list_by_group(group.name)
        plan_owned, plan_targets = self._active_plan_nodes(group.name)

        if group.is_paused():
            logger.info(f"[scaler] {group.name} paused, skipping")
            self._refresh_status(group, nodes, now)
            self.groups.update(group)
            return ScaleResult(requeue_after=self.default_requeue)

        ready = [n for n in nodes if n.is_ready() and n.node_id not in plan_owned]
        samples: List[UtilizationSample] = []
        try:
            samples = self.utilization.samples(ready)
        except ProviderError as e:
            if not is_transient(e):
                raise
            logger.warning(f"[scaler] {group.name} utilization unavailable: {e}")

        pending_nodes = self._pending_demand(group, nodes, plan_owned)
        decision = self.decide(group, nodes, samples, now, excluded=plan_owned, pending_nodes=pending_nodes)
        group.status.underutilized_since = decision.underutilized_since
        group.status.desired_nodes = decision.desired
        result = ScaleResult(decision=decision, requeue_after=self.default_requeue)

        if decision.limit_reached:
            was_at_max = is_condition_true(group.status.conditions, ConditionType.AT_MAX_CAPACITY)
            set_condition(group.status.conditions, ConditionType.AT_MAX_CAPACITY, True, "ScaleLimitReached", now=now)
            if not was_at_max:
                self.emitter.emit([ControllerEvent.scale_limit_reached(group, decision.max_nodes)])
        else:
            set_condition(group.status.conditions, ConditionType.AT_MAX_CAPACITY, decision.current >= decision.max_nodes, "Capacity", now=now)
        set_condition(group.status.conditions, ConditionType.AT_MIN_CAPACITY, decision.current <= decision.min_nodes, "Capacity", now=now)

        if decision.direction == UP:
            self._scale_up(group, decision, now, result)
        elif decision.direction == DOWN:
            self._scale_down(group, nodes, samples, decision, plan_owned | plan_targets, now, result)

        self._replace_failed(group, nodes, decision, now, result)
        self._refresh_status(group, self.nodes.list_by_group(group.name), now)
        self.groups.update(group)
        return result

    # -------------------------
    # SCALE UP
    # -------------------------

    def _scale_up(self, group: NodeGroup, decision: ScalingDecision, now: datetime, result: ScaleResult) -> None:
        status = group.status
        if status.backoff_until is not None and now < status.backoff_until:
            logger.info(f"[scaler] {group.name} scale-up in backoff until {status.backoff_until.isoformat()}")
            result.requeue_after = (status.backoff_until - now).total_seconds()
            return

        count = decision.desired - decision.current
        try:
            offering, count = self.select_offering(group, count)
        except (OfferingUnavailableError, QuotaExceededError) as e:
            self._provisioning_failed(group, str(e), now, result)
            return
        except ProviderError as e:
            if not is_transient(e):
                raise
            self._provisioning_failed(group, f"provider unavailable: {e}", now, result)
            return

        # Record the scale-up before creating anything: if another writer got
        # in first the update raises ConcurrencyError and nothing is created.
        status.last_scale_time = now
        status.last_scale_up_time = now
        status.desired_nodes = decision.current + count
        status.provisioning_failures = 0
        status.backoff_until = None
        self.groups.update(group)

        if decision.current < decision.min_nodes:
            creation_reason = CreationReason.INITIAL
        elif decision.pending_nodes > 0:
            creation_reason = CreationReason.PENDING_PODS
        else:
            creation_reason = CreationReason.METRICS
        for _ in range(count):
            node = ManagedNode(
                node_id=f"{group.name}-{uuid4().hex[:8]}",
                group_name=group.name,
                offering_id=offering.offering_id,
                datacenter_id=group.datacenter_id,
                resources=NodeResources(
                    cpu=offering.cpu,
                    memory_mb=offering.memory_mb,
                    disk_gb=offering.disk_gb,
                    bandwidth_gb=offering.bandwidth_gb,
                ),
                created_at=now,
                phase_changed_at=now,
                creation_reason=creation_reason,
            )
            self.nodes.create(node)
            result.created.append(node.node_id)

        set_condition(status.conditions, ConditionType.ERROR, False, "ScaledUp", now=now)
        set_condition(status.conditions, ConditionType.SCALING, True, "ScalingUp", decision.reason, now=now)
        self.emitter.emit([ControllerEvent.scaling_up(group, decision.current, decision.current + count)])
        logger.info(
            f"[scaler] {group.name} scale up {decision.current} -> {decision.current + count} "
            f"({offering.offering_id}): {decision.reason}"
        )

    def select_offering(self, group: NodeGroup, count: int) -> Tuple[Offering, int]:
        """
        First available offering in preference order, and how many instances
        quota allows (at most `count`).
        """
        chosen = self.first_available_offering(group)
        if chosen is None:
            raise OfferingUnavailableError(
                f"none of offerings {offering_order(group)} available in {group.datacenter_id}"
            )

        quota = self.provider.available_quota()
        if quota is not None:
            if quota <= 0:
                raise QuotaExceededError("instance quota exhausted")
            count = min(count, quota)
        return chosen, count

    def first_available_offering(self, group: NodeGroup) -> Optional[Offering]:
        catalog: Dict[str, Offering] = {
            o.offering_id: o for o in self.provider.list_offerings(group.datacenter_id)
        }
        for offering_id in offering_order(group):
            offering = catalog.get(offering_id)
            if offering is not None and offering.available:
                return offering
        return None

    def _provisioning_failed(self, group: NodeGroup, message: str, now: datetime, result: ScaleResult) -> None:
        status = group.status
        status.provisioning_failures += 1
        delay = self.backoff.delay(status.provisioning_failures)
        status.backoff_until = now + timedelta(seconds=delay)
        set_condition(status.conditions, ConditionType.ERROR, True, "ProvisioningFailed", message, now=now)
        self.emitter.emit([ControllerEvent.provisioning_failed(group, message)])
        result.requeue_after = delay
        logger.warning(f"[scaler] {group.name} provisioning failed ({message}); backoff {delay:.0f}s")

    # -------------------------
    # SCALE DOWN
    # -------------------------

    def select_victims(
        self,
        nodes: List[ManagedNode],
        samples: List[UtilizationSample],
        count: int,
        excluded: Set[str],
    ) -> List[ManagedNode]:
        """Lowest-utilization Ready nodes first, ties broken by instance id."""
        usage = {s.node_id: (s.cpu_percent + s.memory_percent) / 2 for s in samples}
        candidates = [
            n for n in nodes
            if n.is_ready() and not n.is_protected() and n.node_id not in excluded
        ]
        candidates.sort(key=lambda n: (usage.get(n.node_id, 0.0), n.instance_id or "", n.node_id))
        return candidates[:count]

    def _scale_down(
        self,
        group: NodeGroup,
        nodes: List[ManagedNode],
        samples: List[UtilizationSample],
        decision: ScalingDecision,
        excluded: Set[str],
        now: datetime,
        result: ScaleResult,
    ) -> None:
        count = decision.current - decision.desired
        victims = self.select_victims(nodes, samples, count, excluded)
        if not victims:
            logger.info(f"[scaler] {group.name} no removable node for scale-down")
            return

        ready_count = sum(1 for n in nodes if n.is_ready())
        gate = self.gate.for_scale_down(group, decision.min_nodes, ready_count, victims)
        if not gate.passed:
            self.emitter.emit([ControllerEvent.safety_check_failed(group.name, gate.summary())])
            return

        status = group.status
        status.last_scale_time = now
        status.last_scale_down_time = now
        status.underutilized_since = None
        self.groups.update(group)

        for node in victims:
            self.lifecycle.request_termination(node, now=now, reason="scale-down: underutilized")
            result.terminating.append(node.node_id)

        set_condition(status.conditions, ConditionType.SCALING, True, "ScalingDown", decision.reason, now=now)
        self.emitter.emit([
            ControllerEvent.scaling_down(group, decision.current, decision.current - len(victims), result.terminating)
        ])
        logger.info(f"[scaler] {group.name} scale down {decision.current} -> {decision.current - len(victims)}")

    # -------------------------
    # FAILED NODES
    # -------------------------

    def _replace_failed(self, group: NodeGroup, nodes: List[ManagedNode], decision: ScalingDecision, now: datetime, result: ScaleResult) -> None:
        failed = [n for n in nodes if n.phase == NodePhase.FAILED]
        if not failed:
            return
        ready_count = sum(1 for n in self.nodes.list_by_group(group.name) if n.is_ready())
        if ready_count < decision.min_nodes:
            return
        for node in failed:
            self.lifecycle.request_termination(node, now=now, reason=f"tearing down failed node: {node.last_error}")
            result.terminating.append(node.node_id)

    # -------------------------
    # HELPERS
    # -------------------------

    def _pending_demand(self, group: NodeGroup, nodes: List[ManagedNode], excluded: Set[str]) -> int:
        """Nodes unschedulable pods need beyond those already on their way up."""
        if self.pending_pods is None:
            return 0
        try:
            pods = self.pending_pods.pending_pods(group)
            offering = self.first_available_offering(group) if pods else None
        except ProviderError as e:
            if not is_transient(e):
                raise
            logger.warning(f"[scaler] {group.name} pending pods unavailable: {e}")
            return 0
        if offering is None:
            return 0

        needed = nodes_for_pods(pods, offering)
        in_flight = sum(1 for n in nodes if n.is_in_flight() and n.node_id not in excluded)
        if needed > in_flight:
            logger.info(
                f"[scaler] {group.name} {len(pods)} unschedulable pod(s) need {needed} "
                f"{offering.offering_id} node(s), {in_flight} in flight"
            )
        return max(0, needed - in_flight)

    def _active_plan_nodes(self, group_name: str) -> Tuple[Set[str], Set[str]]:
        """(replacement nodes owned by the active plan, nodes the plan is replacing)."""
        execution = self.rebalances.get_active_execution(group_name)
        if execution is None:
            return set(), set()
        owned = {
            n.node_id for n in self.nodes.list_by_group(group_name)
            if n.owner_plan_id == execution.plan_id
        }
        plan = self.rebalances.get_plan(execution.plan_id)
        targets = set(plan.all_node_ids()) if plan else set()
        return owned, targets

    def _refresh_status(self, group: NodeGroup, nodes: List[ManagedNode], now: datetime) -> None:
        status = group.status
        active = [n for n in nodes if n.phase not in (NodePhase.FAILED, NodePhase.DELETING)]
        status.current_nodes = len(active)
        status.ready_nodes = sum(1 for n in nodes if n.is_ready())
        in_flight = any(n.is_in_flight() or n.is_leaving() for n in nodes)
        if not in_flight:
            set_condition(status.conditions, ConditionType.SCALING, False, "Stable", now=now)
        set_condition(
            status.conditions,
            ConditionType.READY,
            status.ready_nodes >= group.min_nodes,
            "MinimumReady" if status.ready_nodes >= group.min_nodes else "BelowMinimum",
            now=now,
        )

    def _invalid(self, group: NodeGroup, error: ValidationError, now: datetime) -> ScaleResult:
        set_condition(group.status.conditions, ConditionType.ERROR, True, "InvalidConfiguration", str(error), now=now)
        self.groups.update(group)
        self.emitter.emit([ControllerEvent.invalid_configuration(group, str(error))])
        logger.warning(f"[scaler] {group.name} invalid configuration: {error}")
        return ScaleResult()
