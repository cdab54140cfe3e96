# vps_autoscaler/rebalancer/executor.py
"""Executes rebalance plans batch by batch, resumably, with per-batch rollback."""

import logging
from datetime import datetime
from typing import Dict, List, Optional
from uuid import uuid4

from vps_autoscaler.core.conditions import set_condition
from vps_autoscaler.core.errors import (
    AutoscalerError,
    DrainError,
    NotFoundError,
    RollbackError,
)
from vps_autoscaler.core.events import EventEmitter
from vps_autoscaler.core.events_model import ControllerEvent
from vps_autoscaler.core.models import (
    ConditionType,
    CreationReason,
    ManagedNode,
    NodeGroup,
    NodePhase,
    RebalanceStrategy,
    utcnow,
)
from vps_autoscaler.core.repository import (
    ManagedNodeRepository,
    NodeGroupRepository,
    RebalanceRepository,
)
from vps_autoscaler.core.state_machine import NodeLifecycleStateMachine
from vps_autoscaler.provider.interface import ClusterClient
from vps_autoscaler.provider.retry import BackoffPolicy
from vps_autoscaler.rebalancer.planner import RebalancePlanner, effective_batch_size
from vps_autoscaler.rebalancer.types import (
    BatchState,
    BatchStatus,
    ExecutionState,
    ExecutionStatus,
    NodeReplacementState,
    NodeStep,
    RebalancePlan,
    RebalanceResult,
)
from vps_autoscaler.safety.gate import SafetyGate

logger = logging.getLogger(__name__)


# Steps at which the old node is still in service and a replacement has
# been requested; used for the surge / blue-green drain barrier.
_PRE_DRAIN = (NodeStep.PENDING, NodeStep.PROVISIONING)

# Steps at which the old node is cordoned but not yet removed.
_OUT_OF_SERVICE = (NodeStep.CORDONED, NodeStep.DRAINED, NodeStep.VERIFIED, NodeStep.TERMINATING)


class RebalanceExecutor:
    """
    Advances a persisted plan one sub-step per node per call.

    Never blocks: execute() returns a RebalanceResult with requeue_after and
    the caller schedules the next pass. ExecutionState is written after every
    sub-step, so a restarted controller resumes exactly where it stopped.
    """

    def __init__(
        self,
        *,
        groups: NodeGroupRepository,
        nodes: ManagedNodeRepository,
        rebalances: RebalanceRepository,
        lifecycle: NodeLifecycleStateMachine,
        cluster: ClusterClient,
        gate: SafetyGate,
        emitter: EventEmitter,
        backoff: BackoffPolicy = BackoffPolicy(),
        fast_requeue_seconds: float = 10.0,
        default_requeue_seconds: float = 30.0,
    ):
        self.groups = groups
        self.nodes = nodes
        self.rebalances = rebalances
        self.lifecycle = lifecycle
        self.cluster = cluster
        self.gate = gate
        self.emitter = emitter
        self.backoff = backoff
        self.fast_requeue = fast_requeue_seconds
        self.default_requeue = default_requeue_seconds

    # -------------------------
    # START
    # -------------------------

    def start(self, plan: RebalancePlan, *, now: Optional[datetime] = None) -> ExecutionState:
        """Persist the plan and its initial execution state. Raises RebalanceInProgressError."""
        now = now or utcnow()
        state = ExecutionState(
            plan_id=plan.plan_id,
            group_name=plan.group_name,
            status=ExecutionStatus.RUNNING,
            current_batch=1,
            batches=[
                BatchState(
                    batch_number=batch.batch_number,
                    nodes=[
                        NodeReplacementState(node_id=c.node_id, offering_id=c.target_offering)
                        for c in batch.nodes
                    ],
                )
                for batch in plan.batches
            ],
            created_at=now,
            started_at=now,
        )
        self.rebalances.save_plan(plan)
        self.rebalances.create_execution(state)

        group = self.groups.get(plan.group_name)
        if group is not None:
            set_condition(group.status.conditions, ConditionType.REBALANCING, True, "RebalanceStarted", plan.plan_id, now=now)
            self.groups.update(group)

        self.emitter.emit([
            ControllerEvent.rebalance(
                "RebalanceStarted",
                plan.group_name,
                plan.plan_id,
                f"Replacing {len(plan.all_node_ids())} node(s) "
                f"{plan.opportunity.current_offering} -> {plan.opportunity.target_offering} "
                f"in {len(plan.batches)} batch(es)",
            )
        ])
        logger.info(f"[executor] {plan.plan_id} started")
        return state

    # -------------------------
    # EXECUTE
    # -------------------------

    def execute(self, plan: RebalancePlan, *, now: Optional[datetime] = None) -> RebalanceResult:
        now = now or utcnow()
        state = self.rebalances.get_execution(plan.plan_id)
        if state is None:
            raise NotFoundError(f"no execution state for plan {plan.plan_id}")

        if state.status.is_terminal():
            return self._result(state)

        group = self.groups.get(plan.group_name)
        if group is None:
            state.errors.append(f"node group {plan.group_name} no longer exists")
            return self._finish(plan, state, None, ExecutionStatus.FAILED, now)

        if not self._check_pause(plan, state, group):
            return self._result(state, requeue_after=self.default_requeue)

        for batch in plan.batches:
            bs = state.batch(batch.batch_number)
            if bs.status.is_terminal():
                continue

            if bs.status == BatchStatus.PENDING:
                if not RebalancePlanner.can_execute_batch(plan, state, batch.batch_number):
                    continue
                if not self._batch_gate_open(plan, group, bs, now):
                    continue
                bs.status = BatchStatus.RUNNING
                bs.started_at = now
                state.current_batch = max(state.current_batch, batch.batch_number)
                self._checkpoint(state)
                logger.info(f"[executor] {plan.plan_id} batch {batch.batch_number} started")

            for ns in bs.nodes:
                if ns.step.is_terminal():
                    continue
                try:
                    self._advance(plan, state, bs, ns, group, now)
                except RollbackError as e:
                    return self._rollback_failed(plan, state, group, ns, e, now)
                if bs.status.is_terminal():
                    break

            self._settle_batch(plan, state, bs, now)

        final = self._final_status(plan, state)
        if final is not None:
            return self._finish(plan, state, group, final, now)

        return self._result(state, requeue_after=self.fast_requeue)

    # -------------------------
    # NODE SUB-STEPS
    # -------------------------

    def _advance(
        self,
        plan: RebalancePlan,
        state: ExecutionState,
        bs: BatchState,
        ns: NodeReplacementState,
        group: NodeGroup,
        now: datetime,
    ) -> None:
        if ns.next_attempt_at is not None and now < ns.next_attempt_at:
            return

        policy = group.rebalancing_policy
        old = self.nodes.get(ns.node_id)

        if ns.step == NodeStep.PENDING:
            self._provision(plan, state, ns, group, old, now)

        elif ns.step == NodeStep.PROVISIONING:
            replacement = self.nodes.get(ns.replacement_node_id) if ns.replacement_node_id else None
            if replacement is not None and replacement.is_ready():
                ns.step = NodeStep.REPLACEMENT_READY
                ns.attempts = 0
                self._checkpoint(state)
            elif replacement is None or replacement.phase == NodePhase.FAILED:
                reason = replacement.last_error if replacement else "replacement disappeared"
                self._provisioning_failed(plan, state, ns, group, replacement, reason, now)
            elif (now - ns.provision_started_at).total_seconds() > policy.provision_timeout_seconds:
                self._provisioning_failed(
                    plan, state, ns, group, replacement,
                    f"replacement not Ready within {policy.provision_timeout_seconds}s", now,
                )

        elif ns.step == NodeStep.REPLACEMENT_READY:
            if not self._drain_barrier_open(plan, state, bs):
                return
            if self._disruption_headroom(plan, state, group) <= 0:
                return
            if old is None or old.node_name is None:
                self._node_done(state, ns, "old node already gone")
                return
            self.cluster.cordon_node(old.node_name)
            old.cordoned = True
            self.nodes.update(old)
            ns.step = NodeStep.CORDONED
            ns.drain_started_at = now
            self._checkpoint(state)

        elif ns.step == NodeStep.CORDONED:
            if old is None:
                self._node_done(state, ns, "old node already gone")
                return
            self._drain(plan, state, bs, ns, group, old, now)

        elif ns.step == NodeStep.DRAINED:
            replacement = self.nodes.get(ns.replacement_node_id)
            healthy = (
                replacement is not None
                and replacement.is_ready()
                and self.cluster.workloads_healthy(replacement.node_name)
            )
            if healthy:
                ns.step = NodeStep.VERIFIED
                self._checkpoint(state)
                return
            if ns.verify_started_at is None:
                ns.verify_started_at = now
                self._checkpoint(state)
            if (now - ns.verify_started_at).total_seconds() > policy.health_check_timeout_seconds:
                self._rollback_batch(plan, state, bs, group, f"workloads unhealthy on replacement of {ns.node_id}", now)

        elif ns.step == NodeStep.VERIFIED:
            if old is None:
                self._node_done(state, ns, "old node already gone")
                return
            self.lifecycle.request_termination(
                old,
                now=now,
                drained=True,
                reason=f"replaced by {ns.replacement_node_id} (plan {plan.plan_id})",
            )
            ns.step = NodeStep.TERMINATING
            self._checkpoint(state)

        elif ns.step == NodeStep.TERMINATING:
            if old is None or old.phase == NodePhase.DELETING:
                self._node_done(state, ns)

    def _provision(
        self,
        plan: RebalancePlan,
        state: ExecutionState,
        ns: NodeReplacementState,
        group: NodeGroup,
        old: Optional[ManagedNode],
        now: datetime,
    ) -> None:
        if old is None:
            self._node_done(state, ns, "old node already gone")
            return

        if ns.replacement_node_id is None:
            ns.replacement_node_id = f"{group.name}-{uuid4().hex[:8]}"
            self._checkpoint(state)

        if self.nodes.get(ns.replacement_node_id) is None:
            replacement = ManagedNode(
                node_id=ns.replacement_node_id,
                group_name=group.name,
                offering_id=ns.offering_id or plan.opportunity.target_offering,
                datacenter_id=group.datacenter_id,
                created_at=now,
                phase_changed_at=now,
                creation_reason=CreationReason.REBALANCE,
                owner_plan_id=plan.plan_id,
                replaces_node_id=old.node_id,
            )
            self.nodes.create(replacement)

        ns.step = NodeStep.PROVISIONING
        ns.provision_started_at = now
        if ns.replacement_node_id not in state.provisioned_nodes:
            state.provisioned_nodes.append(ns.replacement_node_id)
        self._checkpoint(state)
        logger.info(f"[executor] {plan.plan_id} provisioning {ns.replacement_node_id} for {old.node_id}")

    def _provisioning_failed(
        self,
        plan: RebalancePlan,
        state: ExecutionState,
        ns: NodeReplacementState,
        group: NodeGroup,
        replacement: Optional[ManagedNode],
        reason: str,
        now: datetime,
    ) -> None:
        """Retry with backoff, then fall back to the next offering. Never rolls back."""
        if replacement is not None and not replacement.is_leaving():
            self.lifecycle.request_termination(replacement, now=now, reason=f"replacement failed: {reason}")

        ns.attempts += 1
        ns.error = reason
        ns.replacement_node_id = None
        ns.provision_started_at = None
        state.errors.append(f"{ns.node_id}: provisioning failed ({reason})")

        policy = group.rebalancing_policy
        if ns.attempts <= policy.max_retries:
            ns.step = NodeStep.PENDING
            ns.next_attempt_at = self.backoff.next_attempt_at(ns.attempts, now)
            self._checkpoint(state)
            logger.warning(f"[executor] {plan.plan_id} {ns.node_id} provisioning retry {ns.attempts}: {reason}")
            return

        fallbacks = self._fallback_offerings(plan, group)
        if group.allow_mixed_instances and ns.offering_index + 1 < len(fallbacks):
            ns.offering_index += 1
            ns.offering_id = fallbacks[ns.offering_index]
            ns.attempts = 0
            ns.step = NodeStep.PENDING
            ns.next_attempt_at = None
            self._checkpoint(state)
            logger.warning(f"[executor] {plan.plan_id} {ns.node_id} falling back to offering {ns.offering_id}")
            return

        ns.step = NodeStep.FAILED
        if ns.node_id not in state.failed_nodes:
            state.failed_nodes.append(ns.node_id)
        self._checkpoint(state)
        logger.error(f"[executor] {plan.plan_id} {ns.node_id} provisioning exhausted: {reason}")

    @staticmethod
    def _fallback_offerings(plan: RebalancePlan, group: NodeGroup) -> List[str]:
        offerings = [plan.opportunity.target_offering]
        for offering_id in group.offering_ids:
            if offering_id not in offerings and offering_id != plan.opportunity.current_offering:
                offerings.append(offering_id)
        return offerings

    def _drain(
        self,
        plan: RebalancePlan,
        state: ExecutionState,
        bs: BatchState,
        ns: NodeReplacementState,
        group: NodeGroup,
        old: ManagedNode,
        now: datetime,
    ) -> None:
        """
        One eviction pass on the old node.

        A refused eviction is retried with backoff until drain_timeout_seconds
        has passed since the cordon. Only then is the drain forced (when the
        policy allows it) or reported as failed.
        """
        policy = group.rebalancing_policy
        started = ns.drain_started_at or now
        timed_out = (now - started).total_seconds() > policy.drain_timeout_seconds

        try:
            done = self.cluster.drain_node(old.node_name, policy.drain_timeout_seconds, force=False)
        except DrainError as e:
            if not timed_out:
                ns.attempts += 1
                ns.error = str(e)
                ns.next_attempt_at = self.backoff.next_attempt_at(ns.attempts, now)
                self._checkpoint(state)
                logger.warning(f"[executor] {plan.plan_id} {old.node_id} drain refused, retry {ns.attempts}: {e}")
                return
            if not policy.force_drain_on_timeout:
                self._drain_failed(plan, state, bs, ns, group, old, str(e), now)
                return
            done = False

        if not done and timed_out:
            if policy.force_drain_on_timeout:
                logger.warning(f"[executor] {plan.plan_id} {old.node_id} drain timed out, forcing")
                try:
                    done = self.cluster.drain_node(old.node_name, policy.drain_timeout_seconds, force=True)
                except DrainError as forced:
                    self._drain_failed(plan, state, bs, ns, group, old, str(forced), now)
                    return
            if not done:
                self._drain_failed(plan, state, bs, ns, group, old, f"drain exceeded {policy.drain_timeout_seconds}s", now)
                return

        if done:
            old.drained = True
            self.nodes.update(old)
            ns.step = NodeStep.DRAINED
            ns.attempts = 0
            ns.next_attempt_at = None
            self._checkpoint(state)

    def _drain_failed(
        self,
        plan: RebalancePlan,
        state: ExecutionState,
        bs: BatchState,
        ns: NodeReplacementState,
        group: NodeGroup,
        old: ManagedNode,
        reason: str,
        now: datetime,
    ) -> None:
        self.emitter.emit([ControllerEvent.for_node(old, "DrainFailed", reason, warning=True)])
        ns.error = reason
        if group.rebalancing_policy.auto_rollback:
            self._rollback_batch(plan, state, bs, group, f"drain of {old.node_id} failed: {reason}", now)
            return

        ns.step = NodeStep.FAILED
        state.failed_nodes.append(ns.node_id)
        state.errors.append(f"{ns.node_id}: drain failed ({reason})")
        bs.status = BatchStatus.FAILED
        bs.completed_at = now
        self._checkpoint(state)

    # -------------------------
    # ROLLBACK
    # -------------------------

    def _rollback_batch(
        self,
        plan: RebalancePlan,
        state: ExecutionState,
        bs: BatchState,
        group: NodeGroup,
        reason: str,
        now: datetime,
    ) -> None:
        """Undo one batch: uncordon old nodes, terminate replacements, recreate terminated ones."""
        logger.warning(f"[executor] {plan.plan_id} rolling back batch {bs.batch_number}: {reason}")
        state.errors.append(f"batch {bs.batch_number} rolled back: {reason}")

        for ns in bs.nodes:
            if ns.step in (NodeStep.ROLLED_BACK, NodeStep.FAILED):
                continue
            step_name = "restore-old"
            try:
                old = self.nodes.get(ns.node_id)
                if ns.step in (NodeStep.TERMINATING, NodeStep.DONE) and (old is None or old.phase == NodePhase.DELETING):
                    step_name = "recreate-old"
                    self._recreate_old(plan, group, ns, now)
                elif old is not None:
                    if old.phase == NodePhase.TERMINATING:
                        self.lifecycle.cancel_termination(old, now=now)
                    elif old.cordoned and old.node_name:
                        self.cluster.uncordon_node(old.node_name)
                        old.cordoned = False
                        old.drained = False
                        self.nodes.update(old)

                step_name = "terminate-replacement"
                if ns.replacement_node_id:
                    replacement = self.nodes.get(ns.replacement_node_id)
                    if replacement is not None and not replacement.is_leaving():
                        self.lifecycle.request_termination(
                            replacement, now=now, reason=f"rollback of plan {plan.plan_id}"
                        )
            except AutoscalerError as e:
                ns.error = f"rollback failed at {step_name}: {e}"
                self._checkpoint(state)
                raise RollbackError(f"{ns.node_id}: {e}", step=step_name) from e

            ns.step = NodeStep.ROLLED_BACK
            self._checkpoint(state)

        bs.status = BatchStatus.ROLLED_BACK
        bs.completed_at = now
        self._checkpoint(state)
        self.emitter.emit([
            ControllerEvent.rebalance(
                "RebalanceRolledBack",
                plan.group_name,
                plan.plan_id,
                f"Batch {bs.batch_number} rolled back: {reason}",
                warning=True,
            )
        ])

    def _recreate_old(self, plan: RebalancePlan, group: NodeGroup, ns: NodeReplacementState, now: datetime) -> None:
        node = ManagedNode(
            node_id=f"{group.name}-{uuid4().hex[:8]}",
            group_name=group.name,
            offering_id=plan.opportunity.current_offering,
            datacenter_id=group.datacenter_id,
            created_at=now,
            phase_changed_at=now,
            creation_reason=CreationReason.REBALANCE,
            replaces_node_id=ns.replacement_node_id,
        )
        self.nodes.create(node)
        logger.info(f"[executor] {plan.plan_id} recreating {ns.node_id} on {plan.opportunity.current_offering} as {node.node_id}")

    def _rollback_failed(
        self,
        plan: RebalancePlan,
        state: ExecutionState,
        group: NodeGroup,
        ns: NodeReplacementState,
        error: RollbackError,
        now: datetime,
    ) -> RebalanceResult:
        ns.step = NodeStep.FAILED
        if ns.node_id not in state.failed_nodes:
            state.failed_nodes.append(ns.node_id)
        state.errors.append(f"rollback failed at step {error.step}: {error}")
        self.emitter.emit([
            ControllerEvent.rebalance(
                "RollbackFailed",
                plan.group_name,
                plan.plan_id,
                f"Rollback failed at {error.step} for {ns.node_id}: {error}",
                warning=True,
            )
        ])
        return self._finish(plan, state, group, ExecutionStatus.FAILED, now)

    # -------------------------
    # BATCH / PLAN BOOKKEEPING
    # -------------------------

    def _check_pause(self, plan: RebalancePlan, state: ExecutionState, group: NodeGroup) -> bool:
        """Pause on the group annotation or a failed cluster health check; resume when clear."""
        reason = None
        if group.is_paused():
            reason = "group paused by annotation"
        else:
            health = self.gate.cluster_health(group.rebalancing_policy.min_healthy_percent)
            if not health.passed:
                reason = health.reason

        if reason is not None:
            if state.status != ExecutionStatus.PAUSED:
                state.status = ExecutionStatus.PAUSED
                state.errors.append(f"paused: {reason}")
                self._checkpoint(state)
                self.emitter.emit([
                    ControllerEvent.rebalance("RebalancePaused", plan.group_name, plan.plan_id, reason, warning=True)
                ])
                logger.warning(f"[executor] {plan.plan_id} paused: {reason}")
            return False

        if state.status == ExecutionStatus.PAUSED:
            state.status = ExecutionStatus.RUNNING
            self._checkpoint(state)
            logger.info(f"[executor] {plan.plan_id} resumed")
        return True

    def _batch_gate_open(self, plan: RebalancePlan, group: NodeGroup, bs: BatchState, now: datetime) -> bool:
        batch_nodes = [n for n in (self.nodes.get(ns.node_id) for ns in bs.nodes) if n is not None]
        # Replacements this plan is still bringing up and nodes on their way
        # out say nothing about the group's health.
        group_nodes = [
            n for n in self.nodes.list_by_group(group.name)
            if not n.is_leaving() and not (n.owner_plan_id == plan.plan_id and not n.is_ready())
        ]
        offering_counts: Dict[str, int] = {}
        for ns in bs.nodes:
            offering_id = ns.offering_id or plan.opportunity.target_offering
            offering_counts[offering_id] = offering_counts.get(offering_id, 0) + 1

        result = self.gate.for_batch(group, batch_nodes, group_nodes, offering_counts, now)
        if not result.passed:
            logger.info(f"[executor] {plan.plan_id} batch {bs.batch_number} waiting: {result.summary()}")
        return result.passed

    @staticmethod
    def _drain_barrier_open(plan: RebalancePlan, state: ExecutionState, bs: BatchState) -> bool:
        if plan.strategy == RebalanceStrategy.ROLLING:
            return True
        if plan.strategy == RebalanceStrategy.BLUE_GREEN:
            scope = bs.nodes
        else:
            # surge: only batches already admitted; pending ones wait on max_concurrent
            scope = [ns for b in state.batches if b.status == BatchStatus.RUNNING for ns in b.nodes]
        return all(ns.step not in _PRE_DRAIN for ns in scope)

    @staticmethod
    def _disruption_headroom(plan: RebalancePlan, state: ExecutionState, group: NodeGroup) -> int:
        """How many more old nodes may be cordoned without breaking min_healthy_percent."""
        total = plan.total_nodes or len(plan.all_node_ids())
        budget = max(1, effective_batch_size(group.rebalancing_policy, total))
        out = sum(1 for b in state.batches for ns in b.nodes if ns.step in _OUT_OF_SERVICE)
        return budget - out

    def _node_done(self, state: ExecutionState, ns: NodeReplacementState, note: str = "") -> None:
        ns.step = NodeStep.DONE
        if note:
            ns.error = note
        if ns.node_id not in state.completed_nodes:
            state.completed_nodes.append(ns.node_id)
        self._checkpoint(state)

    def _settle_batch(self, plan: RebalancePlan, state: ExecutionState, bs: BatchState, now: datetime) -> None:
        if bs.status != BatchStatus.RUNNING:
            return
        if not all(ns.step.is_terminal() for ns in bs.nodes):
            return
        if all(ns.step == NodeStep.DONE for ns in bs.nodes):
            bs.status = BatchStatus.SUCCEEDED
        elif any(ns.step == NodeStep.FAILED for ns in bs.nodes):
            bs.status = BatchStatus.FAILED
        else:
            bs.status = BatchStatus.ROLLED_BACK
        bs.completed_at = now
        self._checkpoint(state)
        logger.info(f"[executor] {plan.plan_id} batch {bs.batch_number} -> {bs.status.value}")

    @staticmethod
    def _final_status(plan: RebalancePlan, state: ExecutionState) -> Optional[ExecutionStatus]:
        unsuccessful = [b for b in state.batches if b.status in (BatchStatus.FAILED, BatchStatus.ROLLED_BACK)]
        if len(unsuccessful) >= plan.max_concurrent:
            return ExecutionStatus.FAILED

        if any(b.status == BatchStatus.RUNNING for b in state.batches):
            return None

        def blocked(batch_number: int) -> bool:
            # dependencies always point at earlier batches
            for dep in plan.batch(batch_number).depends_on:
                if state.batch(dep).status in (BatchStatus.FAILED, BatchStatus.ROLLED_BACK):
                    return True
                if state.batch(dep).status == BatchStatus.PENDING and blocked(dep):
                    return True
            return False

        for batch in plan.batches:
            if state.batch(batch.batch_number).status == BatchStatus.PENDING and not blocked(batch.batch_number):
                return None

        if all(b.status == BatchStatus.SUCCEEDED for b in state.batches):
            return ExecutionStatus.SUCCEEDED
        if any(b.status == BatchStatus.FAILED for b in state.batches):
            return ExecutionStatus.FAILED
        return ExecutionStatus.ROLLED_BACK

    def _finish(
        self,
        plan: RebalancePlan,
        state: ExecutionState,
        group: Optional[NodeGroup],
        status: ExecutionStatus,
        now: datetime,
    ) -> RebalanceResult:
        state.status = status
        state.completed_at = now
        self._checkpoint(state)

        if group is not None:
            group = self.groups.get(group.name) or group
            group.status.last_rebalance_time = now
            set_condition(group.status.conditions, ConditionType.REBALANCING, False, f"Rebalance{status.value}", plan.plan_id, now=now)
            self.groups.update(group)

        reason = {
            ExecutionStatus.SUCCEEDED: "RebalanceCompleted",
            ExecutionStatus.ROLLED_BACK: "RebalanceRolledBack",
            ExecutionStatus.FAILED: "RebalanceFailed",
        }[status]
        self.emitter.emit([
            ControllerEvent.rebalance(
                reason,
                plan.group_name,
                plan.plan_id,
                f"Plan finished {status.value}: {len(state.completed_nodes)} replaced, "
                f"{len(state.failed_nodes)} failed",
                warning=status != ExecutionStatus.SUCCEEDED,
            )
        ])
        logger.info(f"[executor] {plan.plan_id} finished {status.value}")
        return self._result(state)

    def _checkpoint(self, state: ExecutionState) -> None:
        self.rebalances.update_execution(state)

    @staticmethod
    def _result(state: ExecutionState, requeue_after: Optional[float] = None) -> RebalanceResult:
        return RebalanceResult(
            plan_id=state.plan_id,
            status=state.status,
            requeue_after=requeue_after,
            completed_nodes=list(state.completed_nodes),
            failed_nodes=list(state.failed_nodes),
            message="; ".join(state.errors[-3:]),
        )
