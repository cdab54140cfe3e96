#vps_autoscaler\controller\reconcilers.py

"""
Key-level reconcilers.

Each reconciler handles one key kind and returns the follow-up keys it
wants enqueued instead of calling another reconciler directly.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from vps_autoscaler.core.errors import PlanningError, RebalanceInProgressError, ValidationError
from vps_autoscaler.core.events import EventEmitter
from vps_autoscaler.core.events_model import ControllerEvent
from vps_autoscaler.core.models import utcnow
from vps_autoscaler.core.repository import (
    ManagedNodeRepository,
    NodeGroupRepository,
    RebalanceRepository,
)
from vps_autoscaler.core.state_machine import NodeLifecycleStateMachine
from vps_autoscaler.core.validation import validate_node_group
from vps_autoscaler.provider.interface import OpportunitySource
from vps_autoscaler.rebalancer.analyzer import RebalanceAnalyzer
from vps_autoscaler.rebalancer.executor import RebalanceExecutor
from vps_autoscaler.rebalancer.planner import RebalancePlanner
from vps_autoscaler.rebalancer.types import RecommendedAction
from vps_autoscaler.scaler.engine import ScalingDecisionEngine

logger = logging.getLogger(__name__)

NODEGROUP = "nodegroup"
NODE = "node"
REBALANCE = "rebalance"


def make_key(kind: str, name: str) -> str:
    return f"{kind}/{name}"


def split_key(key: str):
    kind, _, name = key.partition("/")
    if not name:
        raise ValueError(f"malformed work key: {key!r}")
    return kind, name


@dataclass
class ReconcileResult:
    requeue_after: Optional[float] = None
    enqueue: List[str] = field(default_factory=list)


class NodeGroupReconciler:
    def __init__(self, *, engine: ScalingDecisionEngine, nodes: ManagedNodeRepository):
        self.engine = engine
        self.nodes = nodes

    def reconcile(self, name: str, now: Optional[datetime] = None) -> ReconcileResult:
        result = self.engine.reconcile_group(name, now=now)
        follow_up = [make_key(NODE, node_id) for node_id in result.created + result.terminating]
        return ReconcileResult(requeue_after=result.requeue_after, enqueue=follow_up)


class NodeReconciler:
    def __init__(self, *, lifecycle: NodeLifecycleStateMachine, nodes: ManagedNodeRepository):
        self.lifecycle = lifecycle
        self.nodes = nodes

    def reconcile(self, node_id: str, now: Optional[datetime] = None) -> ReconcileResult:
        node = self.nodes.get(node_id)
        if node is None:
            return ReconcileResult()

        before = node.phase
        result = self.lifecycle.reconcile(node_id, now=now)

        # phase changes and removals feed back into the group's capacity view
        enqueue = []
        if result.removed:
            enqueue.append(make_key(NODEGROUP, node.group_name))
        else:
            after = self.nodes.get(node_id)
            if after is not None and after.phase != before:
                enqueue.append(make_key(NODEGROUP, node.group_name))
        return ReconcileResult(requeue_after=result.requeue_after, enqueue=enqueue)


class RebalanceReconciler:
    """Drives the group's active plan, or looks for a new one when idle."""

    def __init__(
        self,
        *,
        groups: NodeGroupRepository,
        nodes: ManagedNodeRepository,
        rebalances: RebalanceRepository,
        opportunities: OpportunitySource,
        analyzer: RebalanceAnalyzer,
        planner: RebalancePlanner,
        executor: RebalanceExecutor,
        emitter: EventEmitter,
        idle_requeue_seconds: float = 300.0,
    ):
        self.groups = groups
        self.nodes = nodes
        self.rebalances = rebalances
        self.opportunities = opportunities
        self.analyzer = analyzer
        self.planner = planner
        self.executor = executor
        self.emitter = emitter
        self.idle_requeue = idle_requeue_seconds

    def reconcile(self, group_name: str, now: Optional[datetime] = None) -> ReconcileResult:
        now = now or utcnow()
        group = self.groups.get(group_name)
        if group is None:
            return ReconcileResult()

        active = self.rebalances.get_active_execution(group_name)
        if active is not None:
            return self._drive(active.plan_id, group_name, now)

        if not group.rebalancing_policy.enabled or group.is_paused():
            return ReconcileResult(requeue_after=self.idle_requeue)

        try:
            validate_node_group(group)
        except ValidationError:
            # the group reconciler reports invalid configuration
            return ReconcileResult(requeue_after=self.idle_requeue)

        nodes = self.nodes.list_by_group(group_name)
        for opportunity in self.opportunities.opportunities(group, nodes):
            analysis = self.analyzer.analyze(group, opportunity, nodes, now)
            if analysis.recommended_action == RecommendedAction.REJECT:
                continue
            if not analysis.safe_to_rebalance:
                failed = [c.reason for c in analysis.safety_checks if not c.passed]
                self.emitter.emit([
                    ControllerEvent.safety_check_failed(
                        group_name,
                        f"Rebalance {opportunity.current_offering} -> {opportunity.target_offering} "
                        f"postponed: {'; '.join(failed)}",
                    )
                ])
                continue

            try:
                plan = self.planner.plan(analysis, group, now=now)
                self.executor.start(plan, now=now)
            except PlanningError as e:
                logger.info(f"[rebalance] {group_name} no plan: {e}")
                continue
            except RebalanceInProgressError as e:
                logger.info(f"[rebalance] {group_name}: {e}")
                return ReconcileResult(requeue_after=0)
            return self._drive(plan.plan_id, group_name, now)

        return ReconcileResult(requeue_after=self.idle_requeue)

    def _drive(self, plan_id: str, group_name: str, now: datetime) -> ReconcileResult:
        plan = self.rebalances.get_plan(plan_id)
        if plan is None:
            logger.error(f"[rebalance] execution {plan_id} has no stored plan")
            return ReconcileResult(requeue_after=self.idle_requeue)

        outcome = self.executor.execute(plan, now=now)
        enqueue = [make_key(NODEGROUP, group_name)]
        enqueue.extend(
            make_key(NODE, n.node_id)
            for n in self.nodes.list_by_group(group_name)
            if n.owner_plan_id == plan_id or n.node_id in plan.all_node_ids()
        )
        if outcome.status.is_terminal():
            return ReconcileResult(requeue_after=self.idle_requeue, enqueue=enqueue)
        return ReconcileResult(requeue_after=outcome.requeue_after, enqueue=enqueue)
