# vps_autoscaler/rebalancer/planner.py
"""Turns a safe analysis into batched, reversible rebalance plans."""

import logging
import math
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from vps_autoscaler.core.errors import PlanningError
from vps_autoscaler.core.models import NodeGroup, RebalanceStrategy, RebalancingPolicy, utcnow
from vps_autoscaler.rebalancer.types import (
    BatchStatus,
    CandidateNode,
    ExecutionState,
    NodeBatch,
    RebalanceAnalysis,
    RebalancePlan,
    RecommendedAction,
    RollbackAction,
    RollbackPlan,
    RollbackStep,
)

logger = logging.getLogger(__name__)

DURATION_BUFFER = 1.2


def estimate_duration_seconds(node_count: int, policy: RebalancingPolicy) -> int:
    """Worst-case wall time: provision + drain per sequential batch, plus 20%."""
    if node_count <= 0:
        return 0
    per_batch = policy.provision_timeout_seconds + policy.drain_timeout_seconds
    if policy.strategy == RebalanceStrategy.ROLLING:
        rounds = math.ceil(node_count / max(policy.batch_size, 1))
    elif policy.strategy == RebalanceStrategy.SURGE:
        batches = math.ceil(node_count / max(policy.batch_size, 1))
        rounds = math.ceil(batches / max(policy.max_concurrent, 1))
    else:
        rounds = 1
    return int(rounds * per_batch * DURATION_BUFFER)


def effective_batch_size(policy: RebalancingPolicy, total_nodes: int) -> int:
    budget = (100 - policy.min_healthy_percent) * total_nodes // 100
    return min(policy.batch_size, budget)


class RebalancePlanner:

    def plan(self, analysis: RebalanceAnalysis, group: NodeGroup, *, now: Optional[datetime] = None) -> RebalancePlan:
        now = now or utcnow()
        policy = group.rebalancing_policy

        if not analysis.safe_to_rebalance or analysis.recommended_action != RecommendedAction.PROCEED:
            raise PlanningError(
                f"analysis for {group.name} is not safe to execute "
                f"(action={analysis.recommended_action.value})"
            )

        eligible = analysis.eligible()
        if not eligible:
            raise PlanningError(f"no eligible candidates in {group.name}")

        size = effective_batch_size(policy, analysis.total_nodes)
        if size <= 0:
            raise PlanningError(
                f"min_healthy_percent={policy.min_healthy_percent} leaves no disruption budget "
                f"for {analysis.total_nodes} node(s)"
            )

        if policy.strategy == RebalanceStrategy.BLUE_GREEN:
            chunks = [eligible]
        else:
            chunks = [eligible[i:i + size] for i in range(0, len(eligible), size)]

        per_batch = int((policy.provision_timeout_seconds + policy.drain_timeout_seconds) * DURATION_BUFFER)
        batches: List[NodeBatch] = []
        for index, chunk in enumerate(chunks, start=1):
            depends_on = [index - 1] if policy.strategy == RebalanceStrategy.ROLLING and index > 1 else []
            batches.append(
                NodeBatch(
                    batch_number=index,
                    nodes=list(chunk),
                    depends_on=depends_on,
                    estimated_duration_seconds=per_batch,
                )
            )

        plan = RebalancePlan(
            plan_id=f"{group.name}-{uuid4().hex[:8]}",
            group_name=group.name,
            opportunity=analysis.opportunity,
            strategy=policy.strategy,
            batches=batches,
            max_concurrent=policy.max_concurrent,
            rollback_plan=self.rollback_plan(batches),
            estimated_duration_seconds=estimate_duration_seconds(len(eligible), policy),
            total_nodes=analysis.total_nodes,
            created_at=now,
        )
        self.validate_plan(plan, group)
        logger.info(
            f"[planner] {plan.plan_id}: {len(eligible)} node(s) in {len(batches)} batch(es), "
            f"strategy={plan.strategy.value}"
        )
        return plan

    @staticmethod
    def rollback_plan(batches: List[NodeBatch]) -> RollbackPlan:
        steps = []
        for batch in batches:
            for node in batch.nodes:
                steps.append(RollbackStep(batch.batch_number, node.node_id, RollbackAction.UNCORDON,
                                          f"uncordon {node.node_name} if not yet drained"))
                steps.append(RollbackStep(batch.batch_number, node.node_id, RollbackAction.TERMINATE_REPLACEMENT,
                                          f"terminate replacement on {node.target_offering}"))
                steps.append(RollbackStep(batch.batch_number, node.node_id, RollbackAction.RECREATE_OLD,
                                          f"recreate on {node.current_offering} if already terminated (best effort)"))
        return RollbackPlan(steps=steps)

    @staticmethod
    def validate_plan(plan: RebalancePlan, group: NodeGroup) -> None:
        seen = set()
        for expected, batch in enumerate(plan.batches, start=1):
            if batch.batch_number != expected:
                raise PlanningError(f"batch numbering broken at {batch.batch_number}, expected {expected}")
            if not batch.nodes:
                raise PlanningError(f"batch {batch.batch_number} is empty")
            if len(batch.nodes) > group.max_nodes:
                raise PlanningError(
                    f"batch {batch.batch_number} replaces {len(batch.nodes)} nodes, more than max_nodes={group.max_nodes}"
                )
            for dep in batch.depends_on:
                if dep < 1 or dep >= batch.batch_number:
                    raise PlanningError(f"batch {batch.batch_number} depends on invalid batch {dep}")
            for node in batch.nodes:
                if node.node_id in seen:
                    raise PlanningError(f"node {node.node_id} appears in more than one batch")
                seen.add(node.node_id)
        if plan.max_concurrent < 1:
            raise PlanningError("max_concurrent must be >= 1")

    @staticmethod
    def can_execute_batch(plan: RebalancePlan, state: ExecutionState, batch_number: int) -> bool:
        """Dependencies succeeded, a concurrency slot is free and the failure limit is not reached."""
        batch = plan.batch(batch_number)
        for dep in batch.depends_on:
            if state.batch(dep).status != BatchStatus.SUCCEEDED:
                return False
        unsuccessful = sum(1 for b in state.batches if b.status in (BatchStatus.FAILED, BatchStatus.ROLLED_BACK))
        if unsuccessful >= plan.max_concurrent:
            return False
        running = sum(1 for b in state.batches if b.status == BatchStatus.RUNNING)
        return running < plan.max_concurrent


def candidates_of(plan: RebalancePlan) -> List[CandidateNode]:
    return [node for batch in plan.batches for node in batch.nodes]
