# vps_autoscaler/rebalancer/analyzer.py
"""Decides which nodes of a group should move to a better offering, and whether now is safe."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List

from vps_autoscaler.core.models import ManagedNode, NodeGroup, RebalanceStrategy
from vps_autoscaler.rebalancer.planner import estimate_duration_seconds
from vps_autoscaler.rebalancer.types import (
    CandidateNode,
    CheckCategory,
    CheckScope,
    CheckStatus,
    Opportunity,
    RebalanceAnalysis,
    RecommendedAction,
    SafetyCheck,
)
from vps_autoscaler.safety.gate import (
    SafetyGate,
    check_group_ready,
    check_no_terminating,
    check_timing,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class ScoreWeights:
    """
    Candidate priority = age * age_days + savings * monthly_savings
    - safety_penalty * failing_node_checks.

    Provisional weighting; tune through configuration.
    """

    age: float = 1.0
    savings: float = 0.1
    safety_penalty: float = 10.0


class RebalanceAnalyzer:
    def __init__(self, gate: SafetyGate, weights: ScoreWeights = ScoreWeights()):
        self.gate = gate
        self.weights = weights

    def score(self, age_days: float, monthly_savings: float, failing_checks: int) -> float:
        w = self.weights
        return w.age * age_days + w.savings * monthly_savings - w.safety_penalty * failing_checks

    def analyze(
        self,
        group: NodeGroup,
        opportunity: Opportunity,
        nodes: List[ManagedNode],
        now: datetime,
    ) -> RebalanceAnalysis:
        policy = group.rebalancing_policy

        on_offering = [
            n for n in nodes
            if n.offering_id == opportunity.current_offering and n.is_ready()
        ]
        per_node_savings = opportunity.monthly_savings / max(len(on_offering), 1)

        candidates: List[CandidateNode] = []
        for node in on_offering:
            checks: List[SafetyCheck] = []
            if node.is_protected():
                checks.append(
                    SafetyCheck(
                        CheckCategory.POD_DISRUPTION,
                        CheckStatus.FAILED,
                        "node is annotated as protected",
                        CheckScope.NODE,
                        [node.node_id],
                    )
                )
            checks.extend(self.gate.for_node_replacement(group, node))

            failing = [c for c in checks if not c.passed]
            age_days = node.age_seconds(now) / SECONDS_PER_DAY
            candidates.append(
                CandidateNode(
                    node_id=node.node_id,
                    node_name=node.node_name,
                    instance_id=node.instance_id,
                    current_offering=node.offering_id,
                    target_offering=opportunity.target_offering,
                    age_days=round(age_days, 3),
                    priority_score=round(self.score(age_days, per_node_savings, len(failing)), 3),
                    safe_to_rebalance=not failing,
                    reason="; ".join(c.reason for c in failing) if failing else "eligible",
                    checks=checks,
                )
            )

        candidates.sort(key=lambda c: (-c.priority_score, c.instance_id or "", c.node_id))
        eligible = [c for c in candidates if c.safe_to_rebalance]

        if policy.strategy == RebalanceStrategy.ROLLING:
            needed = min(policy.batch_size, len(eligible))
        else:
            needed = len(eligible)

        group_checks = [
            self.gate.cluster_health(policy.min_healthy_percent),
            check_group_ready(nodes, policy.min_healthy_percent),
            check_no_terminating(nodes),
            check_timing(policy, group.status.last_rebalance_time, now),
        ]
        if needed > 0:
            group_checks.append(
                self.gate.resource_availability(group, opportunity.target_offering, needed)
            )

        group_ok = all(c.passed for c in group_checks)
        safe = group_ok and bool(eligible)

        if not eligible:
            action = RecommendedAction.REJECT
        elif any(not c.passed and c.category == CheckCategory.RESOURCE_CAPACITY for c in group_checks):
            action = RecommendedAction.REJECT
        elif not group_ok:
            action = RecommendedAction.POSTPONE
        else:
            action = RecommendedAction.PROCEED

        analysis = RebalanceAnalysis(
            group_name=group.name,
            opportunity=opportunity,
            total_nodes=len([n for n in nodes if not n.is_leaving()]),
            candidates=candidates,
            safety_checks=group_checks,
            safe_to_rebalance=safe,
            recommended_action=action,
            estimated_duration_seconds=estimate_duration_seconds(len(eligible), policy),
            analyzed_at=now,
        )
        logger.info(
            f"[analyzer] {group.name} {opportunity.current_offering}->{opportunity.target_offering}: "
            f"{len(eligible)}/{len(candidates)} eligible, action={action.value}"
        )
        return analysis
