"""
Safety predicates shared by scale-down and rebalancing.

Each check is a plain function returning a SafetyCheck; SafetyGate wraps
the ones that need the provider or the cluster. A failed check never
raises here: callers decide whether to block, postpone or pause.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from vps_autoscaler.core.models import ManagedNode, NodeGroup, NodePhase, RebalancingPolicy
from vps_autoscaler.provider.interface import CloudProvider, ClusterClient, ClusterHealth
from vps_autoscaler.rebalancer.types import (
    CheckCategory,
    CheckScope,
    CheckStatus,
    SafetyCheck,
)

logger = logging.getLogger(__name__)


def _passed(category: CheckCategory, scope: CheckScope, reason: str, node_ids=None) -> SafetyCheck:
    return SafetyCheck(category, CheckStatus.PASSED, reason, scope, list(node_ids or []))


def _failed(category: CheckCategory, scope: CheckScope, reason: str, node_ids=None) -> SafetyCheck:
    return SafetyCheck(category, CheckStatus.FAILED, reason, scope, list(node_ids or []))


# -------------------------
# RESULT
# -------------------------

@dataclass
class GateResult:
    checks: List[SafetyCheck] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks)

    def failures(self) -> List[SafetyCheck]:
        return [c for c in self.checks if not c.passed]

    def cluster_blocked(self) -> bool:
        return any(c.scope == CheckScope.CLUSTER for c in self.failures())

    def group_blocked(self) -> bool:
        return any(c.scope in (CheckScope.CLUSTER, CheckScope.GROUP) for c in self.failures())

    def blocked_nodes(self) -> Set[str]:
        blocked: Set[str] = set()
        for check in self.failures():
            if check.scope == CheckScope.NODE:
                blocked.update(check.node_ids)
        return blocked

    def summary(self) -> str:
        return "; ".join(f"{c.category.value}: {c.reason}" for c in self.failures())


def evaluate(checks: Iterable[SafetyCheck]) -> GateResult:
    return GateResult(list(checks))


# -------------------------
# CLUSTER
# -------------------------

def check_cluster_health(health: ClusterHealth, min_healthy_percent: int) -> SafetyCheck:
    if not health.control_plane_healthy:
        return _failed(CheckCategory.CLUSTER_HEALTH, CheckScope.CLUSTER, "control plane is unhealthy")

    ratio = health.ready_percent()
    if ratio < min_healthy_percent:
        return _failed(
            CheckCategory.CLUSTER_HEALTH,
            CheckScope.CLUSTER,
            f"only {ratio:.0f}% of nodes Ready (minimum {min_healthy_percent}%)",
        )
    return _passed(CheckCategory.CLUSTER_HEALTH, CheckScope.CLUSTER, f"{ratio:.0f}% of nodes Ready")


# -------------------------
# GROUP
# -------------------------

def check_min_nodes_headroom(ready_count: int, removing: int, min_nodes: int) -> SafetyCheck:
    remaining = ready_count - removing
    if remaining < min_nodes:
        return _failed(
            CheckCategory.NODEGROUP_HEALTH,
            CheckScope.GROUP,
            f"removing {removing} of {ready_count} Ready nodes would leave {remaining} < min {min_nodes}",
        )
    return _passed(CheckCategory.NODEGROUP_HEALTH, CheckScope.GROUP, f"{remaining} nodes remain after operation")


def check_no_terminating(nodes: List[ManagedNode]) -> SafetyCheck:
    leaving = [n.node_id for n in nodes if n.is_leaving()]
    if leaving:
        return _failed(
            CheckCategory.NODEGROUP_HEALTH,
            CheckScope.GROUP,
            f"{len(leaving)} node(s) already terminating",
            leaving,
        )
    return _passed(CheckCategory.NODEGROUP_HEALTH, CheckScope.GROUP, "no node is terminating")


def check_group_ready(nodes: List[ManagedNode], min_healthy_percent: int) -> SafetyCheck:
    counted = [n for n in nodes if n.phase != NodePhase.DELETING]
    if not counted:
        return _failed(CheckCategory.NODEGROUP_HEALTH, CheckScope.GROUP, "group has no nodes")
    ready = sum(1 for n in counted if n.is_ready())
    ratio = 100.0 * ready / len(counted)
    if ratio < min_healthy_percent:
        return _failed(
            CheckCategory.NODEGROUP_HEALTH,
            CheckScope.GROUP,
            f"only {ratio:.0f}% of group nodes Ready (minimum {min_healthy_percent}%)",
        )
    return _passed(CheckCategory.NODEGROUP_HEALTH, CheckScope.GROUP, f"{ratio:.0f}% of group nodes Ready")


def check_timing(
    policy: RebalancingPolicy,
    last_rebalance: Optional[datetime],
    now: datetime,
    cooldown: bool = True,
) -> SafetyCheck:
    if cooldown and last_rebalance is not None:
        elapsed = (now - last_rebalance).total_seconds()
        if elapsed < policy.cooldown_seconds:
            return _failed(
                CheckCategory.TIMING,
                CheckScope.GROUP,
                f"cooldown active: last rebalance {int(elapsed)}s ago, cooldown {policy.cooldown_seconds}s",
            )

    if policy.maintenance_windows and not any(w.contains(now) for w in policy.maintenance_windows):
        return _failed(CheckCategory.TIMING, CheckScope.GROUP, "outside every maintenance window")

    if any(w.contains(now) for w in policy.peak_hours):
        return _failed(CheckCategory.TIMING, CheckScope.GROUP, "inside peak hours")

    return _passed(CheckCategory.TIMING, CheckScope.GROUP, "timing constraints satisfied")


# -------------------------
# SAFETY GATE
# -------------------------

class SafetyGate:
    """Checks that need live provider or cluster state."""

    def __init__(self, provider: CloudProvider, cluster: ClusterClient):
        self.provider = provider
        self.cluster = cluster

    def cluster_health(self, min_healthy_percent: int) -> SafetyCheck:
        return check_cluster_health(self.cluster.cluster_health(), min_healthy_percent)

    def disruption_budget(self, node: ManagedNode) -> SafetyCheck:
        if not node.node_name:
            return _passed(CheckCategory.POD_DISRUPTION, CheckScope.NODE, "node never joined", [node.node_id])
        if self.cluster.disruption_allowed(node.node_name):
            return _passed(CheckCategory.POD_DISRUPTION, CheckScope.NODE, "disruption allowed", [node.node_id])
        return _failed(
            CheckCategory.POD_DISRUPTION,
            CheckScope.NODE,
            f"a disruption budget blocks evicting pods from {node.node_name}",
            [node.node_id],
        )

    def local_storage(self, node: ManagedNode) -> SafetyCheck:
        if node.node_name and self.cluster.node_has_local_storage(node.node_name):
            return _failed(
                CheckCategory.POD_DISRUPTION,
                CheckScope.NODE,
                f"{node.node_name} runs pods with local storage",
                [node.node_id],
            )
        return _passed(CheckCategory.POD_DISRUPTION, CheckScope.NODE, "no local storage", [node.node_id])

    def resource_availability(self, group: NodeGroup, offering_id: str, count: int) -> SafetyCheck:
        offering = self.provider.get_offering(group.datacenter_id, offering_id)
        if offering is None or not offering.available:
            return _failed(
                CheckCategory.RESOURCE_CAPACITY,
                CheckScope.GROUP,
                f"offering {offering_id} not available in {group.datacenter_id}",
            )
        quota = self.provider.available_quota()
        if quota is not None and quota < count:
            return _failed(
                CheckCategory.RESOURCE_CAPACITY,
                CheckScope.GROUP,
                f"quota allows {quota} more instance(s), {count} needed",
            )
        return _passed(CheckCategory.RESOURCE_CAPACITY, CheckScope.GROUP, f"capacity for {count} instance(s)")

    # -------------------------
    # COMPOSITE GATES
    # -------------------------

    def for_scale_down(
        self,
        group: NodeGroup,
        min_nodes: int,
        ready_count: int,
        victims: List[ManagedNode],
    ) -> GateResult:
        """Reduced gate run before every scale-down."""
        checks = [
            self.cluster_health(group.rebalancing_policy.min_healthy_percent),
            check_min_nodes_headroom(ready_count, len(victims), min_nodes),
        ]
        for node in victims:
            checks.append(self.disruption_budget(node))
        result = evaluate(checks)
        if not result.passed:
            logger.info(f"[safety] scale-down of {group.name} blocked: {result.summary()}")
        return result

    def for_node_replacement(self, group: NodeGroup, node: ManagedNode) -> List[SafetyCheck]:
        policy = group.rebalancing_policy
        checks = []
        if policy.respect_pdbs:
            checks.append(self.disruption_budget(node))
        if policy.skip_nodes_with_local_storage:
            checks.append(self.local_storage(node))
        return checks

    def for_batch(
        self,
        group: NodeGroup,
        batch_nodes: List[ManagedNode],
        group_nodes: List[ManagedNode],
        offering_counts: Dict[str, int],
        now: datetime,
    ) -> GateResult:
        """
        Gate run before a rebalance batch starts.

        Cooldown is not checked here; it only gates starting a plan.
        `group_nodes` should already exclude nodes the caller knows
        are on their way in or out.
        """
        policy = group.rebalancing_policy
        checks = [check_timing(policy, group.status.last_rebalance_time, now, cooldown=False)]
        for offering_id, count in sorted(offering_counts.items()):
            checks.append(self.resource_availability(group, offering_id, count))
        checks.append(check_group_ready(group_nodes, policy.min_healthy_percent))
        if policy.respect_pdbs:
            for node in batch_nodes:
                checks.append(self.disruption_budget(node))
        result = evaluate(checks)
        if not result.passed:
            logger.info(f"[safety] batch for {group.name} held: {result.summary()}")
        return result
