"""Rebalancing data types: analyses, plans and resumable execution state."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from vps_autoscaler.core.models import RebalanceStrategy, utcnow


# -------------------------
# SAFETY CHECKS
# -------------------------

class CheckCategory(Enum):
    CLUSTER_HEALTH = "cluster_health"
    NODEGROUP_HEALTH = "nodegroup_health"
    POD_DISRUPTION = "pod_disruption"
    RESOURCE_CAPACITY = "resource_capacity"
    TIMING = "timing"


class CheckScope(Enum):
    CLUSTER = "cluster"
    GROUP = "group"
    NODE = "node"


class CheckStatus(Enum):
    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"


@dataclass
class SafetyCheck:
    category: CheckCategory
    status: CheckStatus
    reason: str
    scope: CheckScope
    node_ids: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.status != CheckStatus.FAILED


# -------------------------
# ANALYSIS
# -------------------------

class RecommendedAction(Enum):
    PROCEED = "proceed"
    POSTPONE = "postpone"
    REJECT = "reject"


@dataclass
class Opportunity:
    """Cost/performance signal: move nodes from one offering to another."""

    opportunity_id: str
    current_offering: str
    target_offering: str
    monthly_savings: float = 0.0
    performance_delta: float = 0.0
    risk: str = "low"


@dataclass
class CandidateNode:
    node_id: str
    node_name: Optional[str]
    instance_id: Optional[str]
    current_offering: str
    target_offering: str
    age_days: float
    priority_score: float
    safe_to_rebalance: bool
    reason: str = ""
    checks: List[SafetyCheck] = field(default_factory=list)


@dataclass
class RebalanceAnalysis:
    group_name: str
    opportunity: Opportunity
    total_nodes: int
    candidates: List[CandidateNode] = field(default_factory=list)
    safety_checks: List[SafetyCheck] = field(default_factory=list)
    safe_to_rebalance: bool = False
    recommended_action: RecommendedAction = RecommendedAction.REJECT
    estimated_duration_seconds: int = 0
    analyzed_at: datetime = field(default_factory=utcnow)

    def eligible(self) -> List[CandidateNode]:
        return [c for c in self.candidates if c.safe_to_rebalance]


# -------------------------
# PLAN
# -------------------------

class RollbackAction(Enum):
    UNCORDON = "uncordon"
    TERMINATE_REPLACEMENT = "terminate_replacement"
    RECREATE_OLD = "recreate_old"


@dataclass
class RollbackStep:
    batch_number: int
    node_id: str
    action: RollbackAction
    description: str = ""


@dataclass
class RollbackPlan:
    steps: List[RollbackStep] = field(default_factory=list)

    def steps_for(self, batch_number: int) -> List[RollbackStep]:
        return [s for s in self.steps if s.batch_number == batch_number]


@dataclass
class NodeBatch:
    batch_number: int
    nodes: List[CandidateNode]
    depends_on: List[int] = field(default_factory=list)
    estimated_duration_seconds: int = 0

    def node_ids(self) -> List[str]:
        return [n.node_id for n in self.nodes]


@dataclass
class RebalancePlan:
    plan_id: str
    group_name: str
    opportunity: Opportunity
    strategy: RebalanceStrategy
    batches: List[NodeBatch]
    max_concurrent: int
    rollback_plan: RollbackPlan = field(default_factory=RollbackPlan)
    estimated_duration_seconds: int = 0
    total_nodes: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def batch(self, batch_number: int) -> NodeBatch:
        return self.batches[batch_number - 1]

    def all_node_ids(self) -> List[str]:
        return [node_id for b in self.batches for node_id in b.node_ids()]


# -------------------------
# EXECUTION STATE
# -------------------------

class ExecutionStatus(Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    PAUSED = "Paused"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"

    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.SUCCEEDED,
            ExecutionStatus.FAILED,
            ExecutionStatus.ROLLED_BACK,
        )


class BatchStatus(Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"

    def is_terminal(self) -> bool:
        return self in (BatchStatus.SUCCEEDED, BatchStatus.FAILED, BatchStatus.ROLLED_BACK)


class NodeStep(Enum):
    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    REPLACEMENT_READY = "ReplacementReady"
    CORDONED = "Cordoned"
    DRAINED = "Drained"
    VERIFIED = "Verified"
    TERMINATING = "Terminating"
    DONE = "Done"
    ROLLED_BACK = "RolledBack"
    FAILED = "Failed"

    def is_terminal(self) -> bool:
        return self in (NodeStep.DONE, NodeStep.ROLLED_BACK, NodeStep.FAILED)


@dataclass
class NodeReplacementState:
    node_id: str
    step: NodeStep = NodeStep.PENDING
    replacement_node_id: Optional[str] = None
    offering_id: Optional[str] = None
    offering_index: int = 0
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    provision_started_at: Optional[datetime] = None
    drain_started_at: Optional[datetime] = None
    verify_started_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class BatchState:
    batch_number: int
    status: BatchStatus = BatchStatus.PENDING
    nodes: List[NodeReplacementState] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def node(self, node_id: str) -> NodeReplacementState:
        for state in self.nodes:
            if state.node_id == node_id:
                return state
        raise KeyError(node_id)


@dataclass
class ExecutionState:
    """Persisted progress of one plan. Saved after every node sub-step."""

    plan_id: str
    group_name: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_batch: int = 0
    batches: List[BatchState] = field(default_factory=list)
    completed_nodes: List[str] = field(default_factory=list)
    failed_nodes: List[str] = field(default_factory=list)
    provisioned_nodes: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 0

    def batch(self, batch_number: int) -> BatchState:
        return self.batches[batch_number - 1]


@dataclass
class RebalanceResult:
    plan_id: str
    status: ExecutionStatus
    requeue_after: Optional[float] = None
    completed_nodes: List[str] = field(default_factory=list)
    failed_nodes: List[str] = field(default_factory=list)
    message: str = ""
