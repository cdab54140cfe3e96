"""Core domain models: node groups, managed nodes and leases."""

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -------------------------
# ANNOTATIONS / LABELS
# -------------------------

ANNOTATION_PREFIX = "autoscaler.vpsie.com"

ANNOTATION_PAUSED = f"{ANNOTATION_PREFIX}/paused"
ANNOTATION_MIN_NODES_OVERRIDE = f"{ANNOTATION_PREFIX}/min-nodes-override"
ANNOTATION_MAX_NODES_OVERRIDE = f"{ANNOTATION_PREFIX}/max-nodes-override"
ANNOTATION_PROTECTED = f"{ANNOTATION_PREFIX}/protected"
ANNOTATION_DO_NOT_DELETE = f"{ANNOTATION_PREFIX}/do-not-delete"
ANNOTATION_SCALE_DOWN = f"{ANNOTATION_PREFIX}/scale-down"
ANNOTATION_CREATION_REASON = f"{ANNOTATION_PREFIX}/creation-reason"

LABEL_NODEGROUP = f"{ANNOTATION_PREFIX}/nodegroup"
LABEL_MANAGED = f"{ANNOTATION_PREFIX}/managed"


class CreationReason(Enum):
    METRICS = "metrics"
    MANUAL = "manual"
    REBALANCE = "rebalance"
    INITIAL = "initial"
    PENDING_PODS = "pending-pods"


# -------------------------
# CONDITIONS
# -------------------------

class ConditionType(Enum):
    # node conditions
    VPS_READY = "VPSReady"
    NODE_JOINED = "NodeJoined"
    NODE_READY = "NodeReady"
    # group conditions
    READY = "Ready"
    SCALING = "Scaling"
    AT_MIN_CAPACITY = "AtMinCapacity"
    AT_MAX_CAPACITY = "AtMaxCapacity"
    REBALANCING = "Rebalancing"
    # shared
    ERROR = "Error"


@dataclass
class Condition:
    type: ConditionType
    status: bool
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = field(default_factory=utcnow)


# -------------------------
# NODE GROUP
# -------------------------

class RebalanceStrategy(Enum):
    ROLLING = "rolling"
    SURGE = "surge"
    BLUE_GREEN = "blue-green"


@dataclass
class ScaleUpPolicy:
    enabled: bool = True
    stabilization_window_seconds: int = 60
    cpu_threshold: float = 80.0
    memory_threshold: float = 80.0
    increment: int = 1


@dataclass
class ScaleDownPolicy:
    enabled: bool = True
    stabilization_window_seconds: int = 600
    cpu_threshold: float = 50.0
    memory_threshold: float = 50.0
    unneeded_time_seconds: int = 600
    cooldown_seconds: int = 600
    decrement: int = 1


@dataclass
class MaintenanceWindow:
    """Daily window given as HH:MM in UTC. `end` earlier than `start` wraps past midnight."""

    start: str
    end: str
    days: List[str] = field(default_factory=list)

    def contains(self, now: datetime) -> bool:
        start = parse_hhmm(self.start)
        end = parse_hhmm(self.end)
        current = now.astimezone(timezone.utc)
        clock = current.time().replace(second=0, microsecond=0)

        if start <= end:
            inside = start <= clock < end
            day = current
        else:
            # overnight: a time after midnight belongs to the previous day's window
            inside = clock >= start or clock < end
            day = current if clock >= start else current - timedelta(days=1)

        if not inside:
            return False
        if not self.days:
            return True
        return day.strftime("%A").lower() in {d.lower() for d in self.days}


def parse_hhmm(value: str) -> time:
    hours, _, minutes = value.partition(":")
    return time(int(hours), int(minutes))


@dataclass
class RebalancingPolicy:
    enabled: bool = False
    strategy: RebalanceStrategy = RebalanceStrategy.ROLLING
    batch_size: int = 1
    max_concurrent: int = 2
    provision_timeout_seconds: int = 600
    drain_timeout_seconds: int = 300
    health_check_timeout_seconds: int = 300
    cooldown_seconds: int = 3600
    min_healthy_percent: int = 75
    skip_nodes_with_local_storage: bool = True
    respect_pdbs: bool = True
    force_drain_on_timeout: bool = False
    auto_rollback: bool = True
    max_retries: int = 3
    maintenance_windows: List[MaintenanceWindow] = field(default_factory=list)
    peak_hours: List[MaintenanceWindow] = field(default_factory=list)


@dataclass
class NodeGroupStatus:
    current_nodes: int = 0
    desired_nodes: int = 0
    ready_nodes: int = 0
    last_scale_time: Optional[datetime] = None
    last_scale_up_time: Optional[datetime] = None
    last_scale_down_time: Optional[datetime] = None
    last_rebalance_time: Optional[datetime] = None
    underutilized_since: Optional[datetime] = None
    provisioning_failures: int = 0
    backoff_until: Optional[datetime] = None
    conditions: List[Condition] = field(default_factory=list)


@dataclass
class NodeGroup:
    """Operator-declared pool of identically configured nodes."""

    name: str
    min_nodes: int
    max_nodes: int
    datacenter_id: str
    offering_ids: List[str]
    os_image_id: str

    preferred_instance_type: Optional[str] = None
    allow_mixed_instances: bool = False

    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    taints: List[str] = field(default_factory=list)
    ssh_key_ids: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    user_data: Optional[str] = None

    scale_up_policy: ScaleUpPolicy = field(default_factory=ScaleUpPolicy)
    scale_down_policy: ScaleDownPolicy = field(default_factory=ScaleDownPolicy)
    rebalancing_policy: RebalancingPolicy = field(default_factory=RebalancingPolicy)

    status: NodeGroupStatus = field(default_factory=NodeGroupStatus)

    # Optimistic concurrency
    version: int = 0

    def is_paused(self) -> bool:
        return self.annotations.get(ANNOTATION_PAUSED, "").lower() == "true"


# -------------------------
# MANAGED NODE
# -------------------------

class NodePhase(Enum):
    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    PROVISIONED = "Provisioned"
    JOINING = "Joining"
    READY = "Ready"
    TERMINATING = "Terminating"
    DELETING = "Deleting"
    FAILED = "Failed"


@dataclass
class NodeResources:
    cpu: int = 0
    memory_mb: int = 0
    disk_gb: int = 0
    bandwidth_gb: int = 0


@dataclass
class ManagedNode:
    """One VPS instance the controller owns, from creation to deletion."""

    node_id: str
    group_name: str
    offering_id: str
    datacenter_id: str

    instance_id: Optional[str] = None
    node_name: Optional[str] = None
    ip_address: Optional[str] = None

    phase: NodePhase = NodePhase.PENDING
    resources: NodeResources = field(default_factory=NodeResources)

    # Lifecycle timestamps
    created_at: datetime = field(default_factory=utcnow)
    phase_changed_at: datetime = field(default_factory=utcnow)
    provisioned_at: Optional[datetime] = None
    joined_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    terminating_at: Optional[datetime] = None

    # Checkpoints written before external calls
    create_requested_at: Optional[datetime] = None
    join_requested_at: Optional[datetime] = None
    delete_requested_at: Optional[datetime] = None

    cordoned: bool = False
    drained: bool = False
    drain_started_at: Optional[datetime] = None

    # Transient-error retry bookkeeping
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None

    last_error: Optional[str] = None
    conditions: List[Condition] = field(default_factory=list)
    annotations: Dict[str, str] = field(default_factory=dict)

    creation_reason: CreationReason = CreationReason.METRICS
    owner_plan_id: Optional[str] = None
    replaces_node_id: Optional[str] = None

    # Optimistic concurrency
    version: int = 0

    def is_protected(self) -> bool:
        return (
            self.annotations.get(ANNOTATION_PROTECTED, "").lower() == "true"
            or self.annotations.get(ANNOTATION_DO_NOT_DELETE, "").lower() == "true"
            or self.annotations.get(ANNOTATION_SCALE_DOWN, "").lower() == "disabled"
        )

    def is_ready(self) -> bool:
        return self.phase == NodePhase.READY

    def is_leaving(self) -> bool:
        return self.phase in (NodePhase.TERMINATING, NodePhase.DELETING)

    def is_in_flight(self) -> bool:
        """Still on its way to Ready."""
        return self.phase in (
            NodePhase.PENDING,
            NodePhase.PROVISIONING,
            NodePhase.PROVISIONED,
            NodePhase.JOINING,
        )

    def age_seconds(self, now: datetime) -> float:
        return (now - self.created_at).total_seconds()


# -------------------------
# LEADER LEASE
# -------------------------

@dataclass
class Lease:
    name: str
    holder: Optional[str] = None
    acquired_at: Optional[datetime] = None
    renewed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    version: int = 0

    def is_held_by(self, holder: str, now: datetime) -> bool:
        return self.holder == holder and self.expires_at is not None and self.expires_at > now

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at <= now
