"""Contracts for the systems the controller drives: VPS provider, cluster, telemetry."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from vps_autoscaler.core.models import LABEL_NODEGROUP, ManagedNode, NodeGroup
from vps_autoscaler.rebalancer.types import Opportunity


# -------------------------
# PROVIDER TYPES
# -------------------------

class InstanceStatus(Enum):
    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    DELETING = "deleting"
    GONE = "gone"


@dataclass
class InstanceSpec:
    """Create request. `idempotency_key` lets the provider dedupe retried creates."""

    name: str
    idempotency_key: str
    datacenter_id: str
    offering_id: str
    os_image_id: str
    ssh_key_ids: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    user_data: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class InstanceInfo:
    instance_id: str
    name: str
    status: InstanceStatus
    ip_address: Optional[str] = None


@dataclass
class Offering:
    offering_id: str
    cpu: int
    memory_mb: int
    disk_gb: int
    bandwidth_gb: int = 0
    monthly_price: float = 0.0
    available: bool = True


@dataclass
class UtilizationSample:
    node_id: str
    cpu_percent: float
    memory_percent: float


@dataclass
class ClusterHealth:
    control_plane_healthy: bool
    total_nodes: int
    ready_nodes: int

    def ready_percent(self) -> float:
        if self.total_nodes == 0:
            return 100.0
        return 100.0 * self.ready_nodes / self.total_nodes


@dataclass
class PendingPod:
    """A pod the scheduler could not place, with its summed resource requests."""

    name: str
    namespace: str
    cpu_millicores: int = 0
    memory_mb: int = 0
    node_selector: Dict[str, str] = field(default_factory=dict)

    def fits(self, group: NodeGroup) -> bool:
        """
        A pod with a node selector fits a group whose node labels satisfy
        every term. A pod without one only fits groups with no labels.
        """
        if not self.node_selector:
            return not group.labels
        labels = dict(group.labels)
        labels[LABEL_NODEGROUP] = group.name
        return all(labels.get(key) == value for key, value in self.node_selector.items())


# -------------------------
# CONTRACTS
# -------------------------

class CloudProvider(ABC):
    """VPS provider primitives. Implementations raise ProviderError subclasses."""

    @abstractmethod
    def create_instance(self, spec: InstanceSpec) -> InstanceInfo:
        raise NotImplementedError

    @abstractmethod
    def delete_instance(self, instance_id: str) -> None:
        """Idempotent: deleting an instance that no longer exists succeeds."""
        raise NotImplementedError

    @abstractmethod
    def get_instance(self, instance_id: str) -> InstanceInfo:
        """Returns status GONE when the provider no longer knows the instance."""
        raise NotImplementedError

    @abstractmethod
    def find_instance(self, name: str) -> Optional[InstanceInfo]:
        """Look an instance up by the name given at create time."""
        raise NotImplementedError

    @abstractmethod
    def list_offerings(self, datacenter_id: str) -> List[Offering]:
        raise NotImplementedError

    @abstractmethod
    def available_quota(self) -> Optional[int]:
        """Instances that may still be created, or None when unlimited."""
        raise NotImplementedError

    def get_instance_status(self, instance_id: str) -> InstanceStatus:
        return self.get_instance(instance_id).status

    def get_offering(self, datacenter_id: str, offering_id: str) -> Optional[Offering]:
        for offering in self.list_offerings(datacenter_id):
            if offering.offering_id == offering_id:
                return offering
        return None


class ClusterClient(ABC):
    """Kubernetes-side primitives."""

    @abstractmethod
    def join_cluster(self, node: ManagedNode) -> str:
        """Issue the join for a provisioned instance and return the expected node name."""
        raise NotImplementedError

    @abstractmethod
    def is_node_ready(self, node_name: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def cordon_node(self, node_name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def uncordon_node(self, node_name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def drain_node(self, node_name: str, timeout_seconds: int, force: bool = False) -> bool:
        """
        Run one eviction pass.

        Returns True once no evictable pods remain on the node, False while
        evictions are still in progress. Raises DrainError when an eviction
        is refused (disruption budget) and `force` is off.
        """
        raise NotImplementedError

    @abstractmethod
    def delete_node(self, node_name: str) -> None:
        """Remove the Node object. Idempotent."""
        raise NotImplementedError

    @abstractmethod
    def workloads_healthy(self, node_name: str) -> bool:
        """Pods scheduled on the node are running and nothing is stuck pending."""
        raise NotImplementedError

    @abstractmethod
    def node_has_local_storage(self, node_name: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def disruption_allowed(self, node_name: str) -> bool:
        """Every disruption budget covering pods on the node allows one more eviction."""
        raise NotImplementedError

    @abstractmethod
    def cluster_health(self) -> ClusterHealth:
        raise NotImplementedError


class UtilizationSource(ABC):

    @abstractmethod
    def samples(self, nodes: List[ManagedNode]) -> List[UtilizationSample]:
        """Latest CPU/memory utilization for the given Ready nodes."""
        raise NotImplementedError


class PendingPodSource(ABC):

    @abstractmethod
    def pending_pods(self, group: NodeGroup) -> List[PendingPod]:
        """Unschedulable pods that a new node of `group` could host."""
        raise NotImplementedError


class OpportunitySource(ABC):

    @abstractmethod
    def opportunities(self, group: NodeGroup, nodes: List[ManagedNode]) -> List[Opportunity]:
        raise NotImplementedError


class CheapestOfferingSource(OpportunitySource):
    """
    Suggests moving nodes to the cheapest allowed offering that is at least
    as large as the one they run on.
    """

    def __init__(self, provider: CloudProvider):
        self._provider = provider

    def opportunities(self, group: NodeGroup, nodes: List[ManagedNode]) -> List[Opportunity]:
        catalog: Dict[str, Offering] = {
            o.offering_id: o for o in self._provider.list_offerings(group.datacenter_id)
        }
        allowed = [catalog[i] for i in group.offering_ids if i in catalog and catalog[i].available]

        counts: Dict[str, int] = {}
        for node in nodes:
            if node.is_ready():
                counts[node.offering_id] = counts.get(node.offering_id, 0) + 1

        results = []
        for offering_id in sorted(counts):
            current = catalog.get(offering_id)
            if current is None:
                continue
            fits = [
                o for o in allowed
                if o.offering_id != offering_id
                and o.cpu >= current.cpu
                and o.memory_mb >= current.memory_mb
                and o.monthly_price < current.monthly_price
            ]
            if not fits:
                continue
            target = min(fits, key=lambda o: (o.monthly_price, o.offering_id))
            savings = (current.monthly_price - target.monthly_price) * counts[offering_id]
            results.append(
                Opportunity(
                    opportunity_id=f"{group.name}-{offering_id}-to-{target.offering_id}",
                    current_offering=offering_id,
                    target_offering=target.offering_id,
                    monthly_savings=round(savings, 2),
                    performance_delta=0.0,
                )
            )
        return results
