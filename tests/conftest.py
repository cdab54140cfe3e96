#tests\conftest.py

"""Pytest configuration, fakes and fixtures."""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from vps_autoscaler.core.errors import DrainError
from vps_autoscaler.core.events import LogEventEmitter
from vps_autoscaler.core.models import ManagedNode, NodeGroup, NodePhase
from vps_autoscaler.core.state_machine import NodeLifecycleStateMachine
from vps_autoscaler.infrastructure.memory.repository import (
    InMemoryLeaseRepository,
    InMemoryManagedNodeRepository,
    InMemoryNodeGroupRepository,
    InMemoryRebalanceRepository,
)
from vps_autoscaler.provider.interface import (
    CloudProvider,
    ClusterClient,
    ClusterHealth,
    InstanceInfo,
    InstanceSpec,
    InstanceStatus,
    Offering,
    OpportunitySource,
    PendingPod,
    PendingPodSource,
    UtilizationSample,
    UtilizationSource,
)
from vps_autoscaler.provider.retry import BackoffPolicy
from vps_autoscaler.rebalancer.analyzer import RebalanceAnalyzer
from vps_autoscaler.rebalancer.executor import RebalanceExecutor
from vps_autoscaler.rebalancer.planner import RebalancePlanner
from vps_autoscaler.rebalancer.types import Opportunity
from vps_autoscaler.safety.gate import SafetyGate
from vps_autoscaler.scaler.engine import ScalingDecisionEngine


# -------------------------
# FAKES
# -------------------------

class FakeProvider(CloudProvider):
    """In-memory VPS provider. Every mutating call is recorded in `calls`."""

    def __init__(self, offerings: Optional[List[Offering]] = None, quota: Optional[int] = None):
        self.offerings = offerings if offerings is not None else [
            Offering("small-2c4g", cpu=2, memory_mb=4096, disk_gb=80, monthly_price=20.0),
            Offering("medium-4c8g", cpu=4, memory_mb=8192, disk_gb=160, monthly_price=40.0),
            Offering("medium-4c8g-amd", cpu=4, memory_mb=8192, disk_gb=160, monthly_price=30.0),
        ]
        self.quota = quota
        self.instances: Dict[str, InstanceInfo] = {}
        self.specs: Dict[str, InstanceSpec] = {}
        self.calls: List[tuple] = []
        self.create_errors: List[Exception] = []
        self.initial_status = InstanceStatus.RUNNING
        self._counter = 0

    def create_instance(self, spec: InstanceSpec) -> InstanceInfo:
        self.calls.append(("create", spec.name))
        if self.create_errors:
            raise self.create_errors.pop(0)
        for info in self.instances.values():
            if info.name == spec.name:
                return info
        self._counter += 1
        info = InstanceInfo(
            instance_id=f"vm-{self._counter:04d}",
            name=spec.name,
            status=self.initial_status,
            ip_address=f"10.0.0.{self._counter}",
        )
        self.instances[info.instance_id] = info
        self.specs[info.instance_id] = spec
        return info

    def delete_instance(self, instance_id: str) -> None:
        self.calls.append(("delete", instance_id))
        info = self.instances.get(instance_id)
        if info is not None:
            info.status = InstanceStatus.GONE

    def get_instance(self, instance_id: str) -> InstanceInfo:
        info = self.instances.get(instance_id)
        if info is None:
            return InstanceInfo(instance_id=instance_id, name="", status=InstanceStatus.GONE)
        return info

    def find_instance(self, name: str) -> Optional[InstanceInfo]:
        for info in self.instances.values():
            if info.name == name and info.status != InstanceStatus.GONE:
                return info
        return None

    def list_offerings(self, datacenter_id: str) -> List[Offering]:
        return list(self.offerings)

    def available_quota(self) -> Optional[int]:
        return self.quota

    def mutations(self) -> List[tuple]:
        return list(self.calls)


class FakeCluster(ClusterClient):
    """In-memory cluster. Nodes join Ready unless `join_ready` is False."""

    def __init__(self):
        self.ready: Dict[str, bool] = {}
        self.cordoned: Dict[str, bool] = {}
        self.calls: List[tuple] = []
        self.join_ready = True
        self.drain_result = True
        self.drain_errors: Dict[str, DrainError] = {}
        self.pdb_blocked: set = set()
        self.local_storage: set = set()
        self.unhealthy_workloads: set = set()
        self.control_plane_healthy = True
        self.health_override: Optional[ClusterHealth] = None

    def add_node(self, name: str, ready: bool = True) -> None:
        self.ready[name] = ready
        self.cordoned[name] = False

    def join_cluster(self, node: ManagedNode) -> str:
        name = f"k8s-{node.node_id}"
        self.calls.append(("join", name))
        self.add_node(name, ready=self.join_ready)
        return name

    def is_node_ready(self, node_name: str) -> bool:
        return self.ready.get(node_name, False)

    def cordon_node(self, node_name: str) -> None:
        self.calls.append(("cordon", node_name))
        self.cordoned[node_name] = True

    def uncordon_node(self, node_name: str) -> None:
        self.calls.append(("uncordon", node_name))
        self.cordoned[node_name] = False

    def drain_node(self, node_name: str, timeout_seconds: int, force: bool = False) -> bool:
        self.calls.append(("drain", node_name, force))
        error = self.drain_errors.get(node_name)
        if error is not None and not force:
            raise error
        return self.drain_result or force

    def delete_node(self, node_name: str) -> None:
        self.calls.append(("delete_node", node_name))
        self.ready.pop(node_name, None)
        self.cordoned.pop(node_name, None)

    def workloads_healthy(self, node_name: str) -> bool:
        return node_name not in self.unhealthy_workloads

    def node_has_local_storage(self, node_name: str) -> bool:
        return node_name in self.local_storage

    def disruption_allowed(self, node_name: str) -> bool:
        return node_name not in self.pdb_blocked

    def cluster_health(self) -> ClusterHealth:
        if self.health_override is not None:
            return self.health_override
        total = len(self.ready)
        ready = sum(1 for r in self.ready.values() if r)
        return ClusterHealth(self.control_plane_healthy, total, ready)

    def mutations(self) -> List[tuple]:
        return list(self.calls)


class FakeUtilization(UtilizationSource):
    def __init__(self, cpu: float = 60.0, memory: float = 60.0):
        self.cpu = cpu
        self.memory = memory
        self.per_node: Dict[str, tuple] = {}

    def samples(self, nodes: List[ManagedNode]) -> List[UtilizationSample]:
        results = []
        for node in nodes:
            cpu, memory = self.per_node.get(node.node_id, (self.cpu, self.memory))
            results.append(UtilizationSample(node.node_id, cpu, memory))
        return results


class FakePendingPods(PendingPodSource):
    def __init__(self):
        self.pods: List[PendingPod] = []

    def pending_pods(self, group) -> List[PendingPod]:
        return [p for p in self.pods if p.fits(group)]


class FakeOpportunities(OpportunitySource):
    def __init__(self, opportunities: Optional[List[Opportunity]] = None):
        self.items = opportunities or []

    def opportunities(self, group, nodes) -> List[Opportunity]:
        return list(self.items)


# -------------------------
# CLOCK
# -------------------------

@pytest.fixture
def now():
    """A fixed Wednesday noon, UTC."""
    return datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


# -------------------------
# REPOSITORIES
# -------------------------

@pytest.fixture
def groups():
    return InMemoryNodeGroupRepository()


@pytest.fixture
def nodes():
    return InMemoryManagedNodeRepository()


@pytest.fixture
def rebalances():
    return InMemoryRebalanceRepository()


@pytest.fixture
def leases():
    return InMemoryLeaseRepository()


# -------------------------
# COLLABORATORS
# -------------------------

@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def utilization():
    return FakeUtilization()


@pytest.fixture
def pending_pods():
    return FakePendingPods()


@pytest.fixture
def emitter():
    return LogEventEmitter()


@pytest.fixture
def backoff():
    return BackoffPolicy(base_seconds=5, max_seconds=60, max_attempts=3)


@pytest.fixture
def gate(provider, cluster):
    return SafetyGate(provider, cluster)


@pytest.fixture
def lifecycle(nodes, groups, provider, cluster, emitter, backoff):
    return NodeLifecycleStateMachine(
        nodes=nodes,
        groups=groups,
        provider=provider,
        cluster=cluster,
        emitter=emitter,
        backoff=backoff,
    )


@pytest.fixture
def engine(groups, nodes, rebalances, lifecycle, provider, gate, utilization, pending_pods, emitter):
    return ScalingDecisionEngine(
        groups=groups,
        nodes=nodes,
        rebalances=rebalances,
        lifecycle=lifecycle,
        provider=provider,
        gate=gate,
        utilization=utilization,
        pending_pods=pending_pods,
        emitter=emitter,
    )


@pytest.fixture
def analyzer(gate):
    return RebalanceAnalyzer(gate)


@pytest.fixture
def planner():
    return RebalancePlanner()


@pytest.fixture
def executor(groups, nodes, rebalances, lifecycle, cluster, gate, emitter, backoff):
    return RebalanceExecutor(
        groups=groups,
        nodes=nodes,
        rebalances=rebalances,
        lifecycle=lifecycle,
        cluster=cluster,
        gate=gate,
        emitter=emitter,
        backoff=backoff,
    )


# -------------------------
# SAMPLE OBJECTS
# -------------------------

@pytest.fixture
def sample_group():
    return NodeGroup(
        name="workers",
        min_nodes=3,
        max_nodes=20,
        datacenter_id="dc-fra1",
        offering_ids=["small-2c4g", "medium-4c8g", "medium-4c8g-amd"],
        os_image_id="ubuntu-22.04",
    )


def make_ready_node(
    node_id: str,
    group: NodeGroup,
    cluster: FakeCluster,
    *,
    offering_id: str = "small-2c4g",
    created_at: Optional[datetime] = None,
    instance_id: Optional[str] = None,
) -> ManagedNode:
    """A Ready node that also exists in the fake cluster."""
    created = created_at or datetime(2025, 1, 1, tzinfo=timezone.utc)
    node = ManagedNode(
        node_id=node_id,
        group_name=group.name,
        offering_id=offering_id,
        datacenter_id=group.datacenter_id,
        instance_id=instance_id or f"vm-{node_id}",
        node_name=f"k8s-{node_id}",
        phase=NodePhase.READY,
        created_at=created,
        phase_changed_at=created,
        provisioned_at=created,
        joined_at=created,
        ready_at=created,
        create_requested_at=created,
    )
    cluster.add_node(node.node_name)
    return node


@pytest.fixture
def seeded(groups, nodes, provider, cluster, sample_group, now):
    """
    Store the sample group with `count` Ready nodes on small-2c4g.

    Nodes are created oldest-first, a day apart, and registered with the
    fake provider so deletes and status lookups resolve.
    """

    def _seed(count: int = 3, group: Optional[NodeGroup] = None, offering_id: str = "small-2c4g"):
        group = group or sample_group
        groups.create(group)
        created = []
        for i in range(count):
            node = make_ready_node(
                f"{group.name}-n{i}",
                group,
                cluster,
                offering_id=offering_id,
                created_at=now - timedelta(days=30 - i),
            )
            provider.instances[node.instance_id] = InstanceInfo(
                instance_id=node.instance_id,
                name=node.node_id,
                status=InstanceStatus.RUNNING,
            )
            nodes.create(node)
            created.append(node)
        return groups.get(group.name), created

    return _seed
