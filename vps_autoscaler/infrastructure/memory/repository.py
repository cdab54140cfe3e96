# vps_autoscaler/infrastructure/memory/repository.py

from copy import deepcopy
from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, List, Optional

from vps_autoscaler.core.errors import (
    AlreadyExistsError,
    ConcurrencyError,
    LeaseError,
    NotFoundError,
    RebalanceInProgressError,
)
from vps_autoscaler.core.models import Lease, ManagedNode, NodeGroup
from vps_autoscaler.core.repository import (
    LeaseRepository,
    ManagedNodeRepository,
    NodeGroupRepository,
    RebalanceRepository,
)
from vps_autoscaler.rebalancer.types import ExecutionState, RebalancePlan

# Callers always receive copies, so a reconcile that mutates an object and
# then fails never leaks half-applied state into the store.


class InMemoryNodeGroupRepository(NodeGroupRepository):
    def __init__(self):
        self._store: Dict[str, NodeGroup] = {}
        self._lock = Lock()

    def create(self, group: NodeGroup) -> None:
        with self._lock:
            if group.name in self._store:
                raise AlreadyExistsError(f"NodeGroup {group.name} already exists")
            self._store[group.name] = deepcopy(group)

    def get(self, name: str) -> Optional[NodeGroup]:
        with self._lock:
            group = self._store.get(name)
            return deepcopy(group) if group else None

    def list(self) -> List[NodeGroup]:
        with self._lock:
            return [deepcopy(self._store[k]) for k in sorted(self._store)]

    def update(self, group: NodeGroup) -> None:
        with self._lock:
            stored = self._store.get(group.name)
            if stored is None:
                raise NotFoundError(f"NodeGroup {group.name} not found")
            if stored.version != group.version:
                raise ConcurrencyError(
                    f"NodeGroup {group.name} modified concurrently "
                    f"(stored={stored.version}, given={group.version})"
                )
            group.version += 1
            self._store[group.name] = deepcopy(group)

    def delete(self, name: str) -> None:
        with self._lock:
            self._store.pop(name, None)


class InMemoryManagedNodeRepository(ManagedNodeRepository):
    def __init__(self):
        self._store: Dict[str, ManagedNode] = {}
        self._lock = Lock()

    def create(self, node: ManagedNode) -> None:
        with self._lock:
            if node.node_id in self._store:
                raise AlreadyExistsError(f"ManagedNode {node.node_id} already exists")
            self._store[node.node_id] = deepcopy(node)

    def get(self, node_id: str) -> Optional[ManagedNode]:
        with self._lock:
            node = self._store.get(node_id)
            return deepcopy(node) if node else None

    def list_by_group(self, group_name: str) -> List[ManagedNode]:
        with self._lock:
            nodes = [n for n in self._store.values() if n.group_name == group_name]
            nodes.sort(key=lambda n: (n.created_at, n.node_id))
            return deepcopy(nodes)

    def list_all(self) -> List[ManagedNode]:
        with self._lock:
            nodes = sorted(self._store.values(), key=lambda n: (n.created_at, n.node_id))
            return deepcopy(nodes)

    def update(self, node: ManagedNode) -> None:
        with self._lock:
            stored = self._store.get(node.node_id)
            if stored is None:
                raise NotFoundError(f"ManagedNode {node.node_id} not found")
            if stored.version != node.version:
                raise ConcurrencyError(
                    f"ManagedNode {node.node_id} modified concurrently "
                    f"(stored={stored.version}, given={node.version})"
                )
            node.version += 1
            self._store[node.node_id] = deepcopy(node)

    def delete(self, node_id: str) -> None:
        with self._lock:
            self._store.pop(node_id, None)


class InMemoryRebalanceRepository(RebalanceRepository):
    def __init__(self):
        self._plans: Dict[str, RebalancePlan] = {}
        self._executions: Dict[str, ExecutionState] = {}
        self._lock = Lock()

    def save_plan(self, plan: RebalancePlan) -> None:
        with self._lock:
            if plan.plan_id in self._plans:
                raise AlreadyExistsError(f"Plan {plan.plan_id} already exists")
            self._plans[plan.plan_id] = deepcopy(plan)

    def get_plan(self, plan_id: str) -> Optional[RebalancePlan]:
        with self._lock:
            plan = self._plans.get(plan_id)
            return deepcopy(plan) if plan else None

    def create_execution(self, state: ExecutionState) -> None:
        with self._lock:
            if state.plan_id in self._executions:
                raise AlreadyExistsError(f"Execution {state.plan_id} already exists")
            for existing in self._executions.values():
                if existing.group_name == state.group_name and not existing.status.is_terminal():
                    raise RebalanceInProgressError(
                        f"Group {state.group_name} already has active execution {existing.plan_id}"
                    )
            self._executions[state.plan_id] = deepcopy(state)

    def get_execution(self, plan_id: str) -> Optional[ExecutionState]:
        with self._lock:
            state = self._executions.get(plan_id)
            return deepcopy(state) if state else None

    def get_active_execution(self, group_name: str) -> Optional[ExecutionState]:
        with self._lock:
            for state in self._executions.values():
                if state.group_name == group_name and not state.status.is_terminal():
                    return deepcopy(state)
            return None

    def list_executions(self, group_name: str) -> List[ExecutionState]:
        with self._lock:
            states = [s for s in self._executions.values() if s.group_name == group_name]
            states.sort(key=lambda s: s.created_at, reverse=True)
            return deepcopy(states)

    def update_execution(self, state: ExecutionState) -> None:
        with self._lock:
            stored = self._executions.get(state.plan_id)
            if stored is None:
                raise NotFoundError(f"Execution {state.plan_id} not found")
            if stored.version != state.version:
                raise ConcurrencyError(
                    f"Execution {state.plan_id} modified concurrently "
                    f"(stored={stored.version}, given={state.version})"
                )
            state.version += 1
            self._executions[state.plan_id] = deepcopy(state)


class InMemoryLeaseRepository(LeaseRepository):
    def __init__(self):
        self._store: Dict[str, Lease] = {}
        self._lock = Lock()

    def try_acquire(self, name: str, holder: str, duration_seconds: int, now: datetime) -> bool:
        with self._lock:
            lease = self._store.get(name)
            if lease is None:
                lease = Lease(name=name)
                self._store[name] = lease

            if lease.holder not in (None, holder) and not lease.is_expired(now):
                return False

            if lease.holder != holder:
                lease.acquired_at = now
            lease.holder = holder
            lease.renewed_at = now
            lease.expires_at = now + timedelta(seconds=duration_seconds)
            lease.version += 1
            return True

    def renew(self, name: str, holder: str, duration_seconds: int, now: datetime) -> None:
        with self._lock:
            lease = self._store.get(name)
            if lease is None:
                raise LeaseError(f"Lease {name} not found")
            if lease.holder != holder:
                raise LeaseError(f"Lease {name} held by {lease.holder}")
            if lease.is_expired(now):
                raise LeaseError(f"Lease {name} already expired")

            lease.renewed_at = now
            lease.expires_at = now + timedelta(seconds=duration_seconds)
            lease.version += 1

    def release(self, name: str, holder: str) -> None:
        with self._lock:
            lease = self._store.get(name)
            if lease is None or lease.holder != holder:
                return
            lease.holder = None
            lease.expires_at = None
            lease.version += 1

    def get(self, name: str) -> Optional[Lease]:
        with self._lock:
            lease = self._store.get(name)
            return deepcopy(lease) if lease else None
