#vps_autoscaler\core\repository.py

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from vps_autoscaler.core.models import Lease, ManagedNode, NodeGroup
from vps_autoscaler.rebalancer.types import ExecutionState, RebalancePlan


# Every `update` below follows the same optimistic-concurrency contract:
# the caller passes the object as it read it (same `version`); the stored
# row must still carry that version, otherwise ConcurrencyError is raised.
# On success the stored version is incremented and the passed object's
# `version` is bumped to match, so it can be updated again.


class NodeGroupRepository(ABC):

    @abstractmethod
    def create(self, group: NodeGroup) -> None:
        """
        Persist a new group.

        Must fail if a group with the same name exists.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, name: str) -> Optional[NodeGroup]:
        raise NotImplementedError

    @abstractmethod
    def list(self) -> List[NodeGroup]:
        """All groups ordered by name."""
        raise NotImplementedError

    @abstractmethod
    def update(self, group: NodeGroup) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, name: str) -> None:
        raise NotImplementedError


class ManagedNodeRepository(ABC):

    @abstractmethod
    def create(self, node: ManagedNode) -> None:
        raise NotImplementedError

    @abstractmethod
    def get(self, node_id: str) -> Optional[ManagedNode]:
        raise NotImplementedError

    @abstractmethod
    def list_by_group(self, group_name: str) -> List[ManagedNode]:
        """Nodes of one group ordered by creation time."""
        raise NotImplementedError

    @abstractmethod
    def list_all(self) -> List[ManagedNode]:
        raise NotImplementedError

    @abstractmethod
    def update(self, node: ManagedNode) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, node_id: str) -> None:
        """Remove the record once the instance is confirmed gone."""
        raise NotImplementedError


class RebalanceRepository(ABC):

    @abstractmethod
    def save_plan(self, plan: RebalancePlan) -> None:
        """Plans are immutable once saved."""
        raise NotImplementedError

    @abstractmethod
    def get_plan(self, plan_id: str) -> Optional[RebalancePlan]:
        raise NotImplementedError

    @abstractmethod
    def create_execution(self, state: ExecutionState) -> None:
        """
        Persist a new execution.

        Must raise RebalanceInProgressError if the group already has a
        non-terminal execution.
        """
        raise NotImplementedError

    @abstractmethod
    def get_execution(self, plan_id: str) -> Optional[ExecutionState]:
        raise NotImplementedError

    @abstractmethod
    def get_active_execution(self, group_name: str) -> Optional[ExecutionState]:
        """The group's single non-terminal execution, if any."""
        raise NotImplementedError

    @abstractmethod
    def list_executions(self, group_name: str) -> List[ExecutionState]:
        """Executions of one group, newest first."""
        raise NotImplementedError

    @abstractmethod
    def update_execution(self, state: ExecutionState) -> None:
        raise NotImplementedError


class LeaseRepository(ABC):

    @abstractmethod
    def try_acquire(self, name: str, holder: str, duration_seconds: int, now: datetime) -> bool:
        """
        Atomically take the lease.

        Succeeds if the lease does not exist, is expired, or is already
        held by `holder`.
        """
        raise NotImplementedError

    @abstractmethod
    def renew(self, name: str, holder: str, duration_seconds: int, now: datetime) -> None:
        """
        Extend the lease.

        Must raise LeaseError if `holder` does not hold an unexpired lease.
        """
        raise NotImplementedError

    @abstractmethod
    def release(self, name: str, holder: str) -> None:
        """Give up the lease. No-op if held by someone else."""
        raise NotImplementedError

    @abstractmethod
    def get(self, name: str) -> Optional[Lease]:
        raise NotImplementedError
