#vps_autoscaler\infrastructure\sql\repository.py

"""SQL repository implementations using SQLAlchemy."""

import logging
from datetime import timedelta
from typing import List, Optional

from pydantic import TypeAdapter
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from vps_autoscaler.core.errors import (
    AlreadyExistsError,
    ConcurrencyError,
    LeaseError,
    NotFoundError,
    PersistenceError,
    RebalanceInProgressError,
)
from vps_autoscaler.core.models import Lease, ManagedNode, NodeGroup
from vps_autoscaler.core.repository import (
    LeaseRepository,
    ManagedNodeRepository,
    NodeGroupRepository,
    RebalanceRepository,
)
from vps_autoscaler.infrastructure.sql.database import SessionLocal
from vps_autoscaler.infrastructure.sql.models import (
    LeaseORM,
    ManagedNodeORM,
    NodeGroupORM,
    RebalanceExecutionORM,
    RebalancePlanORM,
)
from vps_autoscaler.rebalancer.types import ExecutionState, RebalancePlan

logger = logging.getLogger(__name__)


# ============================================
# Mapping Functions
# ============================================

_group_adapter = TypeAdapter(NodeGroup)
_node_adapter = TypeAdapter(ManagedNode)
_plan_adapter = TypeAdapter(RebalancePlan)
_execution_adapter = TypeAdapter(ExecutionState)
_lease_adapter = TypeAdapter(Lease)


def to_document(adapter: TypeAdapter, obj) -> dict:
    """Domain dataclass -> JSON-safe dict (enums by value, ISO datetimes)."""
    return adapter.dump_python(obj, mode="json")


def from_document(adapter: TypeAdapter, document: dict, version: Optional[int] = None):
    obj = adapter.validate_python(document)
    if version is not None:
        obj.version = version
    return obj


class _SQLRepository:
    """Session handling shared by every table."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or SessionLocal

    def _get_session(self) -> Session:
        return self._session_factory()

    @staticmethod
    def _compare_and_swap(session: Session, orm_cls, key_column, key, version: int, values: dict, label: str) -> None:
        """Write `values` only if the stored version still equals `version`."""
        values = dict(values, version=version + 1)
        updated = (
            session.query(orm_cls)
            .filter(key_column == key, orm_cls.version == version)
            .update(values, synchronize_session=False)
        )
        if updated == 1:
            return
        if session.get(orm_cls, key) is None:
            raise NotFoundError(f"{label} {key} not found")
        raise ConcurrencyError(f"{label} {key} was modified concurrently (given version {version})")


# ============================================
# Node groups
# ============================================

class SQLNodeGroupRepository(_SQLRepository, NodeGroupRepository):

    def create(self, group: NodeGroup) -> None:
        session = self._get_session()
        try:
            session.add(NodeGroupORM(name=group.name, document=to_document(_group_adapter, group), version=group.version))
            session.commit()
            logger.debug(f"[sql] create node group {group.name}")
        except IntegrityError as e:
            session.rollback()
            raise AlreadyExistsError(f"Node group {group.name} already exists") from e
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to create node group {group.name}: {e}") from e
        finally:
            session.close()

    def get(self, name: str) -> Optional[NodeGroup]:
        session = self._get_session()
        try:
            orm = session.get(NodeGroupORM, name)
            if orm is None:
                return None
            return from_document(_group_adapter, orm.document, orm.version)
        finally:
            session.close()

    def list(self) -> List[NodeGroup]:
        session = self._get_session()
        try:
            rows = session.query(NodeGroupORM).order_by(NodeGroupORM.name.asc()).all()
            return [from_document(_group_adapter, orm.document, orm.version) for orm in rows]
        finally:
            session.close()

    def update(self, group: NodeGroup) -> None:
        session = self._get_session()
        try:
            self._compare_and_swap(
                session,
                NodeGroupORM,
                NodeGroupORM.name,
                group.name,
                group.version,
                {"document": to_document(_group_adapter, group)},
                "Node group",
            )
            session.commit()
            group.version += 1
        except (NotFoundError, ConcurrencyError):
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to update node group {group.name}: {e}") from e
        finally:
            session.close()

    def delete(self, name: str) -> None:
        session = self._get_session()
        try:
            session.query(NodeGroupORM).filter(NodeGroupORM.name == name).delete()
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to delete node group {name}: {e}") from e
        finally:
            session.close()


# ============================================
# Managed nodes
# ============================================

class SQLManagedNodeRepository(_SQLRepository, ManagedNodeRepository):

    @staticmethod
    def _columns(node: ManagedNode) -> dict:
        return {
            "group_name": node.group_name,
            "phase": node.phase.value,
            "instance_id": node.instance_id,
            "document": to_document(_node_adapter, node),
        }

    def create(self, node: ManagedNode) -> None:
        session = self._get_session()
        try:
            session.add(ManagedNodeORM(node_id=node.node_id, version=node.version, **self._columns(node)))
            session.commit()
            logger.debug(f"[sql] create node {node.node_id}")
        except IntegrityError as e:
            session.rollback()
            raise AlreadyExistsError(f"Node {node.node_id} already exists") from e
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to create node {node.node_id}: {e}") from e
        finally:
            session.close()

    def get(self, node_id: str) -> Optional[ManagedNode]:
        session = self._get_session()
        try:
            orm = session.get(ManagedNodeORM, node_id)
            if orm is None:
                return None
            return from_document(_node_adapter, orm.document, orm.version)
        finally:
            session.close()

    def list_by_group(self, group_name: str) -> List[ManagedNode]:
        session = self._get_session()
        try:
            rows = (
                session.query(ManagedNodeORM)
                .filter(ManagedNodeORM.group_name == group_name)
                .order_by(ManagedNodeORM.node_id.asc())
                .all()
            )
            return [from_document(_node_adapter, orm.document, orm.version) for orm in rows]
        finally:
            session.close()

    def list_all(self) -> List[ManagedNode]:
        session = self._get_session()
        try:
            rows = session.query(ManagedNodeORM).order_by(ManagedNodeORM.node_id.asc()).all()
            return [from_document(_node_adapter, orm.document, orm.version) for orm in rows]
        finally:
            session.close()

    def update(self, node: ManagedNode) -> None:
        session = self._get_session()
        try:
            self._compare_and_swap(
                session,
                ManagedNodeORM,
                ManagedNodeORM.node_id,
                node.node_id,
                node.version,
                self._columns(node),
                "Node",
            )
            session.commit()
            node.version += 1
        except (NotFoundError, ConcurrencyError):
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to update node {node.node_id}: {e}") from e
        finally:
            session.close()

    def delete(self, node_id: str) -> None:
        session = self._get_session()
        try:
            session.query(ManagedNodeORM).filter(ManagedNodeORM.node_id == node_id).delete()
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to delete node {node_id}: {e}") from e
        finally:
            session.close()


# ============================================
# Rebalance plans and executions
# ============================================

class SQLRebalanceRepository(_SQLRepository, RebalanceRepository):

    @staticmethod
    def _columns(state: ExecutionState) -> dict:
        return {
            "group_name": state.group_name,
            "status": state.status.value,
            "active_group": None if state.status.is_terminal() else state.group_name,
            "document": to_document(_execution_adapter, state),
        }

    def save_plan(self, plan: RebalancePlan) -> None:
        session = self._get_session()
        try:
            session.add(
                RebalancePlanORM(
                    plan_id=plan.plan_id,
                    group_name=plan.group_name,
                    document=to_document(_plan_adapter, plan),
                )
            )
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise AlreadyExistsError(f"Plan {plan.plan_id} already exists") from e
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to save plan {plan.plan_id}: {e}") from e
        finally:
            session.close()

    def get_plan(self, plan_id: str) -> Optional[RebalancePlan]:
        session = self._get_session()
        try:
            orm = session.get(RebalancePlanORM, plan_id)
            if orm is None:
                return None
            return from_document(_plan_adapter, orm.document)
        finally:
            session.close()

    def create_execution(self, state: ExecutionState) -> None:
        session = self._get_session()
        try:
            active = self._active_row(session, state.group_name)
            if active is not None:
                raise RebalanceInProgressError(
                    f"Group {state.group_name} already has active plan {active.plan_id}"
                )
            session.add(RebalanceExecutionORM(plan_id=state.plan_id, version=state.version, **self._columns(state)))
            session.commit()
        except RebalanceInProgressError:
            session.rollback()
            raise
        except IntegrityError as e:
            session.rollback()
            # lost a race on the active_group unique index, or a duplicate plan id
            if self.get_active_execution(state.group_name) is not None:
                raise RebalanceInProgressError(f"Group {state.group_name} already has an active plan") from e
            raise AlreadyExistsError(f"Execution {state.plan_id} already exists") from e
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to create execution {state.plan_id}: {e}") from e
        finally:
            session.close()

    def get_execution(self, plan_id: str) -> Optional[ExecutionState]:
        session = self._get_session()
        try:
            orm = session.get(RebalanceExecutionORM, plan_id)
            if orm is None:
                return None
            return from_document(_execution_adapter, orm.document, orm.version)
        finally:
            session.close()

    def get_active_execution(self, group_name: str) -> Optional[ExecutionState]:
        session = self._get_session()
        try:
            orm = self._active_row(session, group_name)
            if orm is None:
                return None
            return from_document(_execution_adapter, orm.document, orm.version)
        finally:
            session.close()

    def list_executions(self, group_name: str) -> List[ExecutionState]:
        session = self._get_session()
        try:
            rows = (
                session.query(RebalanceExecutionORM)
                .filter(RebalanceExecutionORM.group_name == group_name)
                .all()
            )
            states = [from_document(_execution_adapter, orm.document, orm.version) for orm in rows]
            return sorted(states, key=lambda s: s.created_at, reverse=True)
        finally:
            session.close()

    def update_execution(self, state: ExecutionState) -> None:
        session = self._get_session()
        try:
            self._compare_and_swap(
                session,
                RebalanceExecutionORM,
                RebalanceExecutionORM.plan_id,
                state.plan_id,
                state.version,
                self._columns(state),
                "Execution",
            )
            session.commit()
            state.version += 1
        except (NotFoundError, ConcurrencyError):
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to update execution {state.plan_id}: {e}") from e
        finally:
            session.close()

    @staticmethod
    def _active_row(session: Session, group_name: str) -> Optional[RebalanceExecutionORM]:
        return (
            session.query(RebalanceExecutionORM)
            .filter(RebalanceExecutionORM.active_group == group_name)
            .first()
        )


# ============================================
# Leader lease
# ============================================

class SQLLeaseRepository(_SQLRepository, LeaseRepository):

    def try_acquire(self, name, holder, duration_seconds, now) -> bool:
        session = self._get_session()
        try:
            orm = session.get(LeaseORM, name)
            if orm is None:
                lease = Lease(
                    name=name,
                    holder=holder,
                    acquired_at=now,
                    renewed_at=now,
                    expires_at=now + timedelta(seconds=duration_seconds),
                    version=1,
                )
                session.add(LeaseORM(name=name, holder=holder, document=to_document(_lease_adapter, lease), version=1))
                session.commit()
                return True

            lease = from_document(_lease_adapter, orm.document, orm.version)
            if lease.holder not in (None, holder) and not lease.is_expired(now):
                return False

            if lease.holder != holder:
                lease.acquired_at = now
            lease.holder = holder
            lease.renewed_at = now
            lease.expires_at = now + timedelta(seconds=duration_seconds)
            self._compare_and_swap(
                session,
                LeaseORM,
                LeaseORM.name,
                name,
                orm.version,
                {"holder": holder, "document": to_document(_lease_adapter, lease)},
                "Lease",
            )
            session.commit()
            return True
        except (IntegrityError, ConcurrencyError):
            # another candidate got there first
            session.rollback()
            return False
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to acquire lease {name}: {e}") from e
        finally:
            session.close()

    def renew(self, name, holder, duration_seconds, now) -> None:
        session = self._get_session()
        try:
            orm = session.get(LeaseORM, name)
            if orm is None:
                raise LeaseError(f"Lease {name} not found")
            lease = from_document(_lease_adapter, orm.document, orm.version)
            if lease.holder != holder:
                raise LeaseError(f"Lease {name} held by {lease.holder}")
            if lease.is_expired(now):
                raise LeaseError(f"Lease {name} already expired")

            lease.renewed_at = now
            lease.expires_at = now + timedelta(seconds=duration_seconds)
            self._compare_and_swap(
                session,
                LeaseORM,
                LeaseORM.name,
                name,
                orm.version,
                {"document": to_document(_lease_adapter, lease)},
                "Lease",
            )
            session.commit()
        except LeaseError:
            session.rollback()
            raise
        except (NotFoundError, ConcurrencyError) as e:
            session.rollback()
            raise LeaseError(f"Lease {name} changed during renewal: {e}") from e
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to renew lease {name}: {e}") from e
        finally:
            session.close()

    def release(self, name, holder) -> None:
        session = self._get_session()
        try:
            orm = session.get(LeaseORM, name)
            if orm is None or orm.holder != holder:
                return
            lease = from_document(_lease_adapter, orm.document, orm.version)
            lease.holder = None
            lease.expires_at = None
            self._compare_and_swap(
                session,
                LeaseORM,
                LeaseORM.name,
                name,
                orm.version,
                {"holder": None, "document": to_document(_lease_adapter, lease)},
                "Lease",
            )
            session.commit()
        except (NotFoundError, ConcurrencyError) as e:
            session.rollback()
            logger.info(f"[sql] lease {name} taken over before release by {holder}: {e}")
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to release lease {name}: {e}") from e
        finally:
            session.close()

    def get(self, name) -> Optional[Lease]:
        session = self._get_session()
        try:
            orm = session.get(LeaseORM, name)
            if orm is None:
                return None
            return from_document(_lease_adapter, orm.document, orm.version)
        finally:
            session.close()
