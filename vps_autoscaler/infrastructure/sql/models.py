#vps_autoscaler\infrastructure\sql\models.py
"""SQLAlchemy ORM models for database tables."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String

from vps_autoscaler.infrastructure.sql.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NodeGroupORM(Base):
    """
    Node group table.

    The full domain object lives in `document`; only the columns needed for
    lookups and compare-and-swap are broken out.
    """

    __tablename__ = "node_groups"

    name = Column(String(253), primary_key=True)
    document = Column(JSON, nullable=False)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=_utcnow)


class ManagedNodeORM(Base):
    """
    Managed node table.

    Indexes:
    - group_name for per-group listings
    - phase for operational queries
    """

    __tablename__ = "managed_nodes"

    node_id = Column(String(253), primary_key=True)
    group_name = Column(String(253), nullable=False, index=True)
    phase = Column(String(32), nullable=False, index=True)
    instance_id = Column(String(128), nullable=True)
    document = Column(JSON, nullable=False)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=_utcnow)


class RebalancePlanORM(Base):
    __tablename__ = "rebalance_plans"

    plan_id = Column(String(253), primary_key=True)
    group_name = Column(String(253), nullable=False, index=True)
    document = Column(JSON, nullable=False)
    created_at = Column(DateTime, nullable=False, default=_utcnow)


class RebalanceExecutionORM(Base):
    """
    Rebalance execution table.

    `active_group` equals group_name while the execution is not terminal and
    is NULL afterwards; the unique index enforces one active plan per group.
    """

    __tablename__ = "rebalance_executions"

    plan_id = Column(String(253), primary_key=True)
    group_name = Column(String(253), nullable=False, index=True)
    status = Column(String(32), nullable=False, index=True)
    active_group = Column(String(253), nullable=True)
    document = Column(JSON, nullable=False)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_rebalance_executions_active_group", "active_group", unique=True),
        Index("ix_rebalance_executions_group_created", "group_name", "created_at"),
    )


class LeaseORM(Base):
    __tablename__ = "leases"

    name = Column(String(253), primary_key=True)
    holder = Column(String(253), nullable=True)
    document = Column(JSON, nullable=False)
    version = Column(Integer, nullable=False, default=0)
