"""
SQLAlchemy models for PostgreSQL persistence.

Implements durable storage for instances, node runs, human tasks and
barrier progress. Ids are ULID strings generated by the engine.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
    }


class WorkflowInstanceModel(Base):
    """
    Stores flow instance state.

    The context column is rewritten on every node-run close, so it always
    holds the last durable checkpoint.
    """

    __tablename__ = "workflow_instances"

    id: Mapped[str] = mapped_column(String(26), primary_key=True)
    flow_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="RUNNING", index=True)
    context: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)

    # Metrics
    wall_ms_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    active_ms_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    waiting_ms_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Timestamps
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    node_runs: Mapped[list["NodeRunModel"]] = relationship(
        back_populates="instance",
        lazy="noload",
        cascade="all, delete-orphan"
    )


class NodeRunModel(Base):
    """One visit to one node. Revisits of the same node get their own row."""

    __tablename__ = "workflow_node_runs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True)
    instance_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    node_id: Mapped[str] = mapped_column(String(255), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    waiting: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="RUNNING")

    duration_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    active_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    waiting_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now()
    )
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    instance: Mapped[WorkflowInstanceModel] = relationship(back_populates="node_runs")

    __table_args__ = (
        Index("ix_workflow_node_runs_instance_node", "instance_id", "node_id"),
    )


class TaskModel(Base):
    """Human-form task."""

    __tablename__ = "workflow_tasks"

    id: Mapped[str] = mapped_column(String(26), primary_key=True)
    instance_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    node_id: Mapped[str] = mapped_column(String(255), nullable=False)
    form_schema_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="OPEN")
    assignees: Mapped[list[str]] = mapped_column(ARRAY(String(255)), nullable=False, default=list)
    context: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now()
    )
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_workflow_tasks_status_expires", "status", "expires_at"),
        Index("ix_workflow_tasks_assignees", "assignees", postgresql_using="gin"),
    )


class BarrierModel(Base):
    """Barrier progress, one row per (node, correlation key)."""

    __tablename__ = "workflow_barriers"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    instance_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    node_id: Mapped[str] = mapped_column(String(255), nullable=False)
    correlate_key: Mapped[str] = mapped_column(String(255), nullable=False)
    mode: Mapped[str] = mapped_column(String(10), nullable=False)
    quorum: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    expected_topics: Mapped[list[str]] = mapped_column(ARRAY(String(255)), nullable=False)
    emit_merged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    progress: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)

    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("node_id", "correlate_key", name="uq_workflow_barriers_node_key"),
        Index("ix_workflow_barriers_open_expiry", "completed", "expires_at"),
    )


class BarrierTopicModel(Base):
    """Append-only audit row for one topic reported to a barrier."""

    __tablename__ = "workflow_barrier_topics"

    id: Mapped[str] = mapped_column(String(26), primary_key=True)
    instance_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    node_id: Mapped[str] = mapped_column(String(255), nullable=False)
    topic: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(10), nullable=False)
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
