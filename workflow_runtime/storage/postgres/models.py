"""
SQLAlchemy models for durable workflow persistence.

Definitions and instance states are stored as JSON documents next to the
columns queries filter on. JSON columns are JSONB on PostgreSQL and plain
JSON elsewhere so the same models run on SQLite.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from workflow_runtime.core.clock import utc_now

JSONDocument = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER primary keys
SequenceId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    type_annotation_map = {
        dict[str, Any]: JSONDocument,
        list[str]: JSONDocument,
        UUID: Uuid(),
        datetime: DateTime(),
    }


class WorkflowDefinitionModel(Base):
    """
    Stores workflow definitions.

    One row per (id, version); ``document`` holds the full definition.
    """

    __tablename__ = "workflow_definitions"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    tags: Mapped[list[str]] = mapped_column(nullable=False, default=list)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_draft: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    document: Mapped[dict[str, Any]] = mapped_column(nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utc_now)
    modified_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    __table_args__ = (
        Index("ix_workflow_definitions_published", "id", "is_active", "is_draft"),
    )


class WorkflowInstanceModel(Base):
    """
    Stores workflow instance state.

    ``state`` is the full instance document; the lock columns are owned by
    the advisory lock and never written by a state save.
    """

    __tablename__ = "workflow_instances"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    workflow_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    correlation_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    state: Mapped[dict[str, Any]] = mapped_column(nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utc_now)
    scheduled_start_time: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_updated_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    # Advisory lock
    lock_holder: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    lock_expires_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    __table_args__ = (
        Index("ix_workflow_instances_scheduled", "status", "scheduled_start_time"),
    )


class WorkflowBookmarkModel(Base):
    """Index of the bookmarks an instance currently holds, for signal lookup."""

    __tablename__ = "workflow_bookmarks"

    instance_id: Mapped[UUID] = mapped_column(
        ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        primary_key=True,
    )
    name: Mapped[str] = mapped_column(String(512), primary_key=True, index=True)
    activity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    workflow_id: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utc_now)


class WorkflowHistoryModel(Base):
    """Append-only execution history."""

    __tablename__ = "workflow_execution_history"

    seq: Mapped[int] = mapped_column(SequenceId, primary_key=True, autoincrement=True)
    record_id: Mapped[UUID] = mapped_column(nullable=False, unique=True)
    instance_id: Mapped[UUID] = mapped_column(
        ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    activity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    activity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    outcome: Mapped[str] = mapped_column(String(50), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(nullable=False, default=utc_now)
    record: Mapped[dict[str, Any]] = mapped_column(nullable=False)


class WorkflowTimerModel(Base):
    """Pending and fired timers."""

    __tablename__ = "workflow_timers"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    instance_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    bookmark_name: Mapped[str] = mapped_column(String(512), nullable=False)
    activity_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    fire_at: Mapped[datetime] = mapped_column(nullable=False)
    is_triggered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    triggered_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_workflow_timers_due", "is_triggered", "fire_at"),
    )
