"""Queue task model for Jobflow.

Defines the embedding_tasks table that backs the task queue, together with
the closed enums for task status, task type and the entity a task targets.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Enum, Index, Integer, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from jobflow.database.models.base import Base, JSONType, TimestampMixin


class TaskStatus(enum.Enum):
    """Lifecycle states of a queue task.

    States:
        pending: Waiting to be claimed.
        processing: Claimed by a worker (processing_owner is set).
        completed: Finished successfully.
        failed: Last attempt failed; retryable while next_retry_at is set.
    """

    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


#: Statuses covered by the single-active-task uniqueness rule.
ACTIVE_STATUSES = (TaskStatus.pending, TaskStatus.processing)


class TaskType(enum.Enum):
    """Kinds of work the queue carries."""

    generate_embedding = "generate_embedding"
    compute_similarity = "compute_similarity"


class EntityType(enum.Enum):
    """Entities that own an embedding."""

    job = "job"
    candidate = "candidate"


class QueueTask(TimestampMixin, Base):
    """One unit of queued work for one entity.

    Attributes:
        id: UUID primary key (from TimestampMixin).
        entity_id: Job or candidate the task operates on.
        entity_type: Which table entity_id refers to.
        task_type: Kind of work to perform.
        status: Current lifecycle state.
        priority: Lower value is claimed first.
        attempts: Number of claims so far.
        max_attempts: Attempts allowed before the failure becomes terminal.
        next_retry_at: Earliest retry time for a failed task; None when the
            failure is terminal.
        processing_owner: Worker id holding the task while processing.
        claimed_at: When the current owner claimed the task.
        error: Last failure message.
        task_metadata: Free-form bag (origin, correlation id, retried_from).
        completed_at: When the task reached completed.
        created_at: Row creation timestamp (from TimestampMixin).
        updated_at: Last modification timestamp (from TimestampMixin).
    """

    __tablename__ = "embedding_tasks"
    __table_args__ = (
        Index("ix_embedding_tasks_claim_order", "status", "priority", "created_at"),
        Index(
            "uq_embedding_tasks_active_entity",
            "entity_id",
            "task_type",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processing')"),
            sqlite_where=text("status IN ('pending', 'processing')"),
        ),
        Index("ix_embedding_tasks_next_retry_at", "next_retry_at"),
        Index("ix_embedding_tasks_processing_owner", "processing_owner"),
    )

    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    entity_type: Mapped[EntityType] = mapped_column(
        Enum(EntityType, name="entitytype"),
        nullable=False,
    )
    task_type: Mapped[TaskType] = mapped_column(
        Enum(TaskType, name="tasktype"),
        nullable=False,
    )
    status: Mapped[TaskStatus] = mapped_column(
        Enum(TaskStatus, name="taskstatus"),
        default=TaskStatus.pending,
        nullable=False,
    )
    priority: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    processing_owner: Mapped[str | None] = mapped_column(Text, nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    task_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        default=dict,
        nullable=False,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    @property
    def is_terminal_failure(self) -> bool:
        """True when the task failed and will not be retried automatically."""
        return self.status == TaskStatus.failed and self.next_retry_at is None

    def __repr__(self) -> str:
        return (
            f"<QueueTask {self.id} {self.task_type.value} "
            f"{self.entity_type.value}={self.entity_id} {self.status.value}>"
        )
