"""SQLAlchemy ORM models for Jobflow.

This module defines the schema of the embedding pipeline: the task queue,
the worker registry, the job/candidate embedding columns, and candidate
matches. All models use SQLAlchemy 2.0 declarative style.
"""

from jobflow.database.models.base import Base, TimestampMixin, as_utc, utcnow
from jobflow.database.models.entity import (
    EMBEDDING_DIMENSIONS,
    Candidate,
    EmbeddingStatus,
    Job,
)
from jobflow.database.models.match import CandidateMatch, ContactMethod
from jobflow.database.models.task import (
    ACTIVE_STATUSES,
    EntityType,
    QueueTask,
    TaskStatus,
    TaskType,
)
from jobflow.database.models.worker import LIVE_STATUSES, WorkerRecord, WorkerStatus

__all__ = [
    "Base",
    "TimestampMixin",
    "as_utc",
    "utcnow",
    "EMBEDDING_DIMENSIONS",
    "Candidate",
    "EmbeddingStatus",
    "Job",
    "CandidateMatch",
    "ContactMethod",
    "ACTIVE_STATUSES",
    "EntityType",
    "QueueTask",
    "TaskStatus",
    "TaskType",
    "LIVE_STATUSES",
    "WorkerRecord",
    "WorkerStatus",
]
