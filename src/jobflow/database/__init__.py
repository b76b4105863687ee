"""Database layer for Jobflow.

This module handles database connections and session management, and
exposes the SQLAlchemy async engine configuration for PostgreSQL with
pgvector.

Public API:
    get_engine: Create an AsyncEngine from DatabaseConfig.
    get_session_factory: Create an async_sessionmaker from an engine.
    Base: SQLAlchemy declarative base for all models.
"""

from jobflow.database.connection import get_engine, get_session_factory
from jobflow.database.models import (
    Base,
    Candidate,
    CandidateMatch,
    ContactMethod,
    EmbeddingStatus,
    EntityType,
    Job,
    QueueTask,
    TaskStatus,
    TaskType,
    TimestampMixin,
    WorkerRecord,
    WorkerStatus,
)

__all__ = [
    "get_engine",
    "get_session_factory",
    "Base",
    "TimestampMixin",
    "Candidate",
    "CandidateMatch",
    "ContactMethod",
    "EmbeddingStatus",
    "EntityType",
    "Job",
    "QueueTask",
    "TaskStatus",
    "TaskType",
    "WorkerRecord",
    "WorkerStatus",
]
