"""Job and candidate models as seen by the embedding pipeline.

The CRUD layer owns these tables. Only the columns the pipeline reads to
build embedding text and match scores, plus the embedding bookkeeping it
writes, are modelled here.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pgvector.sqlalchemy import Vector
from sqlalchemy import Boolean, DateTime, Enum, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from jobflow.database.models.base import Base, JSONType, TimestampMixin

#: Vector length produced by the configured embedding model.
EMBEDDING_DIMENSIONS = 1536


class EmbeddingStatus(enum.Enum):
    """Embedding state carried on each job and candidate."""

    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class EmbeddingMixin:
    """Embedding bookkeeping columns shared by jobs and candidates.

    Attributes:
        embedding_status: Current EmbeddingStatus.
        embedding_vector: Stored vector, None until generated.
        embedding_model: Model name that produced the vector.
        embedding_retries: Failed generation attempts so far.
        embedding_error: Last generation error message.
        embedding_generated_at: When the vector was stored.
    """

    embedding_status: Mapped[EmbeddingStatus] = mapped_column(
        Enum(EmbeddingStatus, name="embeddingstatus"),
        default=EmbeddingStatus.pending,
        nullable=False,
    )
    embedding_vector: Mapped[Any] = mapped_column(
        Vector(EMBEDDING_DIMENSIONS),
        nullable=True,
    )
    embedding_model: Mapped[str | None] = mapped_column(Text, nullable=True)
    embedding_retries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    embedding_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    embedding_generated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )


class Job(EmbeddingMixin, TimestampMixin, Base):
    """A job posting.

    Attributes:
        title: Posting title.
        description: Free-text description.
        category: Job category (e.g. "engineering").
        seniority: Seniority label (e.g. "senior").
        requirements: List of requirement strings.
        tags: List of tag strings.
        job_type: Contract/location type (full-time, remote, hybrid, ...).
        city: City of the position.
        experience_years: Years of experience asked for.
        salary_min: Lower bound of the offered salary.
        salary_max: Upper bound of the offered salary.
        is_active: Whether the posting is open.
        is_deleted: Soft-delete flag.
        similar_jobs: Top similar jobs [{job_id, score, computed_at}].
        similarity_computed_at: When similar_jobs was last refreshed.
    """

    __tablename__ = "jobs"
    __table_args__ = (Index("ix_jobs_embedding_status", "embedding_status"),)

    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(Text, nullable=True)
    seniority: Mapped[str | None] = mapped_column(Text, nullable=True)
    requirements: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    tags: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    job_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str | None] = mapped_column(Text, nullable=True)
    experience_years: Mapped[int | None] = mapped_column(Integer, nullable=True)
    salary_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
    salary_max: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    similar_jobs: Mapped[list[dict[str, Any]] | None] = mapped_column(
        JSONType,
        nullable=True,
    )
    similarity_computed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )


class Candidate(EmbeddingMixin, TimestampMixin, Base):
    """A job seeker profile.

    Attributes:
        title: Desired position.
        skills: List of skill strings.
        bio: Free-text summary.
        experience_years: Years of experience.
        city: Home city.
        education: List of degree strings.
        desired_salary_min: Lower bound of the expected salary.
        desired_salary_max: Upper bound of the expected salary.
        availability: immediately, 2weeks, 1month or 3months.
        is_active: Whether the profile is visible for matching.
    """

    __tablename__ = "candidates"
    __table_args__ = (Index("ix_candidates_embedding_status", "embedding_status"),)

    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    skills: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    bio: Mapped[str | None] = mapped_column(Text, nullable=True)
    experience_years: Mapped[int | None] = mapped_column(Integer, nullable=True)
    city: Mapped[str | None] = mapped_column(Text, nullable=True)
    education: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    desired_salary_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
    desired_salary_max: Mapped[int | None] = mapped_column(Integer, nullable=True)
    availability: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
