"""Candidate match model for Jobflow.

One row per (job, candidate) pair holding the latest computed score. Rows
past expires_at are treated as absent by every reader and purged by the
worker maintenance pass.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from jobflow.database.models.base import Base, JSONType, TimestampMixin, utcnow


class ContactMethod(enum.Enum):
    """Channels used to reach out to a matched candidate."""

    email = "email"
    phone = "phone"
    whatsapp = "whatsapp"


class CandidateMatch(TimestampMixin, Base):
    """A scored association between a job and a candidate.

    Attributes:
        job_id: Matched job.
        candidate_id: Matched candidate.
        score: Aggregate score in [0, 100].
        breakdown: Sub-scores keyed by criterion.
        semantic_score: Cosine similarity that pre-selected the pair.
        calculated_at: When the score was computed.
        expires_at: After this the match is considered absent.
        contacted: Set once outreach happened; never reset by recomputation.
        contacted_at: When outreach happened.
        contact_method: Channel used for outreach.
    """

    __tablename__ = "candidate_matches"
    __table_args__ = (
        UniqueConstraint("job_id", "candidate_id", name="uq_candidate_matches_pair"),
        Index("ix_candidate_matches_job_score", "job_id", "score"),
        Index("ix_candidate_matches_expires_at", "expires_at"),
    )

    job_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    candidate_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("candidates.id", ondelete="CASCADE"),
        nullable=False,
    )
    score: Mapped[float] = mapped_column(Float, nullable=False)
    breakdown: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        default=dict,
        nullable=False,
    )
    semantic_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    calculated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    contacted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    contacted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    contact_method: Mapped[ContactMethod | None] = mapped_column(
        Enum(ContactMethod, name="contactmethod"),
        nullable=True,
    )
