"""Candidate match store queries for Jobflow.

Matches are keyed by (job_id, candidate_id). Recomputation goes through
upsert_match, which only ever rewrites the score fields so outreach state
recorded by record_contact survives. Expired rows are invisible to readers
and removed by purge_expired_matches.
"""

from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from jobflow.database.models.base import utcnow
from jobflow.database.models.match import CandidateMatch, ContactMethod

logger = structlog.get_logger(__name__)

#: Columns rewritten when a match is recomputed.
SCORE_FIELDS = (
    "score",
    "breakdown",
    "semantic_score",
    "calculated_at",
    "expires_at",
    "updated_at",
)


class MatchNotFound(Exception):
    """Raised when no live match exists for a (job, candidate) pair."""

    def __init__(self, job_id: UUID, candidate_id: UUID):
        self.job_id = job_id
        self.candidate_id = candidate_id
        super().__init__(f"No match for job {job_id} and candidate {candidate_id}")


def _dialect_insert(session: AsyncSession) -> Any:
    dialect_name = session.bind.dialect.name if session.bind is not None else ""
    if dialect_name == "postgresql":
        return postgresql.insert
    if dialect_name == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"upsert not supported for dialect {dialect_name!r}")


async def upsert_match(
    session: AsyncSession,
    job_id: UUID,
    candidate_id: UUID,
    score: float,
    breakdown: dict[str, float],
    ttl: timedelta,
    semantic_score: float | None = None,
) -> CandidateMatch:
    """Insert or refresh the match for a job and candidate.

    On conflict only the score fields and expiry are updated; contacted,
    contacted_at and contact_method are never touched.

    Args:
        session: Active async database session.
        job_id: Matched job.
        candidate_id: Matched candidate.
        score: Aggregate score in [0, 100].
        breakdown: Sub-scores keyed by criterion.
        ttl: Lifetime of the match from now.
        semantic_score: Cosine similarity that pre-selected the pair.

    Returns:
        The stored CandidateMatch.
    """
    now = utcnow()
    insert = _dialect_insert(session)
    stmt = insert(CandidateMatch).values(
        id=uuid.uuid4(),
        job_id=job_id,
        candidate_id=candidate_id,
        score=score,
        breakdown=breakdown,
        semantic_score=semantic_score,
        calculated_at=now,
        expires_at=now + ttl,
        contacted=False,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["job_id", "candidate_id"],
        set_={field: getattr(stmt.excluded, field) for field in SCORE_FIELDS},
    )
    stmt = stmt.returning(CandidateMatch).execution_options(populate_existing=True)

    result = await session.execute(stmt)
    match = result.scalars().one()
    await session.commit()

    logger.debug(
        "match_upserted",
        job_id=str(job_id),
        candidate_id=str(candidate_id),
        score=score,
        contacted=match.contacted,
    )
    return match


async def get_match(
    session: AsyncSession,
    job_id: UUID,
    candidate_id: UUID,
    include_expired: bool = False,
) -> CandidateMatch | None:
    """Return the match for a pair, or None if absent (or expired)."""
    stmt = select(CandidateMatch).where(
        CandidateMatch.job_id == job_id,
        CandidateMatch.candidate_id == candidate_id,
    )
    if not include_expired:
        stmt = stmt.where(CandidateMatch.expires_at > utcnow())
    result = await session.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def get_top_matches(
    session: AsyncSession,
    job_id: UUID,
    limit: int = 15,
) -> list[CandidateMatch]:
    """Return non-expired matches for a job, best score first."""
    stmt = (
        select(CandidateMatch)
        .where(
            CandidateMatch.job_id == job_id,
            CandidateMatch.expires_at > utcnow(),
        )
        .order_by(CandidateMatch.score.desc(), CandidateMatch.calculated_at.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def record_contact(
    session: AsyncSession,
    job_id: UUID,
    candidate_id: UUID,
    method: ContactMethod,
) -> CandidateMatch:
    """Mark a candidate as contacted for a job.

    Raises:
        MatchNotFound: If no live match exists for the pair.
    """
    match = await get_match(session, job_id, candidate_id)
    if match is None:
        await session.rollback()
        raise MatchNotFound(job_id, candidate_id)

    match.contacted = True
    match.contacted_at = utcnow()
    match.contact_method = method
    await session.commit()

    logger.info(
        "match_contact_recorded",
        job_id=str(job_id),
        candidate_id=str(candidate_id),
        method=method.value,
    )
    return match


async def purge_expired_matches(session: AsyncSession) -> int:
    """Delete matches past their expiry. Returns the number removed."""
    result = await session.execute(
        delete(CandidateMatch).where(CandidateMatch.expires_at <= utcnow())
    )
    await session.commit()

    count = result.rowcount or 0
    if count:
        logger.info("expired_matches_purged", count=count)
    return count
