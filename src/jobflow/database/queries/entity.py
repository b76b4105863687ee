"""Entity accessor queries for the embedding pipeline.

Reads job and candidate content for embedding and scoring, and writes the
embedding bookkeeping columns and similar-job rankings back onto the rows.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, AsyncIterator, Union
from uuid import UUID

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from jobflow.database.models.base import utcnow
from jobflow.database.models.entity import Candidate, EmbeddingStatus, Job
from jobflow.database.models.task import EntityType

logger = structlog.get_logger(__name__)

Entity = Union[Job, Candidate]

ENTITY_MODELS: dict[EntityType, type[Job] | type[Candidate]] = {
    EntityType.job: Job,
    EntityType.candidate: Candidate,
}


class EntityNotFound(Exception):
    """Raised when a job or candidate does not exist."""

    def __init__(self, entity_type: EntityType, entity_id: UUID):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.value.capitalize()} {entity_id} not found")


def _active_clause(entity_type: EntityType) -> ColumnElement[bool]:
    if entity_type == EntityType.job:
        return (Job.is_active.is_(True)) & (Job.is_deleted.is_(False))
    return Candidate.is_active.is_(True)


async def get_entity(
    session: AsyncSession,
    entity_type: EntityType,
    entity_id: UUID,
) -> Entity | None:
    """Load a job or candidate by id."""
    model = ENTITY_MODELS[entity_type]
    result = await session.execute(select(model).where(model.id == entity_id))
    return result.scalar_one_or_none()


async def require_entity(
    session: AsyncSession,
    entity_type: EntityType,
    entity_id: UUID,
) -> Entity:
    """Load a job or candidate by id.

    Raises:
        EntityNotFound: If no such row exists.
    """
    entity = await get_entity(session, entity_type, entity_id)
    if entity is None:
        raise EntityNotFound(entity_type, entity_id)
    return entity


async def _update_embedding_columns(
    session: AsyncSession,
    entity_type: EntityType,
    entity_id: UUID,
    **values: Any,
) -> None:
    model = ENTITY_MODELS[entity_type]
    stmt = (
        update(model)
        .where(model.id == entity_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()
    if not result.rowcount:
        raise EntityNotFound(entity_type, entity_id)


async def mark_embedding_processing(
    session: AsyncSession,
    entity_type: EntityType,
    entity_id: UUID,
) -> None:
    """Flag the entity's embedding as being generated."""
    await _update_embedding_columns(
        session,
        entity_type,
        entity_id,
        embedding_status=EmbeddingStatus.processing,
    )


async def store_embedding(
    session: AsyncSession,
    entity_type: EntityType,
    entity_id: UUID,
    vector: list[float],
    model_name: str,
) -> datetime:
    """Persist a generated vector and mark the embedding completed.

    Returns:
        The generation timestamp stored on the entity.
    """
    generated_at = utcnow()
    await _update_embedding_columns(
        session,
        entity_type,
        entity_id,
        embedding_status=EmbeddingStatus.completed,
        embedding_vector=vector,
        embedding_model=model_name,
        embedding_error=None,
        embedding_generated_at=generated_at,
    )
    logger.info(
        "embedding_stored",
        entity_type=entity_type.value,
        entity_id=str(entity_id),
        dimensions=len(vector),
        model=model_name,
    )
    return generated_at


async def mark_embedding_failed(
    session: AsyncSession,
    entity_type: EntityType,
    entity_id: UUID,
    error: str,
) -> None:
    """Record a failed generation attempt on the entity."""
    model = ENTITY_MODELS[entity_type]
    await _update_embedding_columns(
        session,
        entity_type,
        entity_id,
        embedding_status=EmbeddingStatus.failed,
        embedding_retries=model.embedding_retries + 1,
        embedding_error=error[:2000],
    )


async def reset_embedding_state(
    session: AsyncSession,
    entity_type: EntityType,
    entity_id: UUID,
) -> None:
    """Put the entity's embedding back to pending with no error or retries."""
    await _update_embedding_columns(
        session,
        entity_type,
        entity_id,
        embedding_status=EmbeddingStatus.pending,
        embedding_retries=0,
        embedding_error=None,
    )


async def list_active_entity_ids(
    session: AsyncSession,
    entity_type: EntityType,
) -> list[UUID]:
    """Return the ids of every open job or active candidate."""
    model = ENTITY_MODELS[entity_type]
    stmt = select(model.id).where(_active_clause(entity_type)).order_by(model.created_at.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def iter_vector_batches(
    session: AsyncSession,
    entity_type: EntityType,
    batch_size: int,
    exclude_id: UUID | None = None,
) -> AsyncIterator[list[tuple[UUID, Any, datetime | None]]]:
    """Yield (id, vector, generated_at) rows with a completed embedding.

    Only active entities are included. Rows are paged by id so memory use is
    bounded by batch_size regardless of the population size.
    """
    model = ENTITY_MODELS[entity_type]
    last_id: UUID | None = None

    while True:
        stmt = (
            select(model.id, model.embedding_vector, model.embedding_generated_at)
            .where(
                model.embedding_status == EmbeddingStatus.completed,
                model.embedding_vector.is_not(None),
                _active_clause(entity_type),
            )
            .order_by(model.id.asc())
            .limit(batch_size)
        )
        if exclude_id is not None:
            stmt = stmt.where(model.id != exclude_id)
        if last_id is not None:
            stmt = stmt.where(model.id > last_id)

        rows = [tuple(row) for row in (await session.execute(stmt)).all()]
        if not rows:
            return
        yield rows
        if len(rows) < batch_size:
            return
        last_id = rows[-1][0]


async def store_similar_jobs(
    session: AsyncSession,
    job_id: UUID,
    similar: list[dict[str, Any]],
) -> None:
    """Replace the job's similar-job ranking."""
    await _update_embedding_columns(
        session,
        EntityType.job,
        job_id,
        similar_jobs=similar,
        similarity_computed_at=utcnow(),
    )
    logger.info("similar_jobs_stored", job_id=str(job_id), count=len(similar))


async def get_embedding_coverage(session: AsyncSession) -> dict[str, dict[str, Any]]:
    """Count embedding states for active jobs and candidates.

    Returns:
        {entity_type: {total, completed, pending, processing, failed,
        coverage_percent}}
    """
    coverage: dict[str, dict[str, Any]] = {}
    for entity_type, model in ENTITY_MODELS.items():
        stmt = (
            select(model.embedding_status, func.count(model.id))
            .where(_active_clause(entity_type))
            .group_by(model.embedding_status)
        )
        counts = {status.value: 0 for status in EmbeddingStatus}
        for status, count in (await session.execute(stmt)).all():
            counts[status.value] = count
        total = sum(counts.values())
        coverage[entity_type.value] = {
            "total": total,
            **counts,
            "coverage_percent": round(counts["completed"] / total * 100, 1) if total else 0.0,
        }
    return coverage
