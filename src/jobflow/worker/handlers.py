"""Task handlers executed by the worker loop.

TaskHandlers maps each TaskType to the coroutine that performs it. Handlers
raise on failure; the worker loop turns any exception into queue failure
bookkeeping, so nothing here catches errors for good.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Awaitable, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobflow.config import JobflowConfig
from jobflow.database.models.base import utcnow
from jobflow.database.models.entity import Candidate, Job
from jobflow.database.models.task import EntityType, QueueTask, TaskType
from jobflow.database.queries.entity import (
    get_entity,
    mark_embedding_failed,
    mark_embedding_processing,
    require_entity,
    store_embedding,
    store_similar_jobs,
)
from jobflow.database.queries.match import upsert_match
from jobflow.database.queries.queue import DuplicateActiveTask, enqueue_task
from jobflow.matching.engine import EmbeddingEngine
from jobflow.matching.scoring import score_match
from jobflow.matching.text import build_entity_text

logger = structlog.get_logger(__name__)

TaskHandler = Callable[[QueueTask], Awaitable[dict[str, Any]]]


class UnknownTaskType(Exception):
    """A task carried a type with no registered handler."""

    def __init__(self, task_type: Any):
        self.task_type = task_type
        super().__init__(f"No handler registered for task type {task_type!r}")


class TaskHandlers:
    """Executes queue tasks against the database and embedding engine.

    Attributes:
        config: Root configuration
        session_factory: Async session factory for database operations
        engine: Embedding engine shared by all handlers
    """

    def __init__(
        self,
        config: JobflowConfig,
        session_factory: async_sessionmaker[AsyncSession],
        engine: EmbeddingEngine,
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self.engine = engine
        self._handlers: dict[TaskType, TaskHandler] = {
            TaskType.generate_embedding: self.generate_embedding,
            TaskType.compute_similarity: self.compute_similarity,
        }

    def handler_for(self, task_type: TaskType) -> TaskHandler:
        """Look up the handler for a task type.

        Raises:
            UnknownTaskType: If no handler is registered for it.
        """
        try:
            return self._handlers[task_type]
        except KeyError:
            raise UnknownTaskType(task_type) from None

    async def dispatch(self, task: QueueTask) -> dict[str, Any]:
        """Run the handler registered for the task's type."""
        handler = self.handler_for(task.task_type)
        return await handler(task)

    # ------------------------------------------------------------------
    # generate_embedding
    # ------------------------------------------------------------------

    async def generate_embedding(self, task: QueueTask) -> dict[str, Any]:
        """Embed the entity's text, store the vector, schedule similarity.

        A failure after the entity was loaded is recorded on the entity's
        embedding columns before it propagates.
        """
        async with self.session_factory() as session:
            entity = await require_entity(session, task.entity_type, task.entity_id)
            text = build_entity_text(entity, self.config.provider.max_text_length)
            await mark_embedding_processing(session, task.entity_type, task.entity_id)

        try:
            vector = await self.engine.embed(text)
            async with self.session_factory() as session:
                await store_embedding(
                    session,
                    task.entity_type,
                    task.entity_id,
                    vector,
                    self.engine.model,
                )
        except Exception as e:
            await self._record_embedding_failure(task, e)
            raise

        follow_up = await self._schedule_similarity(task)
        return {
            "dimensions": len(vector),
            "text_length": len(text),
            "similarity_task_id": str(follow_up) if follow_up else None,
        }

    async def _record_embedding_failure(self, task: QueueTask, error: Exception) -> None:
        try:
            async with self.session_factory() as session:
                await mark_embedding_failed(
                    session,
                    task.entity_type,
                    task.entity_id,
                    f"{type(error).__name__}: {error}",
                )
        except Exception as mark_error:
            logger.error(
                "embedding_failure_not_recorded",
                entity_id=str(task.entity_id),
                error=str(mark_error),
            )

    async def _schedule_similarity(self, task: QueueTask) -> Any:
        metadata = {
            "origin": "generate_embedding",
            "parent_task_id": str(task.id),
            "queued_at": utcnow().isoformat(),
        }
        correlation_id = (task.task_metadata or {}).get("correlation_id")
        if correlation_id:
            metadata["correlation_id"] = correlation_id

        async with self.session_factory() as session:
            try:
                follow_up = await enqueue_task(
                    session,
                    task.entity_id,
                    task.entity_type,
                    TaskType.compute_similarity,
                    priority=self.config.worker.similarity_priority,
                    metadata=metadata,
                    max_attempts=self.config.queue.max_attempts,
                )
            except DuplicateActiveTask as e:
                logger.debug(
                    "similarity_already_scheduled",
                    entity_id=str(task.entity_id),
                    existing_task_id=str(e.existing_task_id),
                )
                return e.existing_task_id
        return follow_up.id

    # ------------------------------------------------------------------
    # compute_similarity
    # ------------------------------------------------------------------

    async def compute_similarity(self, task: QueueTask) -> dict[str, Any]:
        """Rank neighbours for the entity and refresh its matches."""
        if task.entity_type == EntityType.job:
            return await self._compute_for_job(task)
        return await self._compute_for_candidate(task)

    @property
    def _match_ttl(self) -> timedelta:
        return timedelta(hours=self.config.matching.match_ttl_hours)

    async def _compute_for_job(self, task: QueueTask) -> dict[str, Any]:
        matching = self.config.matching

        async with self.session_factory() as session:
            similar = await self.engine.rank_similar(
                session,
                EntityType.job,
                task.entity_id,
                k=matching.similar_jobs_top_n,
                min_score=matching.similar_jobs_min_score,
            )
            computed_at = utcnow().isoformat()
            await store_similar_jobs(
                session,
                task.entity_id,
                [
                    {
                        "job_id": str(item.entity_id),
                        "score": round(item.score, 4),
                        "computed_at": computed_at,
                    }
                    for item in similar
                ],
            )

            job = await require_entity(session, EntityType.job, task.entity_id)
            ranked = await self.engine.rank_similar(
                session,
                EntityType.job,
                task.entity_id,
                k=matching.candidate_top_n,
                target_type=EntityType.candidate,
                min_score=matching.candidate_min_score,
            )

            matches = 0
            for item in ranked:
                candidate = await get_entity(session, EntityType.candidate, item.entity_id)
                if not isinstance(candidate, Candidate) or not isinstance(job, Job):
                    continue
                result = score_match(candidate, job, matching.weights)
                await upsert_match(
                    session,
                    job.id,
                    candidate.id,
                    result.total,
                    result.breakdown,
                    self._match_ttl,
                    semantic_score=round(item.score, 4),
                )
                matches += 1

        return {"similar_jobs": len(similar), "matches": matches}

    async def _compute_for_candidate(self, task: QueueTask) -> dict[str, Any]:
        matching = self.config.matching

        async with self.session_factory() as session:
            candidate = await require_entity(session, EntityType.candidate, task.entity_id)
            ranked = await self.engine.rank_similar(
                session,
                EntityType.candidate,
                task.entity_id,
                k=matching.candidate_top_n,
                target_type=EntityType.job,
                min_score=matching.candidate_min_score,
            )

            matches = 0
            for item in ranked:
                job = await get_entity(session, EntityType.job, item.entity_id)
                if not isinstance(job, Job) or not isinstance(candidate, Candidate):
                    continue
                result = score_match(candidate, job, matching.weights)
                await upsert_match(
                    session,
                    job.id,
                    candidate.id,
                    result.total,
                    result.breakdown,
                    self._match_ttl,
                    semantic_score=round(item.score, 4),
                )
                matches += 1

        return {"matches": matches}
