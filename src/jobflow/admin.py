"""Administrative controls and inspection for the embedding pipeline.

QueueAdmin backs the operator-facing CLI (and any admin API layered on
top): queue and worker inspection, bulk re-enqueueing, manual retries of
terminally failed tasks, and housekeeping.
"""

from __future__ import annotations

import math
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobflow.config import JobflowConfig
from jobflow.database.models.base import utcnow
from jobflow.database.models.task import EntityType, QueueTask, TaskStatus, TaskType
from jobflow.database.queries.entity import (
    EntityNotFound,
    get_embedding_coverage,
    list_active_entity_ids,
    require_entity,
    reset_embedding_state,
)
from jobflow.database.queries.queue import (
    DuplicateActiveTask,
    TaskNotFound,
    delete_task,
    enqueue_task,
    get_queue_stats,
    list_queue_items,
    list_terminal_failures,
    purge_terminal_tasks,
    recover_stale_tasks,
)
from jobflow.database.queries.worker import WorkerInfo, cleanup_stopped_workers, list_workers

logger = structlog.get_logger(__name__)

#: Priority of tasks queued by a bulk re-enqueue.
REQUEUE_PRIORITY = 5
#: Priority of a single entity enqueued by an operator.
MANUAL_PRIORITY = 1


class QueueAdmin:
    """Operator controls over the task queue and worker registry.

    Attributes:
        config: Root configuration
        session_factory: Async session factory for database operations
    """

    def __init__(
        self,
        config: JobflowConfig,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self.config = config
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def queue_overview(self) -> dict[str, Any]:
        """Queue counts plus a coarse health verdict.

        Health is "degraded" when the pending backlog reaches the alert
        threshold, or when tasks are pending and no worker is alive.
        """
        async with self.session_factory() as session:
            stats = await get_queue_stats(session)
            workers = await list_workers(session, self.config.registry.dead_threshold_seconds)

        pending = stats["by_status"][TaskStatus.pending.value]
        alive = sum(1 for worker in workers if worker.is_alive)

        issues: list[str] = []
        if pending >= self.config.alerts.queue_backlog_threshold:
            issues.append(f"backlog of {pending} pending tasks")
        if pending and not alive:
            issues.append("no live workers")

        return {
            **stats,
            "alive_workers": alive,
            "health": "degraded" if issues else "healthy",
            "issues": issues,
        }

    async def list_queue_items(
        self,
        status: TaskStatus | None = None,
        task_type: TaskType | None = None,
        entity_id: UUID | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> dict[str, Any]:
        """Paginated queue listing, newest first."""
        async with self.session_factory() as session:
            items, total = await list_queue_items(
                session,
                status=status,
                task_type=task_type,
                entity_id=entity_id,
                page=page,
                limit=limit,
            )
        return {
            "items": items,
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit) if limit else 0,
        }

    async def list_worker_details(self) -> dict[str, Any]:
        """Every worker record with liveness, plus totals."""
        async with self.session_factory() as session:
            workers: list[WorkerInfo] = await list_workers(
                session, self.config.registry.dead_threshold_seconds
            )

        alive = [worker for worker in workers if worker.is_alive]
        return {
            "workers": workers,
            "summary": {
                "total": len(workers),
                "alive": len(alive),
                "dead": len(workers) - len(alive),
                "processed": sum(worker.processed_count for worker in workers),
                "failed": sum(worker.failed_count for worker in workers),
            },
        }

    async def embedding_coverage(self) -> dict[str, dict[str, Any]]:
        """Embedding status counts for active jobs and candidates."""
        async with self.session_factory() as session:
            return await get_embedding_coverage(session)

    # ------------------------------------------------------------------
    # Controls
    # ------------------------------------------------------------------

    async def enqueue_entity(
        self,
        entity_type: EntityType,
        entity_id: UUID,
        priority: int = MANUAL_PRIORITY,
    ) -> dict[str, Any]:
        """Queue embedding generation for one entity at elevated priority.

        An already scheduled task counts as success and is reported with
        created=False.

        Raises:
            EntityNotFound: If the entity does not exist.
        """
        async with self.session_factory() as session:
            await require_entity(session, entity_type, entity_id)
            try:
                task = await enqueue_task(
                    session,
                    entity_id,
                    entity_type,
                    TaskType.generate_embedding,
                    priority=priority,
                    metadata={"origin": "admin_manual", "queued_at": utcnow().isoformat()},
                    max_attempts=self.config.queue.max_attempts,
                )
            except DuplicateActiveTask as e:
                return {"task_id": e.existing_task_id, "created": False}

        return {"task_id": task.id, "created": True}

    async def requeue_all_entities(
        self,
        entity_type: EntityType | None = None,
    ) -> dict[str, int]:
        """Queue embedding generation for every active job and/or candidate.

        Returns:
            {"queued": n, "already_queued": m}
        """
        entity_types = [entity_type] if entity_type else list(EntityType)
        queued = 0
        already = 0

        for current_type in entity_types:
            async with self.session_factory() as session:
                entity_ids = await list_active_entity_ids(session, current_type)

            for entity_id in entity_ids:
                async with self.session_factory() as session:
                    try:
                        await enqueue_task(
                            session,
                            entity_id,
                            current_type,
                            TaskType.generate_embedding,
                            priority=REQUEUE_PRIORITY,
                            metadata={"origin": "admin_requeue_all"},
                            max_attempts=self.config.queue.max_attempts,
                        )
                        queued += 1
                    except DuplicateActiveTask:
                        already += 1

        logger.info("entities_requeued", queued=queued, already_queued=already)
        return {"queued": queued, "already_queued": already}

    async def retry_failed_tasks(self) -> dict[str, Any]:
        """Re-create every terminally failed task as a fresh pending task.

        The replacement starts at attempts 0 and records the old task id in
        metadata["retried_from"]; the failed task is then deleted. For
        embedding tasks the entity's embedding state is reset to pending.

        Returns:
            {"retried": n, "skipped": m, "task_ids": [...]}
        """
        async with self.session_factory() as session:
            failures: list[QueueTask] = await list_terminal_failures(session)

        retried: list[UUID] = []
        skipped = 0

        for failed in failures:
            metadata = {
                **(failed.task_metadata or {}),
                "origin": "admin_retry",
                "retried_from": str(failed.id),
                "previous_error": failed.error,
            }
            async with self.session_factory() as session:
                try:
                    replacement = await enqueue_task(
                        session,
                        failed.entity_id,
                        failed.entity_type,
                        failed.task_type,
                        priority=failed.priority,
                        metadata=metadata,
                        max_attempts=self.config.queue.max_attempts,
                    )
                except DuplicateActiveTask:
                    skipped += 1
                    replacement = None

                try:
                    await delete_task(session, failed.id)
                except TaskNotFound:
                    pass

            if replacement is None:
                continue
            retried.append(replacement.id)

            if failed.task_type == TaskType.generate_embedding:
                try:
                    async with self.session_factory() as session:
                        await reset_embedding_state(session, failed.entity_type, failed.entity_id)
                except EntityNotFound:
                    logger.warning(
                        "retry_entity_missing",
                        entity_type=failed.entity_type.value,
                        entity_id=str(failed.entity_id),
                    )

        logger.info("failed_tasks_retried", retried=len(retried), skipped=skipped)
        return {"retried": len(retried), "skipped": skipped, "task_ids": retried}

    async def purge_old_queue_items(self, days: int | None = None) -> int:
        """Delete terminal tasks older than days (default: retention window)."""
        async with self.session_factory() as session:
            return await purge_terminal_tasks(
                session, days if days is not None else self.config.queue.retention_days
            )

    async def delete_queue_item(self, task_id: UUID) -> None:
        """Delete one queue item.

        Raises:
            TaskNotFound: If the task does not exist.
        """
        async with self.session_factory() as session:
            await delete_task(session, task_id)

    async def recover_stale(self, threshold_seconds: int | None = None) -> int:
        """Reset stuck processing tasks to pending."""
        threshold = (
            threshold_seconds
            if threshold_seconds is not None
            else self.config.worker.stale_task_threshold_seconds
        )
        async with self.session_factory() as session:
            return await recover_stale_tasks(session, threshold)

    async def cleanup_workers(self) -> int:
        """Delete stopped worker records past retention."""
        async with self.session_factory() as session:
            return await cleanup_stopped_workers(
                session, self.config.registry.stopped_retention_seconds
            )
