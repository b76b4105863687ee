"""Task queue query functions for Jobflow.

Provides the persistent queue operations used by workers and admin tooling:
enqueueing with single-active-task deduplication, the atomic claim, result
bookkeeping with retry backoff, stale-claim recovery and inspection.

Every function commits its own unit of work. claim_next_task must be the
first statement of a fresh transaction: it is a single UPDATE ... RETURNING
whose target row is chosen by a ``FOR UPDATE SKIP LOCKED`` subquery, so
concurrent claimers on PostgreSQL never block on or receive the same row.
SQLite serializes writers, which gives the same guarantee in tests.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Sequence
from uuid import UUID

import structlog
from sqlalchemy import and_, delete, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased
from sqlalchemy.sql.elements import ColumnElement

from jobflow.database.models.base import utcnow
from jobflow.database.models.task import (
    ACTIVE_STATUSES,
    EntityType,
    QueueTask,
    TaskStatus,
    TaskType,
)

logger = structlog.get_logger(__name__)

#: Longest error message kept on a task.
MAX_ERROR_LENGTH = 2000


class QueueError(Exception):
    """Base exception for task queue operations."""


class DuplicateActiveTask(QueueError):
    """A task is already scheduled for the entity and type.

    Scheduled means pending, processing, or failed with a retry still due.

    Callers scheduling work should treat this as success: the work is
    already queued.
    """

    def __init__(self, entity_id: UUID, task_type: TaskType, existing_task_id: UUID | None):
        self.entity_id = entity_id
        self.task_type = task_type
        self.existing_task_id = existing_task_id
        super().__init__(
            f"A {task_type.value} task is already scheduled for entity {entity_id}"
            + (f" ({existing_task_id})" if existing_task_id else "")
        )


class TaskNotFound(QueueError):
    """Raised when a task id does not exist."""

    def __init__(self, task_id: UUID):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


def _scheduled_clause() -> ColumnElement[bool]:
    """Filter tasks that will still run: active, or failed with a retry scheduled."""
    return or_(
        QueueTask.status.in_(ACTIVE_STATUSES),
        and_(QueueTask.status == TaskStatus.failed, QueueTask.next_retry_at.is_not(None)),
    )


def _eligible_clause(now: Any) -> ColumnElement[bool]:
    """Filter matching tasks a worker may claim at ``now``.

    A due retry is skipped while another task for the same entity and type
    is active; claiming it would put two active rows on the unique index.
    """
    sibling = aliased(QueueTask)
    active_sibling = exists().where(
        sibling.entity_id == QueueTask.entity_id,
        sibling.task_type == QueueTask.task_type,
        sibling.status.in_(ACTIVE_STATUSES),
        sibling.id != QueueTask.id,
    )
    return or_(
        QueueTask.status == TaskStatus.pending,
        and_(
            QueueTask.status == TaskStatus.failed,
            QueueTask.next_retry_at.is_not(None),
            QueueTask.next_retry_at <= now,
            QueueTask.attempts < QueueTask.max_attempts,
            ~active_sibling,
        ),
    )


async def _find_scheduled_task_id(
    session: AsyncSession,
    entity_id: UUID,
    task_type: TaskType,
) -> UUID | None:
    stmt = select(QueueTask.id).where(
        QueueTask.entity_id == entity_id,
        QueueTask.task_type == task_type,
        _scheduled_clause(),
    )
    result = await session.execute(stmt)
    return result.scalars().first()


async def enqueue_task(
    session: AsyncSession,
    entity_id: UUID,
    entity_type: EntityType,
    task_type: TaskType,
    priority: int = 10,
    metadata: dict[str, Any] | None = None,
    max_attempts: int = 3,
) -> QueueTask:
    """Add a pending task for an entity.

    Args:
        session: Active async database session.
        entity_id: Job or candidate the task operates on.
        entity_type: Table entity_id refers to.
        task_type: Kind of work to perform.
        priority: Lower value is claimed first.
        metadata: Free-form bag stored with the task.
        max_attempts: Attempts allowed before the failure becomes terminal.

    Returns:
        The newly created QueueTask.

    Raises:
        DuplicateActiveTask: If a task is already pending, processing or
            awaiting a retry for (entity_id, task_type), including when a
            concurrent insert wins the race on the unique index.
    """
    existing_id = await _find_scheduled_task_id(session, entity_id, task_type)
    if existing_id is not None:
        await session.rollback()
        raise DuplicateActiveTask(entity_id, task_type, existing_id)

    task = QueueTask(
        entity_id=entity_id,
        entity_type=entity_type,
        task_type=task_type,
        status=TaskStatus.pending,
        priority=priority,
        attempts=0,
        max_attempts=max_attempts,
        task_metadata=dict(metadata or {}),
    )
    session.add(task)

    try:
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        existing_id = await _find_scheduled_task_id(session, entity_id, task_type)
        await session.rollback()
        logger.debug(
            "enqueue_race_lost",
            entity_id=str(entity_id),
            task_type=task_type.value,
            existing_task_id=str(existing_id) if existing_id else None,
        )
        raise DuplicateActiveTask(entity_id, task_type, existing_id) from e

    logger.info(
        "task_enqueued",
        task_id=str(task.id),
        entity_id=str(entity_id),
        entity_type=entity_type.value,
        task_type=task_type.value,
        priority=priority,
    )

    return task


async def get_task(session: AsyncSession, task_id: UUID) -> QueueTask | None:
    """Retrieve a task by ID.

    Args:
        session: Active async database session.
        task_id: UUID of the task to retrieve.

    Returns:
        The QueueTask if found, None otherwise.
    """
    stmt = select(QueueTask).where(QueueTask.id == task_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def claim_next_task(session: AsyncSession, worker_id: str) -> QueueTask | None:
    """Atomically claim the most urgent eligible task.

    Eligible tasks are pending ones, and failed ones whose next_retry_at has
    passed, which still have attempts left and which have no active sibling
    for the same entity and type. Ordering is priority
    ascending, then created_at ascending. The winning row moves to
    processing with attempts incremented and the owner stamped.

    Args:
        session: Fresh async database session (no open transaction).
        worker_id: Identifier of the claiming worker.

    Returns:
        The claimed QueueTask, or None when nothing is eligible or another
        worker won the row.
    """
    now = utcnow()
    target_id = (
        select(QueueTask.id)
        .where(_eligible_clause(now))
        .order_by(QueueTask.priority.asc(), QueueTask.created_at.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )
    stmt = (
        update(QueueTask)
        .where(QueueTask.id == target_id, _eligible_clause(now))
        .values(
            status=TaskStatus.processing,
            attempts=QueueTask.attempts + 1,
            processing_owner=worker_id,
            claimed_at=now,
            next_retry_at=None,
            updated_at=now,
        )
        .returning(QueueTask)
        .execution_options(synchronize_session=False, populate_existing=True)
    )

    result = await session.execute(stmt)
    task = result.scalars().first()
    await session.commit()

    if task is not None:
        logger.info(
            "task_claimed",
            task_id=str(task.id),
            worker_id=worker_id,
            task_type=task.task_type.value,
            entity_id=str(task.entity_id),
            attempt=task.attempts,
        )

    return task


async def _load_for_update(session: AsyncSession, task_id: UUID) -> QueueTask:
    stmt = (
        select(QueueTask)
        .where(QueueTask.id == task_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    task = result.scalar_one_or_none()
    if task is None:
        await session.rollback()
        raise TaskNotFound(task_id)
    return task


def _owner_mismatch(task: QueueTask, worker_id: str | None) -> bool:
    return worker_id is not None and task.processing_owner != worker_id


async def complete_task(
    session: AsyncSession,
    task_id: UUID,
    worker_id: str | None = None,
) -> QueueTask:
    """Mark a processing task as completed and clear its owner.

    When worker_id is given and the task is no longer owned by that worker
    (it was recovered and re-claimed elsewhere), nothing is changed.

    Args:
        session: Active async database session.
        task_id: UUID of the task.
        worker_id: Expected current owner, if known.

    Returns:
        The task after the update.

    Raises:
        TaskNotFound: If the task does not exist.
    """
    task = await _load_for_update(session, task_id)

    if _owner_mismatch(task, worker_id):
        await session.rollback()
        logger.warning(
            "task_ownership_lost",
            task_id=str(task_id),
            worker_id=worker_id,
            current_owner=task.processing_owner,
            operation="complete",
        )
        return task

    now = utcnow()
    task.status = TaskStatus.completed
    task.processing_owner = None
    task.claimed_at = None
    task.next_retry_at = None
    task.completed_at = now
    await session.commit()

    logger.info("task_completed", task_id=str(task_id), attempts=task.attempts)
    return task


def compute_retry_delay(attempts: int, retry_delays: Sequence[int]) -> int:
    """Return the backoff in seconds after the given number of attempts.

    The first failure uses the first delay; once the list is exhausted its
    last value repeats.
    """
    index = min(max(attempts - 1, 0), len(retry_delays) - 1)
    return retry_delays[index]


async def fail_task(
    session: AsyncSession,
    task_id: UUID,
    error: str,
    retry_delays: Sequence[int],
    worker_id: str | None = None,
) -> QueueTask:
    """Record a failed attempt and schedule the retry, if any remain.

    Sets status failed, clears the owner and stores the (truncated) error.
    next_retry_at is now plus the backoff for the current attempt count, or
    None once attempts reached max_attempts, which makes the failure terminal.

    Args:
        session: Active async database session.
        task_id: UUID of the task.
        error: Failure message.
        retry_delays: Backoff schedule in seconds.
        worker_id: Expected current owner, if known.

    Returns:
        The task after the update.

    Raises:
        TaskNotFound: If the task does not exist.
    """
    task = await _load_for_update(session, task_id)

    if _owner_mismatch(task, worker_id):
        await session.rollback()
        logger.warning(
            "task_ownership_lost",
            task_id=str(task_id),
            worker_id=worker_id,
            current_owner=task.processing_owner,
            operation="fail",
        )
        return task

    now = utcnow()
    if task.attempts >= task.max_attempts:
        next_retry_at = None
    else:
        next_retry_at = now + timedelta(
            seconds=compute_retry_delay(task.attempts, retry_delays)
        )

    task.status = TaskStatus.failed
    task.error = (error or "unknown error")[:MAX_ERROR_LENGTH]
    task.processing_owner = None
    task.claimed_at = None
    task.next_retry_at = next_retry_at
    await session.commit()

    if next_retry_at is None:
        logger.warning(
            "task_failed_terminal",
            task_id=str(task_id),
            attempts=task.attempts,
            max_attempts=task.max_attempts,
            error=task.error,
        )
    else:
        logger.info(
            "task_failed_retry_scheduled",
            task_id=str(task_id),
            attempts=task.attempts,
            next_retry_at=next_retry_at.isoformat(),
            error=task.error,
        )

    return task


async def release_task(session: AsyncSession, task_id: UUID, worker_id: str) -> bool:
    """Hand a processing task back to the queue as pending.

    Used on shutdown when the in-flight task could not finish in time. The
    attempt counter is left as is.

    Args:
        session: Active async database session.
        task_id: UUID of the task.
        worker_id: Worker that must still own the task.

    Returns:
        True if the task was released, False if it was not processing under
        this worker any more.
    """
    stmt = (
        update(QueueTask)
        .where(
            QueueTask.id == task_id,
            QueueTask.status == TaskStatus.processing,
            QueueTask.processing_owner == worker_id,
        )
        .values(
            status=TaskStatus.pending,
            processing_owner=None,
            claimed_at=None,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()

    released = result.rowcount > 0
    logger.info(
        "task_released",
        task_id=str(task_id),
        worker_id=worker_id,
        released=released,
    )
    return released


async def recover_stale_tasks(
    session: AsyncSession,
    stale_threshold_seconds: int,
) -> int:
    """Reset tasks stuck in processing past the threshold back to pending.

    A task is stale when it was claimed more than stale_threshold_seconds
    ago and is still processing, which means its worker most likely died.
    Running this twice in a row recovers nothing the second time.

    Args:
        session: Active async database session.
        stale_threshold_seconds: Claim age after which a task is stale.

    Returns:
        Number of tasks recovered.
    """
    now = utcnow()
    cutoff = now - timedelta(seconds=stale_threshold_seconds)
    stmt = (
        update(QueueTask)
        .where(
            QueueTask.status == TaskStatus.processing,
            or_(
                QueueTask.claimed_at < cutoff,
                and_(QueueTask.claimed_at.is_(None), QueueTask.updated_at < cutoff),
            ),
        )
        .values(
            status=TaskStatus.pending,
            processing_owner=None,
            claimed_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()

    count = result.rowcount or 0
    if count:
        logger.warning(
            "stale_tasks_recovered",
            count=count,
            threshold_seconds=stale_threshold_seconds,
        )
    return count


async def get_queue_stats(session: AsyncSession) -> dict[str, Any]:
    """Get task counts grouped by status and by task type.

    Args:
        session: Active async database session.

    Returns:
        Dictionary with keys:
        - by_status: {status: count} for every TaskStatus
        - by_task_type: {task_type: {status: count}} for every TaskType
        - total: total number of tasks
        - terminal_failures: failed tasks with no retry scheduled
    """
    stmt = select(QueueTask.task_type, QueueTask.status, func.count(QueueTask.id)).group_by(
        QueueTask.task_type, QueueTask.status
    )
    result = await session.execute(stmt)

    by_status = {status.value: 0 for status in TaskStatus}
    by_task_type = {
        task_type.value: {status.value: 0 for status in TaskStatus} for task_type in TaskType
    }
    total = 0
    for task_type, status, count in result.all():
        by_status[status.value] += count
        by_task_type[task_type.value][status.value] = count
        total += count

    terminal_stmt = select(func.count(QueueTask.id)).where(
        QueueTask.status == TaskStatus.failed,
        QueueTask.next_retry_at.is_(None),
    )
    terminal_failures = (await session.execute(terminal_stmt)).scalar_one()

    return {
        "by_status": by_status,
        "by_task_type": by_task_type,
        "total": total,
        "terminal_failures": terminal_failures,
    }


async def list_queue_items(
    session: AsyncSession,
    status: TaskStatus | None = None,
    task_type: TaskType | None = None,
    entity_id: UUID | None = None,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[QueueTask], int]:
    """List queue items with filters, most recent first.

    Args:
        session: Active async database session.
        status: Optional status filter.
        task_type: Optional task type filter.
        entity_id: Optional entity filter.
        page: 1-based page number.
        limit: Page size.

    Returns:
        Tuple of (items on the page, total matching items).
    """
    filters = []
    if status is not None:
        filters.append(QueueTask.status == status)
    if task_type is not None:
        filters.append(QueueTask.task_type == task_type)
    if entity_id is not None:
        filters.append(QueueTask.entity_id == entity_id)

    count_stmt = select(func.count(QueueTask.id)).where(*filters)
    total = (await session.execute(count_stmt)).scalar_one()

    page = max(page, 1)
    stmt = (
        select(QueueTask)
        .where(*filters)
        .order_by(QueueTask.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all()), total


async def list_terminal_failures(session: AsyncSession) -> list[QueueTask]:
    """Return failed tasks that will not be retried automatically."""
    stmt = (
        select(QueueTask)
        .where(
            QueueTask.status == TaskStatus.failed,
            QueueTask.next_retry_at.is_(None),
        )
        .order_by(QueueTask.created_at.asc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def delete_task(session: AsyncSession, task_id: UUID) -> None:
    """Delete a queue item.

    Raises:
        TaskNotFound: If the task does not exist.
    """
    result = await session.execute(delete(QueueTask).where(QueueTask.id == task_id))
    await session.commit()
    if not result.rowcount:
        raise TaskNotFound(task_id)
    logger.info("task_deleted", task_id=str(task_id))


async def purge_terminal_tasks(session: AsyncSession, older_than_days: int) -> int:
    """Delete completed and terminally failed tasks older than the window.

    Failed tasks that still have a retry scheduled are kept.

    Args:
        session: Active async database session.
        older_than_days: Age in days, measured from the last update.

    Returns:
        Number of tasks deleted.
    """
    cutoff = utcnow() - timedelta(days=older_than_days)
    stmt = delete(QueueTask).where(
        QueueTask.updated_at < cutoff,
        or_(
            QueueTask.status == TaskStatus.completed,
            and_(
                QueueTask.status == TaskStatus.failed,
                QueueTask.next_retry_at.is_(None),
            ),
        ),
    )
    result = await session.execute(stmt)
    await session.commit()

    count = result.rowcount or 0
    logger.info("terminal_tasks_purged", count=count, older_than_days=older_than_days)
    return count
