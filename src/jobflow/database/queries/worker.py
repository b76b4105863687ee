"""Worker registry query functions for Jobflow.

Each worker process owns one WorkerRecord keyed by its worker_id and only
ever mutates that row, so none of these functions take cross-worker locks.
Mutations that hit a missing row (the record was cleaned up underneath a
live worker) are logged and reported through the return value instead of
raising, as registry bookkeeping must never stop task processing.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobflow.database.models.base import as_utc, utcnow
from jobflow.database.models.task import QueueTask
from jobflow.database.models.worker import LIVE_STATUSES, WorkerRecord, WorkerStatus

logger = structlog.get_logger(__name__)


class WorkerInfo(BaseModel):
    """Worker record annotated with computed liveness figures."""

    worker_id: str
    host: str
    pid: int | None = None
    status: WorkerStatus
    last_heartbeat: datetime
    started_at: datetime
    processed_count: int = 0
    failed_count: int = 0
    memory_snapshot: dict[str, Any] | None = None
    current_task: dict[str, Any] | None = None
    config: dict[str, Any] | None = None
    is_alive: bool = False
    seconds_since_heartbeat: float = Field(default=0.0, ge=0.0)
    uptime_seconds: int = Field(default=0, ge=0)


def is_worker_alive(
    record: WorkerRecord,
    dead_threshold_seconds: int,
    now: datetime | None = None,
) -> bool:
    """Alive iff the heartbeat is fresh and the status is a live one."""
    now = now or utcnow()
    last = as_utc(record.last_heartbeat)
    if last is None or record.status not in LIVE_STATUSES:
        return False
    return (now - last).total_seconds() < dead_threshold_seconds


def _to_info(record: WorkerRecord, dead_threshold_seconds: int, now: datetime) -> WorkerInfo:
    last = as_utc(record.last_heartbeat) or now
    started = as_utc(record.started_at) or now
    return WorkerInfo(
        worker_id=record.worker_id,
        host=record.host,
        pid=record.pid,
        status=record.status,
        last_heartbeat=last,
        started_at=started,
        processed_count=record.processed_count,
        failed_count=record.failed_count,
        memory_snapshot=record.memory_snapshot,
        current_task=record.current_task,
        config=record.config,
        is_alive=is_worker_alive(record, dead_threshold_seconds, now),
        seconds_since_heartbeat=max((now - last).total_seconds(), 0.0),
        uptime_seconds=max(int((now - started).total_seconds()), 0),
    )


async def _update_own_row(
    session: AsyncSession,
    worker_id: str,
    operation: str,
    **values: Any,
) -> bool:
    stmt = (
        update(WorkerRecord)
        .where(WorkerRecord.worker_id == worker_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()

    if not result.rowcount:
        logger.warning("worker_record_missing", worker_id=worker_id, operation=operation)
        return False
    return True


async def register_worker(
    session: AsyncSession,
    worker_id: str,
    host: str,
    pid: int | None = None,
    config: dict[str, Any] | None = None,
    memory_snapshot: dict[str, Any] | None = None,
) -> WorkerRecord:
    """Insert or refresh the worker's record and mark it running.

    started_at and the counters are only initialised on first insert; a
    re-registration under the same worker_id keeps them.

    Args:
        session: Active async database session.
        worker_id: Unique worker identifier.
        host: Hostname of the worker.
        pid: Process id of the worker.
        config: Effective settings snapshot.
        memory_snapshot: Current memory usage.

    Returns:
        The registered WorkerRecord.
    """
    now = utcnow()
    stmt = select(WorkerRecord).where(WorkerRecord.worker_id == worker_id)
    record = (await session.execute(stmt)).scalar_one_or_none()

    if record is None:
        record = WorkerRecord(
            worker_id=worker_id,
            host=host,
            pid=pid,
            status=WorkerStatus.running,
            last_heartbeat=now,
            started_at=now,
            processed_count=0,
            failed_count=0,
            memory_snapshot=memory_snapshot,
            current_task=None,
            config=config,
        )
        session.add(record)
        created = True
    else:
        record.host = host
        record.pid = pid
        record.status = WorkerStatus.running
        record.last_heartbeat = now
        record.memory_snapshot = memory_snapshot
        record.current_task = None
        record.config = config
        created = False

    await session.commit()

    logger.info("worker_registered", worker_id=worker_id, host=host, pid=pid, created=created)
    return record


async def heartbeat(
    session: AsyncSession,
    worker_id: str,
    memory_snapshot: dict[str, Any] | None = None,
) -> bool:
    """Refresh last_heartbeat and the memory snapshot. Status is untouched.

    Returns:
        True if the worker's record exists.
    """
    values: dict[str, Any] = {"last_heartbeat": utcnow()}
    if memory_snapshot is not None:
        values["memory_snapshot"] = memory_snapshot
    return await _update_own_row(session, worker_id, "heartbeat", **values)


async def set_current_task(
    session: AsyncSession,
    worker_id: str,
    task: QueueTask | None,
) -> bool:
    """Record the task in flight, or clear it when task is None."""
    current: dict[str, Any] | None = None
    if task is not None:
        current = {
            "task_id": str(task.id),
            "entity_id": str(task.entity_id),
            "task_type": task.task_type.value,
            "started_at": utcnow().isoformat(),
        }
    return await _update_own_row(session, worker_id, "set_current_task", current_task=current)


async def increment_processed(session: AsyncSession, worker_id: str) -> bool:
    """Count a completed task and clear the current task."""
    return await _update_own_row(
        session,
        worker_id,
        "increment_processed",
        processed_count=WorkerRecord.processed_count + 1,
        current_task=None,
    )


async def increment_failed(session: AsyncSession, worker_id: str) -> bool:
    """Count a failed task and clear the current task."""
    return await _update_own_row(
        session,
        worker_id,
        "increment_failed",
        failed_count=WorkerRecord.failed_count + 1,
        current_task=None,
    )


async def update_worker_status(
    session: AsyncSession,
    worker_id: str,
    status: WorkerStatus,
) -> bool:
    """Set the worker's status."""
    updated = await _update_own_row(session, worker_id, "update_status", status=status)
    if updated:
        logger.info("worker_status_changed", worker_id=worker_id, status=status.value)
    return updated


async def get_worker(session: AsyncSession, worker_id: str) -> WorkerRecord | None:
    """Retrieve a worker record by worker_id."""
    stmt = select(WorkerRecord).where(WorkerRecord.worker_id == worker_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_alive_workers(
    session: AsyncSession,
    dead_threshold_seconds: int,
) -> list[WorkerRecord]:
    """Return live workers, most recent heartbeat first.

    Args:
        session: Active async database session.
        dead_threshold_seconds: Heartbeat age after which a worker is dead.
    """
    cutoff = utcnow() - timedelta(seconds=dead_threshold_seconds)
    stmt = (
        select(WorkerRecord)
        .where(
            WorkerRecord.last_heartbeat > cutoff,
            WorkerRecord.status.in_(LIVE_STATUSES),
        )
        .order_by(WorkerRecord.last_heartbeat.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_workers(
    session: AsyncSession,
    dead_threshold_seconds: int,
) -> list[WorkerInfo]:
    """Return every worker record annotated with liveness and uptime."""
    now = utcnow()
    stmt = select(WorkerRecord).order_by(WorkerRecord.last_heartbeat.desc())
    result = await session.execute(stmt)
    return [_to_info(record, dead_threshold_seconds, now) for record in result.scalars().all()]


async def cleanup_stopped_workers(
    session: AsyncSession,
    retention_seconds: int,
) -> int:
    """Delete stopped worker records not updated within the retention window.

    Returns:
        Number of records deleted.
    """
    cutoff = utcnow() - timedelta(seconds=retention_seconds)
    stmt = delete(WorkerRecord).where(
        WorkerRecord.status == WorkerStatus.stopped,
        WorkerRecord.updated_at < cutoff,
    )
    result = await session.execute(stmt)
    await session.commit()

    count = result.rowcount or 0
    if count:
        logger.info("stopped_workers_cleaned", count=count)
    return count
