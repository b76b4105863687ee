"""Integration tests for task queue query functions.

Tests enqueueing with single-active-task deduplication, the atomic claim
under concurrency, priority ordering, retry backoff through to terminal
failure, ownership-guarded release, stale recovery, stats and purging.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobflow.database.models.base import as_utc, utcnow
from jobflow.database.models.task import EntityType, QueueTask, TaskStatus, TaskType
from jobflow.database.queries.queue import (
    DuplicateActiveTask,
    TaskNotFound,
    claim_next_task,
    complete_task,
    compute_retry_delay,
    delete_task,
    enqueue_task,
    fail_task,
    get_queue_stats,
    get_task,
    list_queue_items,
    purge_terminal_tasks,
    recover_stale_tasks,
    release_task,
)

DELAYS = [60, 300, 900]


async def _enqueue(session: AsyncSession, priority: int = 10, **kwargs):
    return await enqueue_task(
        session,
        kwargs.pop("entity_id", uuid4()),
        kwargs.pop("entity_type", EntityType.job),
        kwargs.pop("task_type", TaskType.generate_embedding),
        priority=priority,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_enqueue_creates_pending_task(db_session: AsyncSession) -> None:
    """A new task starts pending with no attempts and keeps its metadata."""
    entity_id = uuid4()

    task = await enqueue_task(
        db_session,
        entity_id,
        EntityType.candidate,
        TaskType.generate_embedding,
        priority=3,
        metadata={"origin": "profile_update"},
    )

    assert task.status == TaskStatus.pending
    assert task.attempts == 0
    assert task.max_attempts == 3
    assert task.priority == 3
    assert task.entity_id == entity_id
    assert task.task_metadata == {"origin": "profile_update"}
    assert task.processing_owner is None


@pytest.mark.asyncio
async def test_enqueue_rejects_second_active_task(db_session: AsyncSession) -> None:
    """Only one pending/processing task may exist per entity and type."""
    entity_id = uuid4()
    first = await _enqueue(db_session, entity_id=entity_id)

    with pytest.raises(DuplicateActiveTask) as exc_info:
        await _enqueue(db_session, entity_id=entity_id)

    assert exc_info.value.existing_task_id == first.id

    # A different task type for the same entity is independent
    other = await _enqueue(db_session, entity_id=entity_id, task_type=TaskType.compute_similarity)
    assert other.id != first.id


@pytest.mark.asyncio
async def test_enqueue_allowed_again_after_completion(db_session: AsyncSession) -> None:
    entity_id = uuid4()
    first = await _enqueue(db_session, entity_id=entity_id)
    await claim_next_task(db_session, "w-1")
    await complete_task(db_session, first.id, worker_id="w-1")

    second = await _enqueue(db_session, entity_id=entity_id)

    assert second.id != first.id
    assert second.status == TaskStatus.pending


@pytest.mark.asyncio
async def test_concurrent_enqueue_creates_one_task(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Racing inserts for the same entity leave exactly one active task."""
    entity_id = uuid4()

    async def attempt():
        async with session_factory() as session:
            return await _enqueue(session, entity_id=entity_id)

    results = await asyncio.gather(*(attempt() for _ in range(4)), return_exceptions=True)

    created = [r for r in results if not isinstance(r, BaseException)]
    duplicates = [r for r in results if isinstance(r, DuplicateActiveTask)]
    assert len(created) == 1
    assert len(duplicates) == 3

    async with session_factory() as session:
        _, total = await list_queue_items(session, entity_id=entity_id)
    assert total == 1


@pytest.mark.asyncio
async def test_claim_marks_processing(db_session: AsyncSession) -> None:
    task = await _enqueue(db_session)

    claimed = await claim_next_task(db_session, "w-1")

    assert claimed is not None
    assert claimed.id == task.id
    assert claimed.status == TaskStatus.processing
    assert claimed.attempts == 1
    assert claimed.processing_owner == "w-1"
    assert claimed.claimed_at is not None
    assert await claim_next_task(db_session, "w-2") is None


@pytest.mark.asyncio
async def test_claim_empty_queue(db_session: AsyncSession) -> None:
    assert await claim_next_task(db_session, "w-1") is None


@pytest.mark.asyncio
async def test_concurrent_claims_never_share_a_task(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Every task is claimed by exactly one of many racing workers."""
    async with session_factory() as session:
        task_ids = {(await _enqueue(session)).id for _ in range(5)}

    async def claim(worker_id: str):
        async with session_factory() as session:
            return await claim_next_task(session, worker_id)

    results = await asyncio.gather(*(claim(f"w-{i}") for i in range(10)))

    claimed = [task for task in results if task is not None]
    assert len(claimed) == 5
    assert {task.id for task in claimed} == task_ids
    assert len({task.processing_owner for task in claimed}) == 5


@pytest.mark.asyncio
async def test_claim_order_is_priority_then_age(db_session: AsyncSession) -> None:
    low = await _enqueue(db_session, priority=10)
    urgent = await _enqueue(db_session, priority=1)
    medium_first = await _enqueue(db_session, priority=5)
    medium_second = await _enqueue(db_session, priority=5)

    order = [(await claim_next_task(db_session, "w-1")).id for _ in range(4)]

    assert order == [urgent.id, medium_first.id, medium_second.id, low.id]


@pytest.mark.asyncio
async def test_complete_clears_owner(db_session: AsyncSession) -> None:
    task = await _enqueue(db_session)
    await claim_next_task(db_session, "w-1")

    done = await complete_task(db_session, task.id, worker_id="w-1")

    assert done.status == TaskStatus.completed
    assert done.processing_owner is None
    assert done.completed_at is not None


@pytest.mark.asyncio
async def test_complete_by_former_owner_is_ignored(db_session: AsyncSession) -> None:
    task = await _enqueue(db_session)
    await claim_next_task(db_session, "w-1")

    result = await complete_task(db_session, task.id, worker_id="w-2")

    assert result.status == TaskStatus.processing
    assert result.processing_owner == "w-1"


@pytest.mark.asyncio
async def test_complete_missing_task(db_session: AsyncSession) -> None:
    with pytest.raises(TaskNotFound):
        await complete_task(db_session, uuid4())


def test_compute_retry_delay_repeats_last_value() -> None:
    assert [compute_retry_delay(n, DELAYS) for n in range(0, 6)] == [60, 60, 300, 900, 900, 900]


@pytest.mark.asyncio
async def test_failures_back_off_then_become_terminal(
    db_session: AsyncSession,
    backdate_task,
) -> None:
    """Each failure schedules the next delay until attempts run out."""
    task = await _enqueue(db_session, max_attempts=3)

    for attempt, delay in enumerate(DELAYS[:2], start=1):
        claimed = await claim_next_task(db_session, "w-1")
        assert claimed.attempts == attempt

        before = utcnow()
        failed = await fail_task(db_session, task.id, "provider timeout", DELAYS, "w-1")

        assert failed.status == TaskStatus.failed
        assert failed.processing_owner is None
        assert failed.error == "provider timeout"
        retry_at = as_utc(failed.next_retry_at)
        assert before + timedelta(seconds=delay - 1) <= retry_at
        assert retry_at <= utcnow() + timedelta(seconds=delay + 1)

        # Not eligible until the backoff has elapsed
        assert await claim_next_task(db_session, "w-1") is None
        await backdate_task(task.id, next_retry_at=timedelta(seconds=1))

    claimed = await claim_next_task(db_session, "w-1")
    assert claimed.attempts == 3
    terminal = await fail_task(db_session, task.id, "provider timeout", DELAYS, "w-1")

    assert terminal.status == TaskStatus.failed
    assert terminal.next_retry_at is None
    assert terminal.is_terminal_failure
    assert await claim_next_task(db_session, "w-1") is None

    stats = await get_queue_stats(db_session)
    assert stats["by_status"]["failed"] == 1
    assert stats["terminal_failures"] == 1


@pytest.mark.asyncio
async def test_fail_truncates_long_errors(db_session: AsyncSession) -> None:
    task = await _enqueue(db_session)
    await claim_next_task(db_session, "w-1")

    failed = await fail_task(db_session, task.id, "x" * 5000, DELAYS)

    assert len(failed.error) == 2000


@pytest.mark.asyncio
async def test_enqueue_rejected_while_retry_is_scheduled(
    db_session: AsyncSession,
    backdate_task,
) -> None:
    """A failed task awaiting its retry still counts as the entity's work."""
    entity_id = uuid4()
    first = await _enqueue(db_session, entity_id=entity_id)
    await claim_next_task(db_session, "w-1")
    await fail_task(db_session, first.id, "provider timeout", [60], "w-1")

    with pytest.raises(DuplicateActiveTask) as exc_info:
        await _enqueue(db_session, entity_id=entity_id)
    assert exc_info.value.existing_task_id == first.id

    await backdate_task(first.id, next_retry_at=timedelta(seconds=1))
    retried = await claim_next_task(db_session, "w-2")

    assert retried.id == first.id
    assert retried.attempts == 2


@pytest.mark.asyncio
async def test_due_retry_waits_for_active_sibling(
    db_session: AsyncSession,
    backdate_task,
) -> None:
    """A due retry is not claimed while another task for the pair is active.

    The pending sibling is inserted directly, as a concurrent enqueue racing
    the failure could leave it.
    """
    entity_id = uuid4()
    retrying = await _enqueue(db_session, entity_id=entity_id, priority=1)
    await claim_next_task(db_session, "w-1")
    await fail_task(db_session, retrying.id, "provider timeout", [60], "w-1")
    sibling = QueueTask(
        entity_id=entity_id,
        entity_type=EntityType.job,
        task_type=TaskType.generate_embedding,
        status=TaskStatus.pending,
        priority=10,
    )
    db_session.add(sibling)
    await db_session.commit()
    await backdate_task(retrying.id, next_retry_at=timedelta(seconds=1))

    first_claim = await claim_next_task(db_session, "w-2")
    assert first_claim.id == sibling.id
    assert await claim_next_task(db_session, "w-3") is None

    await complete_task(db_session, sibling.id, worker_id="w-2")
    second_claim = await claim_next_task(db_session, "w-3")
    assert second_claim.id == retrying.id


@pytest.mark.asyncio
async def test_release_requires_current_owner(db_session: AsyncSession) -> None:
    task = await _enqueue(db_session)
    await claim_next_task(db_session, "w-1")

    assert await release_task(db_session, task.id, "w-2") is False
    assert await release_task(db_session, task.id, "w-1") is True

    released = await get_task(db_session, task.id)
    await db_session.refresh(released)
    assert released.status == TaskStatus.pending
    assert released.processing_owner is None
    assert released.attempts == 1

    # Already pending: nothing left to release
    assert await release_task(db_session, task.id, "w-1") is False


@pytest.mark.asyncio
async def test_stale_recovery_is_idempotent(
    db_session: AsyncSession,
    backdate_task,
) -> None:
    stale = await _enqueue(db_session)
    await claim_next_task(db_session, "dead-worker")
    await backdate_task(stale.id, claimed_at=timedelta(minutes=20))

    fresh = await _enqueue(db_session)
    await claim_next_task(db_session, "live-worker")

    assert await recover_stale_tasks(db_session, 600) == 1
    assert await recover_stale_tasks(db_session, 600) == 0

    reclaimed = await claim_next_task(db_session, "w-2")
    assert reclaimed.id == stale.id
    assert reclaimed.attempts == 2

    still_running = await get_task(db_session, fresh.id)
    await db_session.refresh(still_running)
    assert still_running.processing_owner == "live-worker"


@pytest.mark.asyncio
async def test_queue_stats_by_status_and_type(db_session: AsyncSession) -> None:
    await _enqueue(db_session)
    await _enqueue(db_session, task_type=TaskType.compute_similarity)
    done = await _enqueue(db_session, priority=1)
    await claim_next_task(db_session, "w-1")
    await complete_task(db_session, done.id)

    stats = await get_queue_stats(db_session)

    assert stats["total"] == 3
    assert stats["by_status"] == {"pending": 2, "processing": 0, "completed": 1, "failed": 0}
    assert stats["by_task_type"]["generate_embedding"]["pending"] == 1
    assert stats["by_task_type"]["generate_embedding"]["completed"] == 1
    assert stats["by_task_type"]["compute_similarity"]["pending"] == 1
    assert stats["terminal_failures"] == 0


@pytest.mark.asyncio
async def test_list_queue_items_filters_and_paginates(db_session: AsyncSession) -> None:
    for _ in range(5):
        await _enqueue(db_session)
    await _enqueue(db_session, task_type=TaskType.compute_similarity)

    items, total = await list_queue_items(
        db_session, task_type=TaskType.generate_embedding, page=2, limit=2
    )

    assert total == 5
    assert len(items) == 2
    assert all(item.task_type == TaskType.generate_embedding for item in items)


@pytest.mark.asyncio
async def test_purge_keeps_recent_and_retryable_tasks(
    db_session: AsyncSession,
    backdate_task,
) -> None:
    old_done = await _enqueue(db_session, priority=1)
    await claim_next_task(db_session, "w-1")
    await complete_task(db_session, old_done.id)

    old_retrying = await _enqueue(db_session, priority=2)
    await claim_next_task(db_session, "w-1")
    await fail_task(db_session, old_retrying.id, "boom", DELAYS)

    recent_done = await _enqueue(db_session, priority=3)
    await claim_next_task(db_session, "w-1")
    await complete_task(db_session, recent_done.id)

    await backdate_task(old_done.id, updated_at=timedelta(days=10))
    await backdate_task(old_retrying.id, updated_at=timedelta(days=10))

    assert await purge_terminal_tasks(db_session, older_than_days=7) == 1
    assert await get_task(db_session, old_done.id) is None
    assert await get_task(db_session, old_retrying.id) is not None
    assert await get_task(db_session, recent_done.id) is not None


@pytest.mark.asyncio
async def test_delete_task(db_session: AsyncSession) -> None:
    task = await _enqueue(db_session)

    await delete_task(db_session, task.id)

    assert await get_task(db_session, task.id) is None
    with pytest.raises(TaskNotFound):
        await delete_task(db_session, task.id)
