"""Database query functions for Jobflow.

This module provides async query functions for the pipeline's tables:
- Task queue: enqueue, atomic claim, completion/failure bookkeeping
- Worker registry: registration, heartbeats, counters, liveness
- Entity accessor: job/candidate content and embedding columns
- Match store: upsert, top matches, contact recording
"""

from jobflow.database.queries.entity import (
    EntityNotFound,
    get_embedding_coverage,
    get_entity,
    iter_vector_batches,
    list_active_entity_ids,
    mark_embedding_failed,
    mark_embedding_processing,
    require_entity,
    reset_embedding_state,
    store_embedding,
    store_similar_jobs,
)
from jobflow.database.queries.match import (
    MatchNotFound,
    get_match,
    get_top_matches,
    purge_expired_matches,
    record_contact,
    upsert_match,
)
from jobflow.database.queries.queue import (
    DuplicateActiveTask,
    QueueError,
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
    list_terminal_failures,
    purge_terminal_tasks,
    recover_stale_tasks,
    release_task,
)
from jobflow.database.queries.worker import (
    WorkerInfo,
    cleanup_stopped_workers,
    get_worker,
    heartbeat,
    increment_failed,
    increment_processed,
    is_worker_alive,
    list_alive_workers,
    list_workers,
    register_worker,
    set_current_task,
    update_worker_status,
)

__all__ = [
    # Task queue
    "QueueError",
    "DuplicateActiveTask",
    "TaskNotFound",
    "enqueue_task",
    "claim_next_task",
    "complete_task",
    "fail_task",
    "release_task",
    "compute_retry_delay",
    "recover_stale_tasks",
    "get_queue_stats",
    "get_task",
    "list_queue_items",
    "list_terminal_failures",
    "delete_task",
    "purge_terminal_tasks",
    # Worker registry
    "WorkerInfo",
    "register_worker",
    "heartbeat",
    "set_current_task",
    "increment_processed",
    "increment_failed",
    "update_worker_status",
    "get_worker",
    "is_worker_alive",
    "list_alive_workers",
    "list_workers",
    "cleanup_stopped_workers",
    # Entities
    "EntityNotFound",
    "get_entity",
    "require_entity",
    "mark_embedding_processing",
    "store_embedding",
    "mark_embedding_failed",
    "reset_embedding_state",
    "list_active_entity_ids",
    "iter_vector_batches",
    "store_similar_jobs",
    "get_embedding_coverage",
    # Matches
    "MatchNotFound",
    "upsert_match",
    "get_match",
    "get_top_matches",
    "record_contact",
    "purge_expired_matches",
]
