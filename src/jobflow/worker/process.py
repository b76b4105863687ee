"""Embedding worker process loop.

A Worker claims tasks from the shared queue one at a time, runs them
through TaskHandlers, and records the outcome. Alongside the poll loop it
runs a heartbeat task that keeps its registry record fresh, checks the
queue backlog and performs periodic maintenance.

Lifecycle: starting -> running <-> paused -> stopping -> stopped.

On SIGTERM/SIGINT the worker stops claiming, waits up to
graceful_shutdown_timeout_seconds for the in-flight task, and if it is
still running cancels it and releases it back to pending so another worker
picks it up. Tasks are therefore executed at least once, never dropped.

Example usage:
    >>> config = load_config()
    >>> exit_code = asyncio.run(Worker(config).run())
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import socket
import time
from typing import Any, Awaitable, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from jobflow.config import JobflowConfig
from jobflow.database.connection import get_engine, get_session_factory
from jobflow.database.models.task import QueueTask, TaskStatus
from jobflow.database.models.worker import WorkerStatus
from jobflow.database.queries.match import purge_expired_matches
from jobflow.database.queries.queue import (
    claim_next_task,
    complete_task,
    fail_task,
    get_queue_stats,
    purge_terminal_tasks,
    recover_stale_tasks,
    release_task,
)
from jobflow.database.queries.worker import (
    cleanup_stopped_workers,
    heartbeat,
    increment_failed,
    increment_processed,
    register_worker,
    set_current_task,
    update_worker_status,
)
from jobflow.integrations.alerts import AlertKind, AlertService
from jobflow.logging import bind_task_context, clear_task_context, set_correlation_id
from jobflow.matching.engine import EmbeddingEngine
from jobflow.matching.provider import OpenAIEmbeddingClient, ProviderError
from jobflow.worker.handlers import TaskHandlers
from jobflow.worker.memory import MemoryMonitor

logger = structlog.get_logger(__name__)


class WorkerConfigError(Exception):
    """Configuration is unusable; the worker cannot start."""


def default_worker_id() -> str:
    """Return "<hostname>:<pid>" for the current process."""
    return f"{socket.gethostname()}:{os.getpid()}"


def validate_worker_config(config: JobflowConfig, require_provider_key: bool = True) -> None:
    """Check the settings a worker cannot run without.

    Raises:
        WorkerConfigError: If the database URL or provider key is missing.
    """
    if not config.database.url:
        raise WorkerConfigError("Database URL is not configured")
    if require_provider_key and not config.provider.has_valid_api_key():
        raise WorkerConfigError(
            "Embedding provider API key is missing or a placeholder; "
            "set JOBFLOW_PROVIDER__API_KEY or OPENAI_API_KEY"
        )


class Worker:
    """One embedding worker process.

    Collaborators are built from config unless injected, which lets tests
    run a worker against a SQLite database and a fake provider.

    Attributes:
        config: Root configuration
        worker_id: Registry key of this process
        status: Current WorkerStatus
        processed_count: Tasks completed by this process
        failed_count: Tasks failed by this process
    """

    def __init__(
        self,
        config: JobflowConfig,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        embedding_engine: EmbeddingEngine | None = None,
        alerts: AlertService | None = None,
        memory_monitor: MemoryMonitor | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.config = config
        self.worker_id = worker_id or default_worker_id()
        self.session_factory = session_factory
        self.embedding_engine = embedding_engine
        self.alerts = alerts or AlertService(config.alerts)
        self.memory = memory_monitor or MemoryMonitor(config.worker.memory_limit_mb)
        self.handlers: TaskHandlers | None = None

        self.status = WorkerStatus.starting
        self.processed_count = 0
        self.failed_count = 0

        self._shutdown = asyncio.Event()
        self._db_engine: AsyncEngine | None = None
        self._resources = contextlib.AsyncExitStack()
        self._heartbeat_task: asyncio.Task | None = None
        self._heartbeat_running = False
        self._loop_task: asyncio.Task | None = None
        self._current_task: QueueTask | None = None
        self._last_maintenance = 0.0
        self._logger = structlog.get_logger(__name__).bind(worker_id=self.worker_id)

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def request_shutdown(self) -> None:
        """Ask the worker to stop after the in-flight task."""
        if not self._shutdown.is_set():
            self._logger.info("worker_shutdown_requested")
            self._shutdown.set()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    async def run(self, install_signal_handlers: bool = True) -> int:
        """Run the worker until shutdown.

        Returns:
            Process exit code: 0 after a clean shutdown, 1 if startup failed.
        """
        if not self.config.worker.enabled:
            self._logger.warning("worker_disabled")
            return 0

        try:
            await self.startup()
        except Exception as e:
            self._logger.error("worker_startup_failed", error=str(e), exc_info=True)
            await self.alerts.notify_operator(
                AlertKind.WORKER_FAILURE,
                {"worker_id": self.worker_id, "stage": "startup", "error": str(e)},
            )
            await self._close_resources()
            return 1

        if install_signal_handlers:
            self._install_signal_handlers()

        self._loop_task = asyncio.create_task(self._poll_loop())
        shutdown_wait = asyncio.create_task(self._shutdown.wait())
        await asyncio.wait({self._loop_task, shutdown_wait}, return_when=asyncio.FIRST_COMPLETED)
        shutdown_wait.cancel()

        if self._loop_task.done() and not self._loop_task.cancelled():
            error = self._loop_task.exception()
            if error is not None:
                self._logger.error("worker_loop_crashed", error=str(error))
                await self.alerts.notify_operator(
                    AlertKind.WORKER_FAILURE,
                    {"worker_id": self.worker_id, "stage": "poll_loop", "error": str(error)},
                )

        await self.shutdown()
        return 0

    async def startup(self) -> None:
        """Validate config, connect, register and recover stale tasks.

        Raises:
            WorkerConfigError: If required configuration is missing.
        """
        validate_worker_config(self.config, require_provider_key=self.embedding_engine is None)

        if self.session_factory is None:
            self._db_engine = get_engine(self.config.database)
            self.session_factory = get_session_factory(self._db_engine)

        if self.embedding_engine is None:
            provider = await self._resources.enter_async_context(
                OpenAIEmbeddingClient(self.config.provider)
            )
            self.embedding_engine = EmbeddingEngine(
                provider,
                self.config.provider,
                batch_size=self.config.worker.batch_size,
            )

        self.handlers = TaskHandlers(self.config, self.session_factory, self.embedding_engine)

        async with self.session_factory() as session:
            await register_worker(
                session,
                self.worker_id,
                host=socket.gethostname(),
                pid=os.getpid(),
                config={
                    "poll_interval_seconds": self.config.worker.poll_interval_seconds,
                    "batch_size": self.config.worker.batch_size,
                    "max_concurrent": self.config.provider.max_concurrent,
                },
                memory_snapshot=self.memory.snapshot().model_dump(),
            )
        self.status = WorkerStatus.running

        await self._safe_db_call(
            "cleanup_stopped_workers",
            lambda s: cleanup_stopped_workers(s, self.config.registry.stopped_retention_seconds),
        )
        recovered = await self._safe_db_call(
            "recover_stale_tasks",
            lambda s: recover_stale_tasks(s, self.config.worker.stale_task_threshold_seconds),
        )
        self._last_maintenance = time.monotonic()

        await self.start_heartbeat()
        self._logger.info(
            "worker_started",
            poll_interval_seconds=self.config.worker.poll_interval_seconds,
            recovered_tasks=recovered or 0,
        )

    async def shutdown(self) -> None:
        """Drain the in-flight task, mark the worker stopped, release resources."""
        self.request_shutdown()
        await self._set_status(WorkerStatus.stopping)
        await self.stop_heartbeat()

        if self._loop_task is not None and not self._loop_task.done():
            timeout = self.config.worker.graceful_shutdown_timeout_seconds
            try:
                await asyncio.wait_for(asyncio.shield(self._loop_task), timeout=timeout)
            except asyncio.TimeoutError:
                self._logger.warning(
                    "worker_shutdown_timeout",
                    timeout_seconds=timeout,
                    task_id=str(self._current_task.id) if self._current_task else None,
                )
                self._loop_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._loop_task
            except Exception as e:
                self._logger.error("worker_loop_error_on_shutdown", error=str(e))

        if self._current_task is not None:
            await self._release_current_task()

        await self._set_status(WorkerStatus.stopped)
        await self._close_resources()
        self._logger.info(
            "worker_stopped",
            processed=self.processed_count,
            failed=self.failed_count,
        )

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    async def start_heartbeat(self) -> None:
        """Start the background heartbeat task."""
        if self._heartbeat_running:
            self._logger.warning("heartbeat_already_running")
            return
        self._heartbeat_running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def stop_heartbeat(self) -> None:
        """Cancel the heartbeat task and wait for it to finish."""
        if not self._heartbeat_running:
            return
        self._heartbeat_running = False
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

    async def _heartbeat_loop(self) -> None:
        interval = self.config.worker.heartbeat_interval_seconds
        while self._heartbeat_running:
            try:
                await asyncio.sleep(interval)
                await self.beat()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._logger.error("heartbeat_loop_error", error=str(e), exc_info=True)

    async def beat(self) -> None:
        """One heartbeat: registry update, backlog check, due maintenance."""
        snapshot = self.memory.snapshot().model_dump()
        await self._safe_db_call("heartbeat", lambda s: heartbeat(s, self.worker_id, snapshot))
        await self.check_backlog()
        elapsed = time.monotonic() - self._last_maintenance
        if elapsed >= self.config.worker.maintenance_interval_seconds:
            await self.run_maintenance()

    async def check_backlog(self) -> None:
        """Alert when pending tasks reach the backlog threshold."""
        stats = await self._safe_db_call("queue_stats", get_queue_stats)
        if not stats:
            return
        pending = stats["by_status"].get(TaskStatus.pending.value, 0)
        if pending >= self.config.alerts.queue_backlog_threshold:
            self._logger.warning("queue_backlog_high", pending=pending)
            await self.alerts.notify_operator(
                AlertKind.QUEUE_BACKUP,
                {
                    "pending": pending,
                    "threshold": self.config.alerts.queue_backlog_threshold,
                    "by_status": stats["by_status"],
                },
            )

    async def run_maintenance(self) -> None:
        """Purge old terminal tasks and expired matches, drop stopped workers."""
        self._last_maintenance = time.monotonic()
        purged_tasks = await self._safe_db_call(
            "purge_terminal_tasks",
            lambda s: purge_terminal_tasks(s, self.config.queue.retention_days),
        )
        purged_matches = await self._safe_db_call("purge_expired_matches", purge_expired_matches)
        cleaned = await self._safe_db_call(
            "cleanup_stopped_workers",
            lambda s: cleanup_stopped_workers(s, self.config.registry.stopped_retention_seconds),
        )
        self._logger.info(
            "maintenance_completed",
            purged_tasks=purged_tasks or 0,
            purged_matches=purged_matches or 0,
            cleaned_workers=cleaned or 0,
        )

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        self._logger.info("worker_poll_loop_started")
        while not self._shutdown.is_set():
            try:
                await self.check_memory()
                if self._shutdown.is_set():
                    break

                task = await self._claim()
                if task is None:
                    await self._sleep(self.config.worker.poll_interval_seconds)
                    continue

                await self.process_task(task)
                await self._sleep(self.config.worker.inter_task_delay_seconds)
            except Exception as e:
                self._logger.error("worker_loop_error", error=str(e), exc_info=True)
                await self._sleep(self.config.worker.loop_error_delay_seconds)
        self._logger.info("worker_poll_loop_exited")

    async def run_once(self) -> bool:
        """Claim and process at most one task.

        Returns:
            True if a task was processed.
        """
        task = await self._claim()
        if task is None:
            return False
        await self.process_task(task)
        return True

    async def _claim(self) -> QueueTask | None:
        assert self.session_factory is not None
        async with self.session_factory() as session:
            return await claim_next_task(session, self.worker_id)

    async def check_memory(self) -> bool:
        """Pause under memory pressure.

        Returns:
            True if the worker paused.
        """
        under_pressure, snapshot = self.memory.is_under_pressure(
            self.config.worker.memory_threshold
        )
        if not under_pressure:
            return False

        if not self.config.worker.pause_on_high_memory:
            self._logger.warning("worker_memory_high", **snapshot.model_dump())
            return False

        self._logger.warning(
            "worker_paused_high_memory",
            pause_seconds=self.config.worker.memory_pause_seconds,
            **snapshot.model_dump(),
        )
        await self._set_status(WorkerStatus.paused)
        self.memory.reclaim()
        await self._sleep(self.config.worker.memory_pause_seconds)
        await self._set_status(WorkerStatus.running)
        self._logger.info("worker_resumed", **self.memory.snapshot().model_dump())
        return True

    async def process_task(self, task: QueueTask) -> None:
        """Run one claimed task and record its outcome."""
        assert self.handlers is not None
        self._current_task = task
        bind_task_context(str(task.id), self.worker_id)
        set_correlation_id((task.task_metadata or {}).get("correlation_id"))
        await self._safe_db_call(
            "set_current_task",
            lambda s: set_current_task(s, self.worker_id, task),
        )

        started = time.monotonic()
        try:
            try:
                result = await self.handlers.dispatch(task)
            except Exception as e:
                await self._handle_failure(task, e)
            else:
                await self._handle_success(task, result, time.monotonic() - started)
        finally:
            clear_task_context()
        self._current_task = None

    async def _handle_success(
        self,
        task: QueueTask,
        result: dict[str, Any],
        duration: float,
    ) -> None:
        assert self.session_factory is not None
        async with self.session_factory() as session:
            await complete_task(session, task.id, worker_id=self.worker_id)
        self.processed_count += 1
        await self._safe_db_call(
            "increment_processed",
            lambda s: increment_processed(s, self.worker_id),
        )
        self._logger.info(
            "task_processed",
            task_type=task.task_type.value,
            entity_id=str(task.entity_id),
            duration_seconds=round(duration, 3),
            **result,
        )

    async def _handle_failure(self, task: QueueTask, error: Exception) -> None:
        assert self.session_factory is not None
        transient = getattr(error, "transient", None) if isinstance(error, ProviderError) else None
        self._logger.warning(
            "task_processing_failed",
            task_type=task.task_type.value,
            entity_id=str(task.entity_id),
            attempt=task.attempts,
            error=str(error),
            error_type=type(error).__name__,
            transient=transient,
        )

        async with self.session_factory() as session:
            await fail_task(
                session,
                task.id,
                f"{type(error).__name__}: {error}",
                self.config.queue.retry_delays_seconds,
                worker_id=self.worker_id,
            )
        self.failed_count += 1
        await self._safe_db_call("increment_failed", lambda s: increment_failed(s, self.worker_id))

        if self.failed_count >= self.config.alerts.failure_threshold:
            await self.alerts.notify_operator(
                AlertKind.REPEATED_ERRORS,
                {
                    "worker_id": self.worker_id,
                    "failed_count": self.failed_count,
                    "threshold": self.config.alerts.failure_threshold,
                    "last_error": str(error)[:500],
                },
            )

    async def _release_current_task(self) -> None:
        task = self._current_task
        if task is None:
            return
        released = await self._safe_db_call(
            "release_task",
            lambda s: release_task(s, task.id, self.worker_id),
        )
        if released:
            self._logger.warning("in_flight_task_released", task_id=str(task.id))
        self._current_task = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _sleep(self, seconds: float) -> None:
        """Sleep up to seconds, waking early on shutdown."""
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _set_status(self, status: WorkerStatus) -> None:
        if self.status == status:
            return
        self.status = status
        if self.session_factory is not None:
            await self._safe_db_call(
                "update_worker_status",
                lambda s: update_worker_status(s, self.worker_id, status),
            )

    async def _safe_db_call(
        self,
        operation: str,
        fn: Callable[[AsyncSession], Awaitable[Any]],
    ) -> Any:
        """Run a bookkeeping call in its own session; log and swallow failures."""
        if self.session_factory is None:
            return None
        try:
            async with self.session_factory() as session:
                return await fn(session)
        except Exception as e:
            self._logger.warning("worker_bookkeeping_failed", operation=operation, error=str(e))
            return None

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                self._logger.debug("signal_handler_unsupported", signal=sig.name)

    async def _close_resources(self) -> None:
        await self.alerts.close()
        await self._resources.aclose()
        if self._db_engine is not None:
            await self._db_engine.dispose()
            self._db_engine = None
