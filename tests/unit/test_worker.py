"""Unit tests for the worker process and task dispatch.

Database-backed behavior of the poll loop is covered by the integration
tests; these exercise configuration checks, memory backpressure, shutdown
signalling and the task type mapping with mocked collaborators.
"""

from __future__ import annotations

import asyncio
import os
import socket
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from jobflow.config import JobflowConfig, ProviderConfig, WorkerConfig
from jobflow.database.models.task import TaskType
from jobflow.database.models.worker import WorkerStatus
from jobflow.integrations.alerts import AlertKind
from jobflow.worker.handlers import TaskHandlers, UnknownTaskType
from jobflow.worker.memory import MemorySnapshot
from jobflow.worker.process import (
    Worker,
    WorkerConfigError,
    default_worker_id,
    validate_worker_config,
)


@pytest.fixture(autouse=True)
def no_ambient_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)


def _config(**worker_overrides) -> JobflowConfig:
    return JobflowConfig(
        provider=ProviderConfig(api_key="sk-live-key"),
        worker=WorkerConfig(**worker_overrides),
    )


def _memory(under_pressure: bool) -> MagicMock:
    snapshot = MemorySnapshot(used_mb=900, total_mb=1000, percent_used=90.0)
    monitor = MagicMock()
    monitor.is_under_pressure.return_value = (under_pressure, snapshot)
    monitor.snapshot.return_value = snapshot
    return monitor


class TestValidateWorkerConfig:
    def test_valid_config(self) -> None:
        validate_worker_config(_config())

    def test_missing_api_key(self) -> None:
        with pytest.raises(WorkerConfigError, match="API key"):
            validate_worker_config(JobflowConfig())

    def test_placeholder_api_key(self) -> None:
        config = JobflowConfig(provider=ProviderConfig(api_key="sk-your-key"))
        with pytest.raises(WorkerConfigError):
            validate_worker_config(config)

    def test_key_not_required_with_injected_engine(self) -> None:
        validate_worker_config(JobflowConfig(), require_provider_key=False)


def test_default_worker_id() -> None:
    assert default_worker_id() == f"{socket.gethostname()}:{os.getpid()}"


class TestRun:
    async def test_startup_failure_alerts_and_exits_nonzero(self) -> None:
        alerts = AsyncMock()
        worker = Worker(JobflowConfig(), alerts=alerts, worker_id="w-1")

        exit_code = await worker.run(install_signal_handlers=False)

        assert exit_code == 1
        alerts.notify_operator.assert_awaited_once()
        kind, details = alerts.notify_operator.await_args.args
        assert kind == AlertKind.WORKER_FAILURE
        assert details["stage"] == "startup"
        alerts.close.assert_awaited()

    async def test_disabled_worker_exits_cleanly(self) -> None:
        alerts = AsyncMock()
        worker = Worker(_config(enabled=False), alerts=alerts)

        assert await worker.run(install_signal_handlers=False) == 0
        alerts.notify_operator.assert_not_awaited()


class TestMemoryBackpressure:
    async def test_pauses_and_resumes(self) -> None:
        memory = _memory(under_pressure=True)
        worker = Worker(
            _config(memory_pause_seconds=0),
            alerts=AsyncMock(),
            memory_monitor=memory,
        )
        worker.status = WorkerStatus.running
        statuses: list[WorkerStatus] = []
        original = worker._set_status

        async def record(status: WorkerStatus) -> None:
            statuses.append(status)
            await original(status)

        worker._set_status = record

        assert await worker.check_memory() is True
        assert statuses == [WorkerStatus.paused, WorkerStatus.running]
        memory.reclaim.assert_called_once()
        assert worker.status == WorkerStatus.running

    async def test_warn_only_when_pausing_disabled(self) -> None:
        memory = _memory(under_pressure=True)
        worker = Worker(
            _config(pause_on_high_memory=False),
            alerts=AsyncMock(),
            memory_monitor=memory,
        )

        assert await worker.check_memory() is False
        memory.reclaim.assert_not_called()

    async def test_no_pause_below_threshold(self) -> None:
        worker = Worker(_config(), alerts=AsyncMock(), memory_monitor=_memory(False))
        assert await worker.check_memory() is False


class TestShutdownSignal:
    async def test_sleep_wakes_on_shutdown(self) -> None:
        worker = Worker(_config(), alerts=AsyncMock(), memory_monitor=_memory(False))

        asyncio.get_running_loop().call_later(0.05, worker.request_shutdown)
        await asyncio.wait_for(worker._sleep(30), timeout=2)

        assert worker.shutdown_requested is True

    async def test_request_shutdown_is_idempotent(self) -> None:
        worker = Worker(_config(), alerts=AsyncMock(), memory_monitor=_memory(False))
        worker.request_shutdown()
        worker.request_shutdown()
        assert worker.shutdown_requested is True


class TestTaskHandlers:
    @pytest.fixture
    def handlers(self) -> TaskHandlers:
        return TaskHandlers(_config(), MagicMock(), MagicMock())

    def test_every_task_type_has_a_handler(self, handlers: TaskHandlers) -> None:
        for task_type in TaskType:
            assert callable(handlers.handler_for(task_type))

    def test_unknown_task_type(self, handlers: TaskHandlers) -> None:
        with pytest.raises(UnknownTaskType, match="reindex"):
            handlers.handler_for("reindex")

    async def test_dispatch_routes_by_type(self, handlers: TaskHandlers) -> None:
        generate = AsyncMock(return_value={"dimensions": 1536})
        similarity = AsyncMock(return_value={"matches": 3})
        handlers._handlers = {
            TaskType.generate_embedding: generate,
            TaskType.compute_similarity: similarity,
        }
        task = SimpleNamespace(task_type=TaskType.compute_similarity)

        assert await handlers.dispatch(task) == {"matches": 3}
        similarity.assert_awaited_once_with(task)
        generate.assert_not_awaited()
