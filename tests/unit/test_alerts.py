"""Unit tests for the operator alert service."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import Mock, patch

import httpx
import pytest

from jobflow.config import AlertConfig
from jobflow.integrations.alerts import AlertKind, AlertPayload, AlertService


@pytest.fixture
def webhook_config() -> AlertConfig:
    return AlertConfig(
        enabled=True,
        webhook_url="https://hooks.example.com/jobflow",
        cooldown_seconds=1800,
    )


def test_payload_to_dict() -> None:
    payload = AlertPayload(
        kind=AlertKind.QUEUE_BACKUP,
        timestamp=datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        host="worker-1",
        details={"pending": 250},
    )

    assert payload.to_dict() == {
        "kind": "queue_backup",
        "subject": "Embedding queue backlog",
        "timestamp": "2026-01-02T03:04:05+00:00",
        "host": "worker-1",
        "details": {"pending": 250},
    }


async def test_delivery_success(webhook_config: AlertConfig) -> None:
    response = Mock(is_success=True, status_code=200)
    service = AlertService(webhook_config)

    with patch("httpx.AsyncClient.post", return_value=response) as post:
        sent = await service.notify_operator(AlertKind.WORKER_FAILURE, {"worker_id": "w-1"})
    await service.close()

    assert sent is True
    assert post.call_args.args[0] == "https://hooks.example.com/jobflow"
    body = post.call_args.kwargs["json"]
    assert body["kind"] == "worker_failure"
    assert body["details"] == {"worker_id": "w-1"}


async def test_cooldown_suppresses_repeat_of_same_kind(webhook_config: AlertConfig) -> None:
    response = Mock(is_success=True, status_code=200)
    service = AlertService(webhook_config)

    with patch("httpx.AsyncClient.post", return_value=response) as post:
        assert await service.notify_operator(AlertKind.REPEATED_ERRORS, {}) is True
        assert await service.notify_operator(AlertKind.REPEATED_ERRORS, {}) is False
        # A different kind has its own cooldown
        assert await service.notify_operator("queue_backup", {}) is True
    await service.close()

    assert post.await_count == 2


async def test_zero_cooldown_sends_every_time(webhook_config: AlertConfig) -> None:
    webhook_config.cooldown_seconds = 0
    service = AlertService(webhook_config)

    with patch("httpx.AsyncClient.post", return_value=Mock(is_success=True, status_code=200)):
        assert await service.notify_operator(AlertKind.QUEUE_BACKUP, {}) is True
        assert await service.notify_operator(AlertKind.QUEUE_BACKUP, {}) is True
    await service.close()


async def test_http_error_is_swallowed(webhook_config: AlertConfig) -> None:
    service = AlertService(webhook_config)

    with patch("httpx.AsyncClient.post", side_effect=httpx.ConnectError("refused")):
        sent = await service.notify_operator(AlertKind.WORKER_FAILURE, {})
    await service.close()

    assert sent is False


async def test_failed_delivery_does_not_start_cooldown(webhook_config: AlertConfig) -> None:
    service = AlertService(webhook_config)
    failure = Mock(is_success=False, status_code=502, text="bad gateway")
    success = Mock(is_success=True, status_code=200)

    with patch("httpx.AsyncClient.post", side_effect=[failure, success]):
        assert await service.notify_operator(AlertKind.WORKER_FAILURE, {}) is False
        assert await service.notify_operator(AlertKind.WORKER_FAILURE, {}) is True
    await service.close()


async def test_disabled_alerts_are_logged_only() -> None:
    service = AlertService(AlertConfig(enabled=False, webhook_url="https://hooks.example.com"))

    with patch("httpx.AsyncClient.post") as post:
        sent = await service.notify_operator(AlertKind.QUEUE_BACKUP, {"pending": 101})

    assert sent is True
    assert service.delivers is False
    post.assert_not_called()


async def test_unknown_kind_is_rejected() -> None:
    service = AlertService(AlertConfig())
    assert await service.notify_operator("disk_full", {}) is False
