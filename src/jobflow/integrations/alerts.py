"""Operator alert webhook client for the embedding pipeline."""

from __future__ import annotations

import socket
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx

from jobflow.config import AlertConfig
from jobflow.logging import get_logger

logger = get_logger(__name__)


class AlertKind(str, Enum):
    """Conditions that page an operator."""

    WORKER_FAILURE = "worker_failure"
    QUEUE_BACKUP = "queue_backup"
    REPEATED_ERRORS = "repeated_errors"


_SUBJECTS = {
    AlertKind.WORKER_FAILURE: "Embedding worker failed",
    AlertKind.QUEUE_BACKUP: "Embedding queue backlog",
    AlertKind.REPEATED_ERRORS: "Repeated embedding task failures",
}


@dataclass
class AlertPayload:
    """Standard payload format for alert webhooks."""

    kind: AlertKind
    timestamp: datetime
    host: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert payload to dictionary for JSON serialization."""
        return {
            "kind": self.kind.value,
            "subject": _SUBJECTS[self.kind],
            "timestamp": self.timestamp.isoformat(),
            "host": self.host,
            "details": self.details,
        }


class AlertService:
    """Fire-and-forget alert sink with a per-kind cooldown.

    Alerts of a kind sent within cooldown_seconds of the previous one are
    dropped. When alerting is disabled or no webhook is configured the
    alert is only logged. notify_operator never raises.
    """

    def __init__(self, config: AlertConfig) -> None:
        self.config = config
        self.logger = get_logger(__name__)
        self._client: httpx.AsyncClient | None = None
        self._last_sent: dict[AlertKind, float] = {}

    @property
    def delivers(self) -> bool:
        return self.config.enabled and bool(self.config.webhook_url)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _in_cooldown(self, kind: AlertKind, now: float) -> bool:
        last = self._last_sent.get(kind)
        return last is not None and now - last < self.config.cooldown_seconds

    async def notify_operator(self, kind: AlertKind | str, details: dict[str, Any]) -> bool:
        """Send an alert to the operator webhook.

        Returns True if the alert was delivered (or logged, when delivery is
        disabled), False if it was suppressed by the cooldown or failed.
        """
        try:
            kind = AlertKind(kind)
        except ValueError:
            self.logger.error("alert_kind_unknown", kind=str(kind))
            return False

        now = time.monotonic()
        if self._in_cooldown(kind, now):
            self.logger.info("alert_suppressed_cooldown", kind=kind.value)
            return False

        if not self.delivers:
            self.logger.warning(
                "operator_alert", kind=kind.value, delivered=False, details=details
            )
            self._last_sent[kind] = now
            return True

        payload = AlertPayload(
            kind=kind,
            timestamp=datetime.now(timezone.utc),
            host=socket.gethostname(),
            details=details,
        )

        try:
            client = await self._get_client()
            response = await client.post(
                self.config.webhook_url,
                json=payload.to_dict(),
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            self.logger.error("alert_webhook_error", kind=kind.value, error=str(e))
            return False

        if response.is_success:
            self._last_sent[kind] = now
            self.logger.info(
                "alert_webhook_sent",
                kind=kind.value,
                status_code=response.status_code,
            )
            return True

        self.logger.warning(
            "alert_webhook_failed",
            kind=kind.value,
            status_code=response.status_code,
            response_text=response.text[:200],
        )
        return False
