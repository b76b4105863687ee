"""Integration modules for external systems."""

from __future__ import annotations

from jobflow.integrations.alerts import AlertKind, AlertPayload, AlertService

__all__ = [
    "AlertKind",
    "AlertPayload",
    "AlertService",
]
