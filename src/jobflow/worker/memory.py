"""Process memory sampling for worker backpressure."""

from __future__ import annotations

import gc

import psutil
from pydantic import BaseModel

_BYTES_PER_MB = 1024 * 1024


class MemorySnapshot(BaseModel):
    """Memory usage of the worker process."""

    used_mb: int
    total_mb: int
    percent_used: float

    @property
    def fraction_used(self) -> float:
        return self.percent_used / 100.0


class MemoryMonitor:
    """Samples the resident memory of the current process.

    Usage is measured against memory_limit_mb when set (e.g. a container
    limit), otherwise against total system memory.
    """

    def __init__(self, memory_limit_mb: int | None = None) -> None:
        self.memory_limit_mb = memory_limit_mb
        self._process = psutil.Process()

    def snapshot(self) -> MemorySnapshot:
        used = self._process.memory_info().rss
        if self.memory_limit_mb:
            total = self.memory_limit_mb * _BYTES_PER_MB
        else:
            total = psutil.virtual_memory().total
        return MemorySnapshot(
            used_mb=round(used / _BYTES_PER_MB),
            total_mb=round(total / _BYTES_PER_MB),
            percent_used=round(used / total * 100, 1) if total else 0.0,
        )

    def is_under_pressure(self, threshold: float) -> tuple[bool, MemorySnapshot]:
        """Return whether usage exceeds threshold (a fraction), with the sample."""
        snap = self.snapshot()
        return snap.fraction_used > threshold, snap

    @staticmethod
    def reclaim() -> int:
        """Ask the interpreter to free unreachable objects."""
        return gc.collect()
