"""Unit tests for worker memory sampling."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import patch

from jobflow.worker.memory import MemoryMonitor, MemorySnapshot

MB = 1024 * 1024


def _monitor_with_rss(rss_mb: int, limit_mb: int | None = None) -> MemoryMonitor:
    monitor = MemoryMonitor(memory_limit_mb=limit_mb)
    monitor._process = SimpleNamespace(memory_info=lambda: SimpleNamespace(rss=rss_mb * MB))
    return monitor


def test_snapshot_against_limit() -> None:
    snap = _monitor_with_rss(512, limit_mb=1024).snapshot()
    assert snap == MemorySnapshot(used_mb=512, total_mb=1024, percent_used=50.0)
    assert snap.fraction_used == 0.5


def test_snapshot_against_system_memory() -> None:
    monitor = _monitor_with_rss(256)
    with patch("psutil.virtual_memory", return_value=SimpleNamespace(total=2048 * MB)):
        snap = monitor.snapshot()
    assert snap.total_mb == 2048
    assert snap.percent_used == 12.5


def test_pressure_threshold_is_exclusive() -> None:
    monitor = _monitor_with_rss(850, limit_mb=1000)
    under, snap = monitor.is_under_pressure(0.85)
    assert under is False
    assert snap.percent_used == 85.0

    under, _ = _monitor_with_rss(900, limit_mb=1000).is_under_pressure(0.85)
    assert under is True


def test_real_process_snapshot_is_sane() -> None:
    snap = MemoryMonitor().snapshot()
    assert snap.used_mb > 0
    assert 0 < snap.percent_used < 100


def test_reclaim_runs_collector() -> None:
    with patch("gc.collect", return_value=7) as collect:
        assert MemoryMonitor.reclaim() == 7
    collect.assert_called_once()
