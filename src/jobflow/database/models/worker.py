"""Worker registry model for Jobflow.

Each running worker process owns exactly one row, keyed by its worker_id
("<hostname>:<pid>"), and is the only writer of that row.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Enum, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from jobflow.database.models.base import Base, JSONType, TimestampMixin, utcnow


class WorkerStatus(enum.Enum):
    """Worker process state machine.

    States:
        starting: Registered, not yet polling.
        running: Polling and processing tasks.
        paused: Cooling down under memory pressure.
        stopping: Shutdown requested, draining the in-flight task.
        stopped: Exited; the record is kept until cleanup.
    """

    starting = "starting"
    running = "running"
    paused = "paused"
    stopping = "stopping"
    stopped = "stopped"


#: Statuses in which a worker with a fresh heartbeat counts as alive.
LIVE_STATUSES = (WorkerStatus.starting, WorkerStatus.running, WorkerStatus.paused)


class WorkerRecord(TimestampMixin, Base):
    """Registry entry for one worker process.

    Attributes:
        worker_id: Unique process identifier.
        host: Hostname the worker runs on.
        pid: Operating system process id.
        status: Current WorkerStatus.
        last_heartbeat: Time of the most recent heartbeat.
        started_at: Time of the first registration of this worker_id.
        processed_count: Tasks completed by this process.
        failed_count: Tasks failed by this process.
        memory_snapshot: {used_mb, total_mb, percent_used} at last heartbeat.
        current_task: {task_id, entity_id, task_type, started_at} or None.
        config: Snapshot of the worker's effective settings.
    """

    __tablename__ = "worker_records"
    __table_args__ = (
        Index("ix_worker_records_last_heartbeat", "last_heartbeat"),
        Index("ix_worker_records_status", "status"),
    )

    worker_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    host: Mapped[str] = mapped_column(Text, nullable=False)
    pid: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[WorkerStatus] = mapped_column(
        Enum(WorkerStatus, name="workerstatus"),
        default=WorkerStatus.starting,
        nullable=False,
    )
    last_heartbeat: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    processed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    memory_snapshot: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType,
        nullable=True,
    )
    current_task: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType,
        nullable=True,
    )
    config: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
