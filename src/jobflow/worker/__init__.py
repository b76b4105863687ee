"""Worker process for Jobflow.

Claims tasks from the queue, runs embedding and similarity handlers,
reports liveness to the worker registry and throttles under memory
pressure.
"""

from jobflow.worker.handlers import TaskHandlers, UnknownTaskType
from jobflow.worker.memory import MemoryMonitor, MemorySnapshot
from jobflow.worker.process import Worker, WorkerConfigError, validate_worker_config

__all__ = [
    "TaskHandlers",
    "UnknownTaskType",
    "MemoryMonitor",
    "MemorySnapshot",
    "Worker",
    "WorkerConfigError",
    "validate_worker_config",
]
