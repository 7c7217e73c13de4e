"""Worker pool and handler registry."""

from jobrunner.worker.pool import WorkerPool
from jobrunner.worker.registry import HandlerRegistry, HandlerSpec, JobHandler

__all__ = [
    "HandlerRegistry",
    "HandlerSpec",
    "JobHandler",
    "WorkerPool",
]
