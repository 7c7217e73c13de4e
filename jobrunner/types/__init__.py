"""
Type definitions for the job runner.
Contains input/output type definitions for all functions, grouped by module.
"""

from jobrunner.types.api import (
    ErrorResponse,
    HealthResponse,
    JobListResponse,
    JobResponse,
    QueueStatsResponse,
    RetryJobRequest,
    SubmitJobRequest,
    SubmitJobResponse,
)
from jobrunner.types.job import (
    JobContext,
    JobRecord,
    JobResult,
    QueueStats,
)

__all__ = [
    # API types
    "SubmitJobRequest",
    "SubmitJobResponse",
    "JobResponse",
    "JobListResponse",
    "RetryJobRequest",
    "QueueStatsResponse",
    "HealthResponse",
    "ErrorResponse",
    # Job types
    "JobRecord",
    "JobResult",
    "JobContext",
    "QueueStats",
]
