"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from jobrunner.constants import JobState
from jobrunner.types.job import JobRecord


class SubmitJobRequest(BaseModel):
    """Request body for submitting a new job."""

    type: str = Field(..., min_length=1, max_length=255, description="Job type")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job payload data")
    max_attempts: int | None = Field(
        default=None, ge=1, le=100, description="Maximum execution attempts"
    )
    priority: int | None = Field(
        default=None, description="Higher priorities are leased first"
    )
    delay_seconds: float | None = Field(
        default=None, ge=0, description="Hold the job back for this many seconds"
    )


class SubmitJobResponse(BaseModel):
    """Response body after submitting a job."""

    id: UUID
    status: JobState
    message: str = "Job accepted"


class JobResponse(BaseModel):
    """Full job details response."""

    id: UUID
    type: str
    payload: dict[str, Any]
    state: JobState
    attempts: int
    max_attempts: int
    priority: int
    reclaim_count: int
    cancel_requested: bool
    idempotency_key: str | None
    lease_owner: str | None
    lease_expires_at: datetime | None
    available_at: datetime
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    last_error: str | None
    result: dict[str, Any] | None

    @classmethod
    def from_record(cls, job: JobRecord) -> "JobResponse":
        return cls.model_validate(job.model_dump())


class JobListResponse(BaseModel):
    """Paginated list of jobs."""

    jobs: list[JobResponse]
    total: int
    page: int
    page_size: int
    has_next: bool


class RetryJobRequest(BaseModel):
    """Request body for retrying a dead-lettered job."""

    reset_attempts: bool = Field(
        default=True, description="Reset attempt counter to 0"
    )


class QueueStatsResponse(BaseModel):
    """Queue depth per state plus lease counters."""

    depth_by_state: dict[str, int]
    active_leases: int
    dead_lettered: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
