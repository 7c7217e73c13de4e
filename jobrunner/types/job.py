"""
Job-related type definitions for internal use.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from jobrunner.constants import TERMINAL_STATES, JobState


class JobRecord(BaseModel):
    """
    Snapshot of a job as held by the job store.

    Stores hand out copies; mutating a record never changes stored state.
    All changes go through the store's compare-and-swap update.
    """

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    payload: dict[str, Any]
    state: JobState = JobState.PENDING
    attempts: int = 0
    max_attempts: int = 3
    priority: int = 0
    sequence: int = 0
    available_at: datetime
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    reclaim_count: int = 0
    cancel_requested: bool = False
    idempotency_key: str | None = None
    last_error: str | None = None
    result: dict[str, Any] | None = None
    version: int = 0
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_retryable(self) -> bool:
        """Check if another attempt fits in the budget."""
        return self.attempts < self.max_attempts

    def is_lease_expired(self, now: datetime) -> bool:
        if self.lease_expires_at is None:
            return False
        return self.lease_expires_at < now


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    duration_ms: float | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and utilities for the handler.
    """

    job_id: UUID
    job_type: str
    attempt: int
    max_attempts: int
    payload: Any
    lease_owner: str
    lease_expires_at: datetime | None
    cancel_check: Callable[[], Awaitable[bool]] | None = field(default=None, repr=False)

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)

    async def cancellation_requested(self) -> bool:
        """
        Poll whether someone asked to cancel this job.

        Cancellation of a running job is cooperative: long handlers should
        call this between steps and return early when it is True.
        """
        if self.cancel_check is None:
            return False
        return await self.cancel_check()


@dataclass
class QueueStats:
    """Operational snapshot of the queue."""

    depth_by_state: dict[str, int]
    active_leases: int

    @property
    def dead_lettered(self) -> int:
        return self.depth_by_state.get(JobState.DEAD_LETTERED.value, 0)

    @property
    def pending(self) -> int:
        return self.depth_by_state.get(JobState.PENDING.value, 0)
