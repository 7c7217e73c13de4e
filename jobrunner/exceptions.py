"""
Exception hierarchy for the job queue.

Store and queue operations raise these explicitly; the worker translates
handler-level errors into job state transitions instead of propagating them.
"""

from uuid import UUID


class JobQueueError(Exception):
    """Base exception for job queue operations."""


class JobNotFoundError(JobQueueError):
    """Raised when a job id is unknown to the store."""

    def __init__(self, job_id: UUID):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class LeaseConflictError(JobQueueError):
    """
    Raised when a compare-and-swap state update loses.

    The stored state, lease owner or version differed from what the caller
    expected. Workers treat this as a lost race, not as a job failure.
    """

    def __init__(self, job_id: UUID, expected: str, actual: str | None = None):
        detail = f"expected {expected}"
        if actual is not None:
            detail += f", found {actual}"
        super().__init__(f"State conflict on job {job_id}: {detail}")
        self.job_id = job_id
        self.expected = expected
        self.actual = actual


class DuplicateJobError(JobQueueError):
    """Raised by the store when an idempotency key is already taken."""

    def __init__(self, idempotency_key: str, existing_id: UUID):
        super().__init__(f"Idempotency key already used: {idempotency_key}")
        self.idempotency_key = idempotency_key
        self.existing_id = existing_id


class InvalidStateError(JobQueueError):
    """Raised when an operation is not allowed in the job's current state."""


class StoreUnavailableError(JobQueueError):
    """Raised when the backing store cannot be reached or fails a query."""


class PermanentJobError(JobQueueError):
    """
    A failure that retrying cannot fix.

    Handlers raise this to dead-letter a job immediately without consuming
    the remaining attempt budget.
    """


class HandlerNotFoundError(PermanentJobError):
    """Raised when no handler is registered for a job type."""

    def __init__(self, job_type: str):
        super().__init__(f"No handler registered for job type: {job_type}")
        self.job_type = job_type


class PayloadValidationError(PermanentJobError):
    """Raised when a payload does not match its job type's schema."""

    def __init__(self, job_type: str, detail: str):
        super().__init__(f"Invalid payload for job type {job_type}: {detail}")
        self.job_type = job_type
        self.detail = detail


class JobCancelledError(JobQueueError):
    """
    Raised by a handler that noticed a cancellation request and stopped.

    The worker records the job as cancelled rather than failed.
    """
