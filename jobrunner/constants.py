"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import IntEnum, StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> LEASED (lease acquired)
    - LEASED -> RUNNING (execution started, attempts += 1)
    - LEASED -> PENDING (lease expired - crash recovery)
    - RUNNING -> PENDING (lease expired, budget left)
    - RUNNING -> COMPLETED (success)
    - RUNNING -> RETRYING (failure, budget left) -> PENDING (backoff elapsed)
    - RUNNING -> DEAD_LETTERED (failure, budget exhausted)
    - LEASED/RUNNING -> DEAD_LETTERED (permanent failure)
    - PENDING/RETRYING -> CANCELLED

    FAILED is reserved and never stored: a failed attempt moves straight to
    RETRYING or DEAD_LETTERED in a single compare-and-swap.
    """

    PENDING = "pending"
    LEASED = "leased"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    DEAD_LETTERED = "dead_lettered"
    CANCELLED = "cancelled"


TERMINAL_STATES: frozenset[JobState] = frozenset(
    {JobState.COMPLETED, JobState.DEAD_LETTERED, JobState.CANCELLED}
)
LEASE_HOLDING_STATES: frozenset[JobState] = frozenset(
    {JobState.LEASED, JobState.RUNNING}
)


class JobPriority(IntEnum):
    """Named priority levels. Higher values are leased first."""

    LOW = -10
    NORMAL = 0
    HIGH = 10
    CRITICAL = 100


# Default values
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_PRIORITY = JobPriority.NORMAL
LEASE_CANDIDATE_BATCH = 10

# API constants
API_V1_PREFIX = "/v1"
IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_ACTIVE_LEASES = "job_active_leases"
METRIC_DEAD_LETTERED = "job_dead_lettered"
METRIC_JOBS_SUBMITTED = "jobs_submitted_total"
METRIC_JOBS_FINISHED = "jobs_finished_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_LEASE_RECLAIMED = "lease_reclaimed_total"
METRIC_LEASE_ACQUIRED = "lease_acquired_total"

# Trace span names
SPAN_SUBMIT_JOB = "submit_job"
SPAN_LEASE_JOB = "lease_job"
SPAN_EXECUTE_JOB = "execute_job"
