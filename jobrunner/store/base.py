"""
Job store contract.

The store exclusively owns job records. Every state change goes through
update_state, a compare-and-swap on the expected state, so concurrent
workers and reapers racing on one job always produce a single winner.
"""

from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from jobrunner.constants import JobState
from jobrunner.types.job import JobRecord


class JobStore(Protocol):
    """Durable mapping from job id to job state."""

    async def put(self, job: JobRecord) -> JobRecord:
        """
        Insert a new job.

        Raises:
            DuplicateJobError: If the job's idempotency key is already used.
        """
        ...

    async def get(self, job_id: UUID) -> JobRecord:
        """
        Fetch a job by id.

        Raises:
            JobNotFoundError: If the id is unknown.
        """
        ...

    async def get_by_idempotency_key(self, idempotency_key: str) -> JobRecord | None:
        ...

    async def update_state(
        self,
        job_id: UUID,
        expected_state: JobState,
        new_state: JobState,
        mutations: dict[str, Any] | None = None,
        *,
        lease_owner: str | None = None,
        version: int | None = None,
    ) -> JobRecord:
        """
        Compare-and-swap the job's state and apply field mutations.

        Raises:
            JobNotFoundError: If the id is unknown.
            LeaseConflictError: If the stored state, lease owner or version
                differs from the expectation.
        """
        ...

    async def lease_next(
        self,
        now: datetime,
        lease_owner: str,
        lease_expires_at: datetime,
    ) -> JobRecord | None:
        """
        Atomically move the head eligible pending job to leased.

        Eligible means pending with available_at <= now. Order is priority
        descending, then enqueue sequence ascending.
        """
        ...

    async def find_expired_leases(self, now: datetime) -> Sequence[JobRecord]:
        ...

    async def find_due_retries(self, now: datetime, limit: int = 100) -> Sequence[JobRecord]:
        ...

    async def list_jobs(
        self,
        state: JobState | None = None,
        job_type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[JobRecord], int]:
        ...

    async def count_by_state(self) -> dict[str, int]:
        ...

    async def count_active_leases(self) -> int:
        ...

    async def close(self) -> None:
        ...
