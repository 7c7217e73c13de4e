"""
In-memory job store.

Not persistent: every job is lost when the process exits. Suitable for
tests, demos and deployments that accept losing queued work on restart.
Safe for concurrent asyncio tasks within one event loop.
"""

import asyncio
from collections.abc import Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from jobrunner.clock import utcnow
from jobrunner.constants import LEASE_HOLDING_STATES, JobState
from jobrunner.exceptions import DuplicateJobError, JobNotFoundError, LeaseConflictError
from jobrunner.types.job import JobRecord


class InMemoryJobStore:
    """Dictionary-backed store guarded by a single asyncio lock."""

    def __init__(self) -> None:
        self._jobs: dict[UUID, JobRecord] = {}
        self._idempotency_index: dict[str, UUID] = {}
        self._lock = asyncio.Lock()

    async def put(self, job: JobRecord) -> JobRecord:
        async with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job id already exists: {job.id}")
            key = job.idempotency_key
            if key is not None and key in self._idempotency_index:
                raise DuplicateJobError(key, self._idempotency_index[key])
            stored = job.model_copy(deep=True)
            self._jobs[job.id] = stored
            if key is not None:
                self._idempotency_index[key] = job.id
            return stored.model_copy(deep=True)

    async def get(self, job_id: UUID) -> JobRecord:
        async with self._lock:
            return self._get_locked(job_id).model_copy(deep=True)

    async def get_by_idempotency_key(self, idempotency_key: str) -> JobRecord | None:
        async with self._lock:
            job_id = self._idempotency_index.get(idempotency_key)
            if job_id is None:
                return None
            return self._jobs[job_id].model_copy(deep=True)

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
        async with self._lock:
            current = self._get_locked(job_id)
            if (
                current.state != expected_state
                or (lease_owner is not None and current.lease_owner != lease_owner)
                or (version is not None and current.version != version)
            ):
                raise LeaseConflictError(job_id, expected_state.value, current.state.value)
            return self._apply_locked(current, new_state, mutations or {}).model_copy(deep=True)

    async def lease_next(
        self,
        now: datetime,
        lease_owner: str,
        lease_expires_at: datetime,
    ) -> JobRecord | None:
        async with self._lock:
            eligible = [
                job for job in self._jobs.values()
                if job.state == JobState.PENDING and job.available_at <= now
            ]
            if not eligible:
                return None
            head = min(eligible, key=lambda job: (-job.priority, job.sequence))
            leased = self._apply_locked(
                head,
                JobState.LEASED,
                {
                    "lease_owner": lease_owner,
                    "lease_expires_at": lease_expires_at,
                    "updated_at": now,
                },
            )
            return leased.model_copy(deep=True)

    async def find_expired_leases(self, now: datetime) -> Sequence[JobRecord]:
        async with self._lock:
            return [
                job.model_copy(deep=True)
                for job in self._jobs.values()
                if job.state in LEASE_HOLDING_STATES and job.is_lease_expired(now)
            ]

    async def find_due_retries(self, now: datetime, limit: int = 100) -> Sequence[JobRecord]:
        async with self._lock:
            due = sorted(
                (
                    job for job in self._jobs.values()
                    if job.state == JobState.RETRYING and job.available_at <= now
                ),
                key=lambda job: job.available_at,
            )
            return [job.model_copy(deep=True) for job in due[:limit]]

    async def list_jobs(
        self,
        state: JobState | None = None,
        job_type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[JobRecord], int]:
        async with self._lock:
            matching = [
                job for job in self._jobs.values()
                if (state is None or job.state == state)
                and (job_type is None or job.type == job_type)
            ]
            matching.sort(key=lambda job: (job.created_at, job.sequence), reverse=True)
            page = matching[offset:offset + limit]
            return [job.model_copy(deep=True) for job in page], len(matching)

    async def count_by_state(self) -> dict[str, int]:
        async with self._lock:
            counts: dict[str, int] = {}
            for job in self._jobs.values():
                counts[job.state.value] = counts.get(job.state.value, 0) + 1
            return counts

    async def count_active_leases(self) -> int:
        async with self._lock:
            return sum(1 for job in self._jobs.values() if job.state in LEASE_HOLDING_STATES)

    async def close(self) -> None:
        return None

    def _get_locked(self, job_id: UUID) -> JobRecord:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _apply_locked(
        self,
        current: JobRecord,
        new_state: JobState,
        mutations: dict[str, Any],
    ) -> JobRecord:
        changes = {"updated_at": utcnow(), **mutations}
        changes["state"] = new_state
        changes["version"] = current.version + 1
        updated = current.model_copy(update=changes, deep=True)
        self._jobs[current.id] = updated
        return updated
