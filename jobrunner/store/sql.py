"""
SQLAlchemy-backed job store.

Durable across process restarts. PostgreSQL (asyncpg) is the production
target; SQLite (aiosqlite) works for single-host deployments.
"""

import logging
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from jobrunner.clock import utcnow
from jobrunner.constants import LEASE_CANDIDATE_BATCH, JobState
from jobrunner.db.connection import Database
from jobrunner.db.repository import JobRepository
from jobrunner.exceptions import (
    DuplicateJobError,
    JobNotFoundError,
    LeaseConflictError,
    StoreUnavailableError,
)
from jobrunner.types.job import JobRecord

logger = logging.getLogger(__name__)


class SqlJobStore:
    """
    Job store on top of the jobs table.

    Each call runs in its own transaction. Driver-level failures surface as
    StoreUnavailableError so callers can tell an outage from a job outcome.
    """

    def __init__(self, database: Database):
        self._db = database

    @asynccontextmanager
    async def _repository(self) -> AsyncGenerator[JobRepository]:
        try:
            async with self._db.session() as session:
                yield JobRepository(session)
        except (SQLAlchemyError, OSError) as e:
            logger.warning("Job store operation failed", extra={"error": str(e)})
            raise StoreUnavailableError(f"Job store unavailable: {e}") from e

    async def put(self, job: JobRecord) -> JobRecord:
        values = job.model_dump()
        try:
            async with self._db.session() as session:
                row = await JobRepository(session).insert_job(values)
                return JobRecord.model_validate(row)
        except IntegrityError as e:
            if job.idempotency_key is not None:
                existing = await self.get_by_idempotency_key(job.idempotency_key)
                if existing is not None:
                    raise DuplicateJobError(job.idempotency_key, existing.id) from e
            raise StoreUnavailableError(f"Failed to insert job: {e}") from e
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Job store unavailable: {e}") from e

    async def get(self, job_id: UUID) -> JobRecord:
        async with self._repository() as repo:
            row = await repo.get_job(job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            return JobRecord.model_validate(row)

    async def get_by_idempotency_key(self, idempotency_key: str) -> JobRecord | None:
        async with self._repository() as repo:
            row = await repo.get_job_by_idempotency_key(idempotency_key)
            return JobRecord.model_validate(row) if row is not None else None

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
        values = {"updated_at": utcnow(), **(mutations or {}), "state": new_state}
        async with self._repository() as repo:
            row = await repo.compare_and_swap(
                job_id,
                expected_state,
                values,
                lease_owner=lease_owner,
                version=version,
            )
            if row is not None:
                return JobRecord.model_validate(row)
            current = await repo.get_job(job_id)

        if current is None:
            raise JobNotFoundError(job_id)
        raise LeaseConflictError(job_id, expected_state.value, JobState(current.state).value)

    async def lease_next(
        self,
        now: datetime,
        lease_owner: str,
        lease_expires_at: datetime,
    ) -> JobRecord | None:
        async with self._repository() as repo:
            candidates = await repo.find_ready(now, LEASE_CANDIDATE_BATCH)
            for candidate in candidates:
                row = await repo.compare_and_swap(
                    candidate.id,
                    JobState.PENDING,
                    {
                        "state": JobState.LEASED,
                        "lease_owner": lease_owner,
                        "lease_expires_at": lease_expires_at,
                        "updated_at": now,
                    },
                    version=candidate.version,
                )
                if row is not None:
                    return JobRecord.model_validate(row)
                logger.debug(
                    "Lost lease race, trying next candidate",
                    extra={"job_id": str(candidate.id), "worker_id": lease_owner}
                )
        return None

    async def find_expired_leases(self, now: datetime) -> Sequence[JobRecord]:
        async with self._repository() as repo:
            rows = await repo.find_expired_leases(now)
            return [JobRecord.model_validate(row) for row in rows]

    async def find_due_retries(self, now: datetime, limit: int = 100) -> Sequence[JobRecord]:
        async with self._repository() as repo:
            rows = await repo.find_due_retries(now, limit)
            return [JobRecord.model_validate(row) for row in rows]

    async def list_jobs(
        self,
        state: JobState | None = None,
        job_type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[JobRecord], int]:
        async with self._repository() as repo:
            rows, total = await repo.list_jobs(state, job_type, limit, offset)
            return [JobRecord.model_validate(row) for row in rows], total

    async def count_by_state(self) -> dict[str, int]:
        async with self._repository() as repo:
            return await repo.count_by_state()

    async def count_active_leases(self) -> int:
        async with self._repository() as repo:
            return await repo.count_active_leases()

    async def close(self) -> None:
        await self._db.close()

