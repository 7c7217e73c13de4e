"""
Job repository for database operations.
Implements the core data access patterns for job management.
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobrunner.constants import LEASE_HOLDING_STATES, JobState
from jobrunner.db.models import Job

logger = logging.getLogger(__name__)


class JobRepository:
    """
    Repository for job database operations, bound to one session.

    Implements atomic operations for:
    - Job insertion and lookup (by id and idempotency key)
    - Compare-and-swap state transitions
    - Candidate selection for leasing with FOR UPDATE SKIP LOCKED
    - Lease expiry and retry scans
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def insert_job(self, values: dict[str, Any]) -> Job:
        """
        Insert a new job row.

        Args:
            values: Column values for the new row.

        Returns:
            The persisted Job.
        """
        job = Job(**values)
        self._session.add(job)
        await self._session.flush()
        logger.info(
            "Inserted job",
            extra={"job_id": str(job.id), "job_type": job.type}
        )
        return job

    async def get_job(self, job_id: UUID) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job UUID.

        Returns:
            The Job or None if not found.
        """
        stmt = select(Job).where(Job.id == job_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_job_by_idempotency_key(self, idempotency_key: str) -> Job | None:
        """
        Get a job by its idempotency key.

        Args:
            idempotency_key: The idempotency key.

        Returns:
            The Job or None if not found.
        """
        stmt = select(Job).where(Job.idempotency_key == idempotency_key)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def compare_and_swap(
        self,
        job_id: UUID,
        expected_state: JobState,
        values: dict[str, Any],
        lease_owner: str | None = None,
        version: int | None = None,
    ) -> Job | None:
        """
        Update a job only if it is still in the expected state.

        The WHERE clause carries the expectation, so two writers racing on
        the same row always have exactly one winner.

        Args:
            job_id: The job UUID.
            expected_state: State the row must currently be in.
            values: Column values to write.
            lease_owner: If given, the row's lease owner must match.
            version: If given, the row's version must match.

        Returns:
            The updated Job, or None if the expectation did not hold.
        """
        conditions = [Job.id == job_id, Job.state == expected_state]
        if lease_owner is not None:
            conditions.append(Job.lease_owner == lease_owner)
        if version is not None:
            conditions.append(Job.version == version)

        stmt = (
            update(Job)
            .where(and_(*conditions))
            .values(version=Job.version + 1, **values)
            .returning(Job)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_ready(self, now: datetime, limit: int) -> Sequence[Job]:
        """
        Select pending jobs that may be leased now, in lease order.

        Uses FOR UPDATE SKIP LOCKED where the dialect supports it so
        concurrent workers look at disjoint candidates.

        Args:
            now: Current time.
            limit: Maximum number of candidates.

        Returns:
            Candidate jobs, highest priority first, oldest first within a priority.
        """
        stmt = (
            select(Job)
            .where(
                and_(
                    Job.state == JobState.PENDING,
                    Job.available_at <= now,
                )
            )
            .order_by(Job.priority.desc(), Job.sequence.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def find_due_retries(self, now: datetime, limit: int) -> Sequence[Job]:
        """Select retrying jobs whose backoff has elapsed."""
        stmt = (
            select(Job)
            .where(
                and_(
                    Job.state == JobState.RETRYING,
                    Job.available_at <= now,
                )
            )
            .order_by(Job.available_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def find_expired_leases(self, now: datetime) -> Sequence[Job]:
        """
        Select jobs holding a lease that has expired.

        Args:
            now: Current time.

        Returns:
            Leased or running jobs with lease_expires_at < now.
        """
        stmt = select(Job).where(
            and_(
                Job.state.in_(LEASE_HOLDING_STATES),
                Job.lease_expires_at < now,
            )
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_jobs(
        self,
        state: JobState | None = None,
        job_type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs with optional filtering.

        Args:
            state: Optional state filter.
            job_type: Optional job type filter.
            limit: Maximum number of jobs to return.
            offset: Offset for pagination.

        Returns:
            Tuple of (jobs, total_count).
        """
        filters = []
        if state is not None:
            filters.append(Job.state == state)
        if job_type is not None:
            filters.append(Job.type == job_type)

        count_stmt = select(func.count()).select_from(Job)
        if filters:
            count_stmt = count_stmt.where(and_(*filters))
        count_result = await self._session.execute(count_stmt)
        total = count_result.scalar() or 0

        stmt = select(Job).order_by(Job.created_at.desc(), Job.sequence.desc())
        if filters:
            stmt = stmt.where(and_(*filters))
        result = await self._session.execute(stmt.limit(limit).offset(offset))

        return result.scalars().all(), total

    async def count_by_state(self) -> dict[str, int]:
        """
        Get job counts by state.

        Returns:
            Dictionary of state -> count.
        """
        stmt = select(Job.state, func.count()).group_by(Job.state)
        result = await self._session.execute(stmt)
        return {JobState(state).value: count for state, count in result.all()}

    async def count_active_leases(self) -> int:
        """Count jobs currently holding a lease."""
        stmt = select(func.count()).select_from(Job).where(
            Job.state.in_(LEASE_HOLDING_STATES)
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0
