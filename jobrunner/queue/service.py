"""
Job queue: the state machine over the job store.

The queue holds no job state of its own. Every transition is a
compare-and-swap against the store, guarded by the expected state and,
for worker-originated transitions, by the lease owner.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from jobrunner.clock import next_sequence, utcnow
from jobrunner.constants import (
    DEFAULT_MAX_ATTEMPTS,
    LEASE_HOLDING_STATES,
    SPAN_LEASE_JOB,
    SPAN_SUBMIT_JOB,
    JobState,
)
from jobrunner.exceptions import (
    DuplicateJobError,
    InvalidStateError,
    LeaseConflictError,
)
from jobrunner.observability.metrics import MetricsCollector, get_metrics
from jobrunner.observability.tracing import get_tracer
from jobrunner.queue.backoff import BackoffPolicy
from jobrunner.store.base import JobStore
from jobrunner.types.job import JobRecord, QueueStats

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_CANCEL_RETRIES = 3


def _as_timedelta(value: float | timedelta | None) -> timedelta:
    if value is None:
        return timedelta(0)
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=value)


class JobQueue:
    """
    Durable job queue with lease-based delivery.

    Features:
    - FIFO within a priority, higher priority first
    - Atomic leasing (one winner per job)
    - Exponential backoff with jitter between retries
    - Dead-lettering once the attempt budget is spent, or on permanent errors
    - Reclaim of expired leases for at-least-once delivery
    - Cooperative cancellation
    """

    def __init__(
        self,
        store: JobStore,
        *,
        backoff: BackoffPolicy | None = None,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        reclaim_on_lease: bool = True,
        clock: Clock = utcnow,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the queue.

        Args:
            store: The job store holding all job records.
            backoff: Retry backoff policy.
            default_max_attempts: Attempt budget when neither caller nor job type sets one.
            reclaim_on_lease: Reclaim expired leases opportunistically on each lease attempt.
            clock: Source of naive UTC "now"; injectable for tests.
            metrics: Metrics collector. Defaults to the process-wide one.
        """
        self.store = store
        self.backoff = backoff or BackoffPolicy()
        self.default_max_attempts = default_max_attempts
        self.reclaim_on_lease = reclaim_on_lease
        self._clock = clock
        self._metrics = metrics or get_metrics()
        self._work_available = asyncio.Event()

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        max_attempts: int | None = None,
        priority: int = 0,
        delay: float | timedelta | None = None,
        idempotency_key: str | None = None,
    ) -> JobRecord:
        """
        Create a job in PENDING.

        Args:
            job_type: Handler selector.
            payload: JSON-serializable job data.
            max_attempts: Attempt budget. Defaults to the queue default.
            priority: Higher values are leased first.
            delay: Hold the job back for this long before it becomes eligible.
            idempotency_key: Dedupe key; reusing it returns the original job.

        Returns:
            The stored job (the original one for a reused idempotency key).
        """
        attempts_budget = max_attempts if max_attempts is not None else self.default_max_attempts
        if attempts_budget < 1:
            raise ValueError("max_attempts must be at least 1")

        if idempotency_key is not None:
            existing = await self.store.get_by_idempotency_key(idempotency_key)
            if existing is not None:
                logger.info(
                    "Returned existing job (idempotent)",
                    extra={"job_id": str(existing.id), "idempotency_key": idempotency_key}
                )
                return existing

        now = self.now()
        job = JobRecord(
            id=uuid4(),
            type=job_type,
            payload=payload,
            state=JobState.PENDING,
            max_attempts=attempts_budget,
            priority=priority,
            sequence=next_sequence(),
            available_at=now + _as_timedelta(delay),
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )

        with get_tracer().start_as_current_span(SPAN_SUBMIT_JOB) as span:
            span.set_attribute("job_id", str(job.id))
            span.set_attribute("job_type", job_type)
            try:
                stored = await self.store.put(job)
            except DuplicateJobError as e:
                return await self.store.get(e.existing_id)

        self._metrics.record_job_submitted(job_type)
        self._work_available.set()
        logger.info(
            "Job enqueued",
            extra={
                "job_id": str(stored.id),
                "job_type": job_type,
                "priority": priority,
                "available_at": stored.available_at.isoformat(),
            }
        )
        return stored

    async def get(self, job_id: UUID) -> JobRecord:
        return await self.store.get(job_id)

    async def list_jobs(
        self,
        state: JobState | None = None,
        job_type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[JobRecord], int]:
        return await self.store.list_jobs(state, job_type, limit, offset)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    async def lease_next(self, worker_id: str, ttl: float | timedelta) -> JobRecord | None:
        """
        Lease the head eligible job.

        Promotes retries whose backoff elapsed and, if enabled, reclaims
        expired leases before picking.

        Args:
            worker_id: Identity recorded as the lease owner.
            ttl: Lease duration.

        Returns:
            The leased job, or None if nothing is eligible.
        """
        now = self.now()
        await self.promote_due_retries(now)
        if self.reclaim_on_lease:
            await self.reclaim_expired(now)

        with get_tracer().start_as_current_span(SPAN_LEASE_JOB) as span:
            span.set_attribute("worker_id", worker_id)
            job = await self.store.lease_next(now, worker_id, now + _as_timedelta(ttl))
            if job is None:
                return None
            span.set_attribute("job_id", str(job.id))

        self._metrics.record_lease_acquired()
        logger.debug(
            "Lease acquired",
            extra={"job_id": str(job.id), "worker_id": worker_id}
        )
        return job

    async def wait_for_work(self, timeout: float) -> bool:
        """
        Wait up to `timeout` seconds for an in-process enqueue.

        Returns True if woken by new work. Work submitted by other
        processes is only seen on the next poll.
        """
        try:
            await asyncio.wait_for(self._work_available.wait(), timeout)
            return True
        except TimeoutError:
            return False
        finally:
            self._work_available.clear()

    async def start(self, job_id: UUID, worker_id: str) -> JobRecord:
        """
        Transition LEASED -> RUNNING, consuming one attempt.

        Raises:
            LeaseConflictError: If the lease was lost (reclaimed or taken).
            InvalidStateError: If the attempt budget is already spent; the
                job is dead-lettered instead of started.
        """
        job = await self.store.get(job_id)
        if job.state != JobState.LEASED or job.lease_owner != worker_id:
            raise LeaseConflictError(job_id, JobState.LEASED.value, job.state.value)

        if not job.is_retryable:
            await self.dead_letter(
                job_id,
                worker_id,
                f"Attempt budget exhausted ({job.attempts}/{job.max_attempts})",
                expected_state=JobState.LEASED,
            )
            raise InvalidStateError(f"Job {job_id} has no attempts left")

        running = await self.store.update_state(
            job_id,
            JobState.LEASED,
            JobState.RUNNING,
            {"attempts": job.attempts + 1, "updated_at": self.now()},
            lease_owner=worker_id,
            version=job.version,
        )
        logger.info(
            "Started job execution",
            extra={"job_id": str(job_id), "attempt": running.attempts}
        )
        return running

    async def complete(
        self,
        job_id: UUID,
        worker_id: str,
        result: dict[str, Any] | None = None,
    ) -> JobRecord:
        """Mark a running job as successfully completed."""
        now = self.now()
        job = await self.store.update_state(
            job_id,
            JobState.RUNNING,
            JobState.COMPLETED,
            {
                "result": result,
                "last_error": None,
                "completed_at": now,
                "updated_at": now,
                "lease_owner": None,
                "lease_expires_at": None,
            },
            lease_owner=worker_id,
        )
        logger.info("Job completed successfully", extra={"job_id": str(job_id)})
        return job

    async def fail(self, job_id: UUID, worker_id: str, error: str) -> JobRecord:
        """
        Handle a transient failure of a running job.

        Retries with backoff while attempts remain, otherwise dead-letters.

        Returns:
            The job in RETRYING or DEAD_LETTERED.
        """
        job = await self.store.get(job_id)
        if job.state != JobState.RUNNING or job.lease_owner != worker_id:
            raise LeaseConflictError(job_id, JobState.RUNNING.value, job.state.value)

        if job.attempts >= job.max_attempts:
            logger.warning(
                f"Job dead-lettered after {job.attempts} attempts",
                extra={"job_id": str(job_id), "error": error}
            )
            return await self.dead_letter(job_id, worker_id, error)

        return await self.requeue(
            job_id,
            worker_id,
            self.backoff.delay(job.attempts),
            error=error,
        )

    async def requeue(
        self,
        job_id: UUID,
        worker_id: str,
        delay: float | timedelta | None = None,
        *,
        error: str | None = None,
    ) -> JobRecord:
        """
        Move a running job to RETRYING; it becomes PENDING once the delay elapses.

        Guarded by state and lease owner only: a heartbeat that bumps the
        version between the read and the write must not make the report lose.

        Args:
            job_id: The job UUID.
            worker_id: Current lease owner.
            delay: Explicit delay. Defaults to the backoff policy for the
                job's attempt count.
            error: Failure detail to record.
        """
        if delay is None:
            job = await self.store.get(job_id)
            delay_td = timedelta(seconds=self.backoff.delay(job.attempts))
        else:
            delay_td = _as_timedelta(delay)

        now = self.now()
        mutations: dict[str, Any] = {
            "available_at": now + delay_td,
            "updated_at": now,
            "lease_owner": None,
            "lease_expires_at": None,
        }
        if error is not None:
            mutations["last_error"] = error

        job = await self.store.update_state(
            job_id,
            JobState.RUNNING,
            JobState.RETRYING,
            mutations,
            lease_owner=worker_id,
        )
        logger.info(
            "Job queued for retry",
            extra={
                "job_id": str(job_id),
                "attempt": job.attempts,
                "retry_in_seconds": round(delay_td.total_seconds(), 3),
            }
        )
        return job

    async def dead_letter(
        self,
        job_id: UUID,
        worker_id: str,
        error: str,
        *,
        expected_state: JobState = JobState.RUNNING,
    ) -> JobRecord:
        """
        Move a job straight to DEAD_LETTERED.

        Used for an exhausted budget and for permanent failures (unknown
        type, invalid payload), which do not consume an attempt.
        """
        now = self.now()
        job = await self.store.update_state(
            job_id,
            expected_state,
            JobState.DEAD_LETTERED,
            {
                "last_error": error,
                "completed_at": now,
                "updated_at": now,
                "lease_owner": None,
                "lease_expires_at": None,
            },
            lease_owner=worker_id,
        )
        logger.warning(
            "Job dead-lettered",
            extra={"job_id": str(job_id), "attempts": job.attempts, "error": error}
        )
        return job

    async def mark_cancelled(self, job_id: UUID, worker_id: str) -> JobRecord:
        """Record that a running handler honoured a cancellation request."""
        now = self.now()
        job = await self.store.update_state(
            job_id,
            JobState.RUNNING,
            JobState.CANCELLED,
            {
                "completed_at": now,
                "updated_at": now,
                "lease_owner": None,
                "lease_expires_at": None,
            },
            lease_owner=worker_id,
        )
        logger.info("Job cancelled by handler", extra={"job_id": str(job_id)})
        return job

    async def extend_lease(
        self,
        job_id: UUID,
        worker_id: str,
        ttl: float | timedelta,
    ) -> JobRecord:
        """
        Push a held lease's expiry out to now + ttl (heartbeat).

        Raises:
            LeaseConflictError: If the worker no longer holds the lease.
        """
        job = await self.store.get(job_id)
        if job.state not in LEASE_HOLDING_STATES or job.lease_owner != worker_id:
            raise LeaseConflictError(job_id, "leased|running", job.state.value)

        now = self.now()
        return await self.store.update_state(
            job_id,
            job.state,
            job.state,
            {"lease_expires_at": now + _as_timedelta(ttl), "updated_at": now},
            lease_owner=worker_id,
            version=job.version,
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def reclaim_expired(self, now: datetime | None = None) -> int:
        """
        Return jobs whose lease expired to PENDING.

        Each expiry is reclaimed at most once: the version guard makes a
        second reclaimer (or a late heartbeat) lose the race. A running job
        that already used its last attempt is dead-lettered instead, and a
        job with a pending cancellation request is cancelled.

        Returns:
            Number of jobs reclaimed.
        """
        now = now or self.now()
        reclaimed = 0

        for job in await self.store.find_expired_leases(now):
            if job.cancel_requested:
                new_state = JobState.CANCELLED
                mutations: dict[str, Any] = {"completed_at": now}
            elif job.state == JobState.RUNNING and not job.is_retryable:
                new_state = JobState.DEAD_LETTERED
                mutations = {
                    "completed_at": now,
                    "last_error": f"Lease expired during final attempt (owner {job.lease_owner})",
                }
            else:
                new_state = JobState.PENDING
                mutations = {
                    "available_at": now,
                    "reclaim_count": job.reclaim_count + 1,
                }

            mutations.update(
                {"lease_owner": None, "lease_expires_at": None, "updated_at": now}
            )
            try:
                await self.store.update_state(
                    job.id, job.state, new_state, mutations, version=job.version
                )
            except LeaseConflictError:
                continue

            reclaimed += 1
            logger.info(
                "Reclaimed expired lease",
                extra={
                    "job_id": str(job.id),
                    "previous_owner": job.lease_owner,
                    "new_state": new_state.value,
                }
            )

        if reclaimed:
            self._metrics.record_lease_reclaimed(reclaimed)
            self._work_available.set()
        return reclaimed

    async def promote_due_retries(self, now: datetime | None = None) -> int:
        """
        Move RETRYING jobs whose backoff elapsed back to PENDING.

        Returns:
            Number of jobs promoted.
        """
        now = now or self.now()
        promoted = 0
        for job in await self.store.find_due_retries(now):
            try:
                await self.store.update_state(
                    job.id,
                    JobState.RETRYING,
                    JobState.PENDING,
                    {"updated_at": now},
                    version=job.version,
                )
            except LeaseConflictError:
                continue
            promoted += 1

        if promoted:
            logger.debug("Promoted due retries", extra={"count": promoted})
            self._work_available.set()
        return promoted

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def cancel(self, job_id: UUID) -> JobRecord:
        """
        Cancel a job.

        PENDING and RETRYING jobs become CANCELLED immediately. LEASED and
        RUNNING jobs only get cancel_requested set; the handler decides
        whether to stop early.

        Raises:
            InvalidStateError: If the job already reached a terminal state.
        """
        for _ in range(_CANCEL_RETRIES):
            job = await self.store.get(job_id)
            now = self.now()

            if job.is_terminal:
                raise InvalidStateError(
                    f"Job {job_id} is already {job.state.value} and cannot be cancelled"
                )

            try:
                if job.state in LEASE_HOLDING_STATES:
                    updated = await self.store.update_state(
                        job_id,
                        job.state,
                        job.state,
                        {"cancel_requested": True, "updated_at": now},
                        version=job.version,
                    )
                    logger.info("Cancellation requested", extra={"job_id": str(job_id)})
                else:
                    updated = await self.store.update_state(
                        job_id,
                        job.state,
                        JobState.CANCELLED,
                        {"completed_at": now, "updated_at": now},
                        version=job.version,
                    )
                    logger.info("Job cancelled", extra={"job_id": str(job_id)})
                return updated
            except LeaseConflictError:
                continue

        raise LeaseConflictError(job_id, "cancellable state")

    async def is_cancel_requested(self, job_id: UUID) -> bool:
        job = await self.store.get(job_id)
        return job.cancel_requested

    async def retry_dead_lettered(
        self,
        job_id: UUID,
        reset_attempts: bool = True,
    ) -> JobRecord:
        """
        Put a dead-lettered job back in PENDING.

        Args:
            job_id: The job UUID.
            reset_attempts: Whether to reset the attempt counter.

        Raises:
            InvalidStateError: If the job is not dead-lettered, or if it has
                no attempts left and reset_attempts is False.
        """
        job = await self.store.get(job_id)
        if job.state != JobState.DEAD_LETTERED:
            raise InvalidStateError(
                f"Job {job_id} is not dead-lettered (current state: {job.state.value})"
            )
        if not reset_attempts and not job.is_retryable:
            raise InvalidStateError(f"Job {job_id} has no attempts left; reset them to retry")

        now = self.now()
        mutations: dict[str, Any] = {
            "available_at": now,
            "completed_at": None,
            "last_error": None,
            "updated_at": now,
        }
        if reset_attempts:
            mutations["attempts"] = 0

        retried = await self.store.update_state(
            job_id,
            JobState.DEAD_LETTERED,
            JobState.PENDING,
            mutations,
            version=job.version,
        )
        self._work_available.set()
        logger.info("Job retried from dead letter", extra={"job_id": str(job_id)})
        return retried

    async def stats(self) -> QueueStats:
        """Queue depth per state and active lease count; refreshes the gauges."""
        depth = await self.store.count_by_state()
        active = await self.store.count_active_leases()
        self._metrics.update_queue_stats(depth, active)
        return QueueStats(depth_by_state=depth, active_leases=active)
