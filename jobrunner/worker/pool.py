"""
Worker pool for executing jobs.

Each worker unit leases one job at a time from the queue, resolves its
handler, executes it and reports the outcome. Units never talk to each
other: the store's compare-and-swap is the only synchronization point.
"""

import asyncio
import inspect
import json
import logging
import os
import socket
import time
from functools import partial
from typing import Any
from uuid import UUID

from jobrunner.config import Settings, get_settings
from jobrunner.constants import SPAN_EXECUTE_JOB, JobState
from jobrunner.exceptions import (
    InvalidStateError,
    JobCancelledError,
    LeaseConflictError,
    PermanentJobError,
    StoreUnavailableError,
)
from jobrunner.observability.logging import job_log_context
from jobrunner.observability.metrics import MetricsCollector, get_metrics
from jobrunner.observability.tracing import get_tracer
from jobrunner.queue.service import JobQueue
from jobrunner.reaper.main import Reaper
from jobrunner.types.job import JobContext, JobRecord, JobResult
from jobrunner.worker.registry import HandlerRegistry, JobHandler

logger = logging.getLogger(__name__)


class WorkerPool:
    """
    Pool of concurrent worker units.

    Features:
    - N independent units, each holding at most one lease
    - Bounded wait when the queue is empty, woken early by local enqueues
    - Heartbeat to extend leases for long-running jobs
    - Embedded reaper for expired leases and due retries
    - Backoff when the job store is unavailable
    - Graceful shutdown that lets running jobs finish
    """

    def __init__(
        self,
        queue: JobQueue,
        registry: HandlerRegistry,
        *,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        lease_ttl: float | None = None,
        heartbeat_interval: float | None = None,
        reclaim_interval: float | None = None,
        name: str | None = None,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the pool.

        Args:
            queue: Queue to lease jobs from.
            registry: Handler registry used to execute jobs.
            concurrency: Number of worker units.
            poll_interval: Max seconds a unit waits for work before polling again.
            lease_ttl: Lease duration in seconds. Must exceed expected handler
                run time plus scheduling jitter unless heartbeats are enabled.
            heartbeat_interval: Seconds between lease extensions; 0 disables.
            reclaim_interval: Seconds between embedded reaper runs; 0 disables.
            name: Pool name, used as the prefix of unit ids. Defaults to host + PID.
            settings: Settings providing defaults.
            metrics: Metrics collector. Defaults to the process-wide one.
        """
        settings = settings or get_settings()

        self.queue = queue
        self.registry = registry
        self.concurrency = concurrency or settings.worker_concurrency
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.lease_ttl = lease_ttl or settings.worker_lease_ttl_seconds
        self.heartbeat_interval = (
            heartbeat_interval
            if heartbeat_interval is not None
            else settings.worker_heartbeat_interval_seconds
        )
        self.reclaim_interval = (
            reclaim_interval
            if reclaim_interval is not None
            else settings.reaper_interval_seconds
        )
        self.store_retry_max = settings.worker_store_retry_max_seconds
        self.name = name or f"{socket.gethostname()}-{os.getpid()}"

        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self._running = False
        self._unit_tasks: list[asyncio.Task] = []
        self._background_tasks: list[asyncio.Task] = []
        self._active: dict[str, UUID] = {}
        self._reaper: Reaper | None = None
        self._metrics = metrics or get_metrics()

    @property
    def worker_ids(self) -> list[str]:
        return [f"{self.name}-{i}" for i in range(self.concurrency)]

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_leases(self) -> dict[str, UUID]:
        """Worker unit id -> job id it is currently executing."""
        return dict(self._active)

    async def start(self) -> None:
        """Spawn the worker units and background tasks."""
        if self._running:
            raise RuntimeError("Worker pool is already running")

        logger.info(
            "Worker pool starting",
            extra={
                "pool": self.name,
                "concurrency": self.concurrency,
                "lease_ttl": self.lease_ttl,
            }
        )
        self._running = True

        self._unit_tasks = [
            asyncio.create_task(self._unit_loop(worker_id), name=worker_id)
            for worker_id in self.worker_ids
        ]
        if self.heartbeat_interval > 0:
            self._background_tasks.append(asyncio.create_task(self._heartbeat_loop()))
        if self.reclaim_interval > 0:
            self._reaper = Reaper(self.queue, self.reclaim_interval)
            self._background_tasks.append(asyncio.create_task(self._reaper.start()))

    async def stop(self, timeout: float | None = None) -> None:
        """
        Stop leasing new jobs and wait for running ones to finish.

        Args:
            timeout: Seconds to wait for units to drain before cancelling
                them. A cancelled job keeps its lease until expiry and is
                then reclaimed.
        """
        if not self._running:
            return

        logger.info("Worker pool stopping", extra={"pool": self.name})
        self._running = False

        if self._unit_tasks:
            _, pending = await asyncio.wait(self._unit_tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(
                    f"Cancelled {len(pending)} worker units still running after {timeout}s"
                )
                await asyncio.gather(*pending, return_exceptions=True)

        if self._reaper is not None:
            await self._reaper.stop()
        for task in self._background_tasks:
            task.cancel()
        await asyncio.gather(*self._background_tasks, return_exceptions=True)

        self._unit_tasks = []
        self._background_tasks = []
        self._reaper = None
        logger.info("Worker pool stopped", extra={"pool": self.name})

    shutdown = stop

    async def __aenter__(self) -> "WorkerPool":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def run_once(self, worker_id: str | None = None) -> JobRecord | None:
        """
        Lease and process at most one job.

        Returns:
            The job's record after processing, or None if nothing was eligible.
        """
        worker_id = worker_id or f"{self.name}-once"
        job = await self.queue.lease_next(worker_id, self.lease_ttl)
        if job is None:
            return None
        await self._process(worker_id, job)
        return await self.queue.get(job.id)

    async def _unit_loop(self, worker_id: str) -> None:
        """Lease-execute-report loop of one worker unit."""
        store_backoff = self.poll_interval

        while self._running:
            try:
                job = await self.queue.lease_next(worker_id, self.lease_ttl)
            except StoreUnavailableError as e:
                logger.warning(
                    f"Job store unavailable, retrying in {store_backoff:.1f}s",
                    extra={"worker_id": worker_id, "error": str(e)}
                )
                await asyncio.sleep(store_backoff)
                store_backoff = min(store_backoff * 2, self.store_retry_max)
                continue
            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": worker_id}
                )
                await asyncio.sleep(self.poll_interval)
                continue

            store_backoff = self.poll_interval

            if job is None:
                await self.queue.wait_for_work(self.poll_interval)
                continue

            try:
                await self._process(worker_id, job)
            except Exception as e:
                # The job keeps its lease and is reclaimed after expiry
                logger.exception(
                    f"Error processing job: {e}",
                    extra={"worker_id": worker_id, "job_id": str(job.id)}
                )

    async def _process(self, worker_id: str, job: JobRecord) -> None:
        """
        Execute a single leased job.

        Handles the full lifecycle:
        1. Resolve the handler and validate the payload (permanent errors
           dead-letter the job without consuming an attempt)
        2. Transition to RUNNING
        3. Execute the handler
        4. Report COMPLETED, a retry, DEAD_LETTERED or CANCELLED
        """
        with job_log_context(job_id=str(job.id), job_type=job.type, worker_id=worker_id):
            try:
                spec = self.registry.resolve(job.type)
                payload = self.registry.validate(job.type, job.payload)
            except PermanentJobError as e:
                logger.error(f"Rejecting job: {e}")
                await self._report(
                    job,
                    "dead_lettered",
                    0.0,
                    self.queue.dead_letter(
                        job.id, worker_id, str(e), expected_state=JobState.LEASED
                    ),
                )
                return

            try:
                running = await self.queue.start(job.id, worker_id)
            except (LeaseConflictError, InvalidStateError) as e:
                logger.warning(f"Failed to start job - lease may have expired: {e}")
                return
            except StoreUnavailableError as e:
                logger.error(f"Job store unavailable while starting job: {e}")
                return

            self._active[worker_id] = job.id
            context = JobContext(
                job_id=job.id,
                job_type=job.type,
                attempt=running.attempts,
                max_attempts=running.max_attempts,
                payload=payload,
                lease_owner=worker_id,
                lease_expires_at=running.lease_expires_at,
                cancel_check=partial(self.queue.is_cancel_requested, job.id),
            )

            start_time = time.monotonic()
            try:
                with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                    span.set_attribute("job_id", str(job.id))
                    span.set_attribute("job_type", job.type)
                    span.set_attribute("attempt", context.attempt)
                    output = await self._invoke(spec.handler, context)
            except JobCancelledError as e:
                logger.info(f"Handler stopped on cancellation: {e}")
                await self._report(
                    job, "cancelled", time.monotonic() - start_time,
                    self.queue.mark_cancelled(job.id, worker_id),
                )
            except PermanentJobError as e:
                await self._report(
                    job, "dead_lettered", time.monotonic() - start_time,
                    self.queue.dead_letter(job.id, worker_id, str(e)),
                )
            except Exception as e:
                logger.warning(
                    "Handler raised exception",
                    extra={"attempt": context.attempt, "error": str(e)},
                    exc_info=True,
                )
                await self._report(
                    job, "failed", time.monotonic() - start_time,
                    self.queue.fail(job.id, worker_id, f"{type(e).__name__}: {e}"),
                )
            else:
                duration = time.monotonic() - start_time
                if isinstance(output, JobResult) and not output.success:
                    await self._report(
                        job, "failed", duration,
                        self.queue.fail(
                            job.id, worker_id, output.error or "Handler reported failure"
                        ),
                    )
                else:
                    result = output.output if isinstance(output, JobResult) else output
                    if result is not None and not isinstance(result, dict):
                        result = {"value": result}
                    try:
                        json.dumps(result)
                    except (TypeError, ValueError) as e:
                        # Retrying would produce the same result
                        await self._report(
                            job, "dead_lettered", duration,
                            self.queue.dead_letter(
                                job.id, worker_id, f"Handler result is not JSON serializable: {e}"
                            ),
                        )
                    else:
                        await self._report(
                            job, "completed", duration,
                            self.queue.complete(job.id, worker_id, result=result),
                        )
            finally:
                self._active.pop(worker_id, None)

    async def _invoke(self, handler: JobHandler, context: JobContext) -> Any:
        if inspect.iscoroutinefunction(handler):
            return await handler(context)
        output = await asyncio.to_thread(handler, context)
        if inspect.isawaitable(output):
            return await output
        return output

    async def _report(
        self,
        job: JobRecord,
        outcome: str,
        duration: float,
        transition: Any,
    ) -> JobRecord | None:
        """
        Await a state transition, absorbing lost races and store outages.

        A lost race means another actor (reaper, operator) already moved the
        job; the worker abandons it. A store outage leaves the job holding
        its lease until expiry, after which it is reclaimed.
        """
        try:
            updated = await transition
        except LeaseConflictError as e:
            logger.info(f"Lost lease before reporting, abandoning: {e}")
            self._metrics.record_job_finished(job.type, "conflict", duration)
            return None
        except StoreUnavailableError as e:
            logger.error(f"Job store unavailable while reporting outcome: {e}")
            return None

        if outcome == "failed":
            outcome = updated.state.value
        self._metrics.record_job_finished(job.type, outcome, duration)
        logger.info(
            "Job finished",
            extra={
                "state": updated.state.value,
                "attempts": updated.attempts,
                "duration": f"{duration:.3f}s",
            }
        )
        return updated

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend leases on running jobs.

        This prevents jobs from being reclaimed by the reaper
        while they're still being executed.
        """
        while self._running:
            try:
                await asyncio.sleep(self.heartbeat_interval)

                for worker_id, job_id in list(self._active.items()):
                    try:
                        await self.queue.extend_lease(job_id, worker_id, self.lease_ttl)
                        logger.debug(
                            "Extended lease",
                            extra={"job_id": str(job_id), "worker_id": worker_id}
                        )
                    except LeaseConflictError:
                        logger.warning(
                            "Lease lost during execution",
                            extra={"job_id": str(job_id), "worker_id": worker_id}
                        )

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in heartbeat loop: {e}")
