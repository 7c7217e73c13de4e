"""
Integration tests for the job queue state machine.

Every test runs against both the SQLite-backed store and the in-memory store.
"""

import asyncio
from uuid import uuid4

import pytest

from jobrunner.constants import JobPriority, JobState
from jobrunner.exceptions import InvalidStateError, JobNotFoundError, LeaseConflictError
from jobrunner.queue.service import JobQueue


async def lease_and_start(queue: JobQueue, worker_id: str = "worker-1"):
    leased = await queue.lease_next(worker_id, ttl=30)
    assert leased is not None
    return await queue.start(leased.id, worker_id)


class TestEnqueue:
    """Submission and lookup."""

    async def test_enqueue_then_get_round_trip(self, queue: JobQueue, sample_payload):
        """A fresh job is pending with the submitted payload."""
        job = await queue.enqueue("send-email", sample_payload)

        fetched = await queue.get(job.id)

        assert fetched.state == JobState.PENDING
        assert fetched.payload == sample_payload
        assert fetched.attempts == 0
        assert fetched.max_attempts == 3
        assert fetched.last_error is None

    async def test_get_unknown_job(self, queue: JobQueue):
        with pytest.raises(JobNotFoundError):
            await queue.get(uuid4())

    async def test_idempotent_enqueue(self, queue: JobQueue, idempotency_key: str):
        """Reusing an idempotency key returns the original job."""
        first = await queue.enqueue("echo", {"n": 1}, idempotency_key=idempotency_key)
        second = await queue.enqueue("echo", {"n": 2}, idempotency_key=idempotency_key)

        assert second.id == first.id
        assert second.payload == {"n": 1}
        _, total = await queue.list_jobs()
        assert total == 1

    async def test_invalid_max_attempts(self, queue: JobQueue):
        with pytest.raises(ValueError):
            await queue.enqueue("echo", {}, max_attempts=0)

    async def test_delayed_job_not_leasable_early(self, queue: JobQueue, clock):
        await queue.enqueue("echo", {}, delay=10)

        assert await queue.lease_next("worker-1", ttl=30) is None

        clock.advance(10)
        assert await queue.lease_next("worker-1", ttl=30) is not None


class TestLeasing:
    """Ordering and mutual exclusion of leases."""

    async def test_fifo_within_priority(self, queue: JobQueue):
        ids = [(await queue.enqueue("echo", {"n": n})).id for n in range(3)]

        leased = [await queue.lease_next("worker-1", ttl=30) for _ in range(3)]

        assert [job.id for job in leased] == ids
        assert await queue.lease_next("worker-1", ttl=30) is None

    async def test_higher_priority_first(self, queue: JobQueue):
        low = await queue.enqueue("echo", {}, priority=JobPriority.LOW)
        normal = await queue.enqueue("echo", {})
        high = await queue.enqueue("echo", {}, priority=JobPriority.HIGH)
        high_later = await queue.enqueue("echo", {}, priority=JobPriority.HIGH)

        order = [(await queue.lease_next("w", ttl=30)).id for _ in range(4)]

        assert order == [high.id, high_later.id, normal.id, low.id]

    async def test_lease_records_owner_and_expiry(self, queue: JobQueue, clock):
        await queue.enqueue("echo", {})

        leased = await queue.lease_next("worker-1", ttl=30)

        assert leased.state == JobState.LEASED
        assert leased.lease_owner == "worker-1"
        assert (leased.lease_expires_at - clock.now).total_seconds() == 30
        assert leased.attempts == 0

    async def test_concurrent_lease_single_winner(self, queue: JobQueue):
        """Two workers racing on a queue of depth 1: exactly one wins."""
        job = await queue.enqueue("echo", {})

        results = await asyncio.gather(
            queue.lease_next("worker-a", ttl=30),
            queue.lease_next("worker-b", ttl=30),
        )

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert winners[0].id == job.id
        stored = await queue.get(job.id)
        assert stored.lease_owner == winners[0].lease_owner

    async def test_many_workers_never_share_a_job(self, queue: JobQueue):
        for n in range(5):
            await queue.enqueue("echo", {"n": n})

        results = await asyncio.gather(
            *(queue.lease_next(f"worker-{i}", ttl=30) for i in range(8))
        )

        leased_ids = [r.id for r in results if r is not None]
        assert len(leased_ids) == 5
        assert len(set(leased_ids)) == 5


class TestExecution:
    """start / complete / fail / requeue."""

    async def test_start_consumes_attempt(self, queue: JobQueue):
        await queue.enqueue("echo", {})

        running = await lease_and_start(queue)

        assert running.state == JobState.RUNNING
        assert running.attempts == 1

    async def test_start_by_wrong_worker(self, queue: JobQueue):
        await queue.enqueue("echo", {})
        leased = await queue.lease_next("worker-1", ttl=30)

        with pytest.raises(LeaseConflictError):
            await queue.start(leased.id, "worker-2")

    async def test_complete(self, queue: JobQueue):
        await queue.enqueue("echo", {})
        running = await lease_and_start(queue)

        done = await queue.complete(running.id, "worker-1", result={"ok": True})

        assert done.state == JobState.COMPLETED
        assert done.result == {"ok": True}
        assert done.completed_at is not None
        assert done.lease_owner is None

    async def test_fail_schedules_retry_with_backoff(self, queue: JobQueue, clock):
        """A failure with budget left goes to retrying, then pending after the backoff."""
        job = await queue.enqueue("echo", {})
        await lease_and_start(queue)

        retrying = await queue.fail(job.id, "worker-1", "boom")

        assert retrying.state == JobState.RETRYING
        assert retrying.last_error == "boom"
        assert retrying.lease_owner is None
        # base 1s * 2**attempts(1), no jitter
        assert (retrying.available_at - clock.now).total_seconds() == 2

        clock.advance(1)
        assert await queue.promote_due_retries() == 0
        assert await queue.lease_next("worker-1", ttl=30) is None

        clock.advance(1.5)
        leased = await queue.lease_next("worker-1", ttl=30)
        assert leased is not None and leased.id == job.id

    async def test_fail_wins_over_concurrent_heartbeat(
        self, queue: JobQueue, monkeypatch: pytest.MonkeyPatch
    ):
        """A lease extension landing between fail()'s read and write does not block it."""
        job = await queue.enqueue("echo", {})
        await lease_and_start(queue)

        real_get = queue.store.get
        heartbeats = 0

        async def get_then_heartbeat(job_id):
            nonlocal heartbeats
            record = await real_get(job_id)
            if heartbeats == 0:
                heartbeats += 1
                await queue.extend_lease(job_id, "worker-1", ttl=30)
            return record

        monkeypatch.setattr(queue.store, "get", get_then_heartbeat)

        retrying = await queue.fail(job.id, "worker-1", "boom")

        assert heartbeats == 1
        assert retrying.state == JobState.RETRYING
        assert retrying.last_error == "boom"
        assert retrying.reclaim_count == 0

    async def test_success_after_failure_clears_last_error(self, queue: JobQueue, clock):
        job = await queue.enqueue("echo", {})
        await lease_and_start(queue)
        await queue.fail(job.id, "worker-1", "boom")
        clock.advance(60)

        await lease_and_start(queue)
        done = await queue.complete(job.id, "worker-1", result={"ok": True})

        assert done.state == JobState.COMPLETED
        assert done.last_error is None
        assert done.result == {"ok": True}

    async def test_attempts_ceiling_dead_letters(self, queue: JobQueue, clock):
        """attempts never exceed max_attempts; the last failure dead-letters."""
        job = await queue.enqueue("echo", {}, max_attempts=3)

        for attempt in range(1, 4):
            running = await lease_and_start(queue)
            assert running.attempts == attempt
            failed = await queue.fail(job.id, "worker-1", f"failure {attempt}")
            clock.advance(3600)

        assert failed.state == JobState.DEAD_LETTERED
        assert failed.attempts == 3
        assert failed.last_error == "failure 3"
        assert await queue.lease_next("worker-1", ttl=30) is None
        # failures never pass through a stored FAILED state
        assert JobState.FAILED.value not in await queue.store.count_by_state()

    async def test_requeue_with_explicit_delay(self, queue: JobQueue, clock):
        job = await queue.enqueue("echo", {})
        await lease_and_start(queue)

        retrying = await queue.requeue(job.id, "worker-1", delay=5)

        assert retrying.state == JobState.RETRYING
        assert (retrying.available_at - clock.now).total_seconds() == 5

    async def test_dead_letter_from_leased_keeps_attempts(self, queue: JobQueue):
        """Permanent failures before start do not consume an attempt."""
        job = await queue.enqueue("unknown", {})
        await queue.lease_next("worker-1", ttl=30)

        dead = await queue.dead_letter(
            job.id, "worker-1", "no handler", expected_state=JobState.LEASED
        )

        assert dead.state == JobState.DEAD_LETTERED
        assert dead.attempts == 0
        assert dead.last_error == "no handler"


class TestReclaim:
    """Lease expiry and heartbeats."""

    async def test_expired_lease_reclaimed_exactly_once(self, queue: JobQueue, clock):
        job = await queue.enqueue("echo", {})
        await lease_and_start(queue)
        clock.advance(31)

        first, second = await asyncio.gather(
            queue.reclaim_expired(), queue.reclaim_expired()
        )
        again = await queue.reclaim_expired()

        assert first + second == 1
        assert again == 0
        reclaimed = await queue.get(job.id)
        assert reclaimed.state == JobState.PENDING
        assert reclaimed.reclaim_count == 1
        assert reclaimed.attempts == 1
        assert reclaimed.lease_owner is None

    async def test_live_lease_not_reclaimed(self, queue: JobQueue, clock):
        await queue.enqueue("echo", {})
        await queue.lease_next("worker-1", ttl=30)
        clock.advance(29)

        assert await queue.reclaim_expired() == 0

    async def test_stale_worker_cannot_report(self, queue: JobQueue, clock):
        """A worker whose lease was reclaimed loses every later transition."""
        job = await queue.enqueue("echo", {})
        await lease_and_start(queue, "worker-1")
        clock.advance(31)
        await queue.reclaim_expired()
        await lease_and_start(queue, "worker-2")

        with pytest.raises(LeaseConflictError):
            await queue.complete(job.id, "worker-1")
        with pytest.raises(LeaseConflictError):
            await queue.fail(job.id, "worker-1", "late")

        done = await queue.complete(job.id, "worker-2")
        assert done.state == JobState.COMPLETED
        assert done.attempts == 2

    async def test_expired_final_attempt_dead_letters(self, queue: JobQueue, clock):
        job = await queue.enqueue("echo", {}, max_attempts=1)
        await lease_and_start(queue)
        clock.advance(31)

        assert await queue.reclaim_expired() == 1

        dead = await queue.get(job.id)
        assert dead.state == JobState.DEAD_LETTERED
        assert dead.attempts == 1
        assert "Lease expired" in dead.last_error

    async def test_reclaim_on_lease(self, store, clock, metrics):
        """With reclaim_on_lease, a lease attempt recovers expired jobs first."""
        queue = JobQueue(store, clock=clock, metrics=metrics, reclaim_on_lease=True)
        job = await queue.enqueue("echo", {})
        await queue.lease_next("worker-1", ttl=1)
        clock.advance(2)

        leased = await queue.lease_next("worker-2", ttl=30)

        assert leased is not None
        assert leased.id == job.id
        assert leased.lease_owner == "worker-2"
        assert leased.reclaim_count == 1

    async def test_extend_lease(self, queue: JobQueue, clock):
        job = await queue.enqueue("echo", {})
        await lease_and_start(queue)
        clock.advance(20)

        extended = await queue.extend_lease(job.id, "worker-1", ttl=30)
        clock.advance(20)

        assert (extended.lease_expires_at - clock.now).total_seconds() == 10
        assert await queue.reclaim_expired() == 0
        with pytest.raises(LeaseConflictError):
            await queue.extend_lease(job.id, "worker-2", ttl=30)


class TestOperatorActions:
    """Cancellation, dead-letter retry and stats."""

    async def test_cancel_pending(self, queue: JobQueue):
        job = await queue.enqueue("echo", {})

        cancelled = await queue.cancel(job.id)

        assert cancelled.state == JobState.CANCELLED
        assert await queue.lease_next("worker-1", ttl=30) is None

    async def test_cancel_running_sets_flag(self, queue: JobQueue):
        job = await queue.enqueue("echo", {})
        await lease_and_start(queue)

        flagged = await queue.cancel(job.id)

        assert flagged.state == JobState.RUNNING
        assert flagged.cancel_requested is True
        assert await queue.is_cancel_requested(job.id) is True

        cancelled = await queue.mark_cancelled(job.id, "worker-1")
        assert cancelled.state == JobState.CANCELLED

    async def test_cancel_terminal_job_rejected(self, queue: JobQueue):
        job = await queue.enqueue("echo", {})
        await lease_and_start(queue)
        await queue.complete(job.id, "worker-1")

        with pytest.raises(InvalidStateError):
            await queue.cancel(job.id)

    async def test_cancel_requested_job_cancelled_on_expiry(
        self, queue: JobQueue, clock
    ):
        job = await queue.enqueue("echo", {})
        await lease_and_start(queue)
        await queue.cancel(job.id)
        clock.advance(31)

        await queue.reclaim_expired()

        assert (await queue.get(job.id)).state == JobState.CANCELLED

    async def test_retry_dead_lettered(self, queue: JobQueue):
        job = await queue.enqueue("echo", {}, max_attempts=1)
        await lease_and_start(queue)
        await queue.fail(job.id, "worker-1", "boom")

        with pytest.raises(InvalidStateError):
            await queue.retry_dead_lettered(job.id, reset_attempts=False)

        retried = await queue.retry_dead_lettered(job.id)

        assert retried.state == JobState.PENDING
        assert retried.attempts == 0
        assert retried.last_error is None
        assert await queue.lease_next("worker-1", ttl=30) is not None

    async def test_retry_requires_dead_letter(self, queue: JobQueue):
        job = await queue.enqueue("echo", {})

        with pytest.raises(InvalidStateError):
            await queue.retry_dead_lettered(job.id)

    async def test_stats(self, queue: JobQueue):
        done = await queue.enqueue("echo", {})
        await queue.enqueue("echo", {})
        await queue.enqueue("echo", {})
        await lease_and_start(queue)
        await queue.complete(done.id, "worker-1")
        await queue.lease_next("worker-2", ttl=30)

        stats = await queue.stats()

        assert stats.depth_by_state == {"completed": 1, "leased": 1, "pending": 1}
        assert stats.active_leases == 1
        assert stats.dead_lettered == 0
        assert stats.pending == 1
