"""
Unit tests for the job repository (SQLite).
"""

from datetime import timedelta
from typing import Any
from uuid import uuid4

from jobrunner.clock import next_sequence, utcnow
from jobrunner.constants import JobState
from jobrunner.db.connection import Database
from jobrunner.db.repository import JobRepository


def job_values(**overrides: Any) -> dict[str, Any]:
    now = utcnow()
    values: dict[str, Any] = {
        "id": uuid4(),
        "type": "echo",
        "payload": {"message": "test"},
        "state": JobState.PENDING,
        "priority": 0,
        "sequence": next_sequence(),
        "available_at": now,
        "max_attempts": 3,
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    return values


class TestJobRepository:
    """Tests for JobRepository."""

    async def test_insert_and_get(self, database: Database):
        """Test job insertion and lookup."""
        values = job_values(idempotency_key=f"test-{uuid4().hex}")

        async with database.session() as session:
            await JobRepository(session).insert_job(values)

        async with database.session() as session:
            repo = JobRepository(session)
            job = await repo.get_job(values["id"])
            by_key = await repo.get_job_by_idempotency_key(values["idempotency_key"])

        assert job is not None
        assert job.payload == {"message": "test"}
        assert job.state == JobState.PENDING
        assert job.attempts == 0
        assert job.version == 0
        assert by_key is not None and by_key.id == job.id

    async def test_get_missing_job(self, database: Database):
        async with database.session() as session:
            assert await JobRepository(session).get_job(uuid4()) is None

    async def test_compare_and_swap_success(self, database: Database):
        """A matching expectation updates the row and bumps the version."""
        values = job_values()
        async with database.session() as session:
            await JobRepository(session).insert_job(values)

        async with database.session() as session:
            updated = await JobRepository(session).compare_and_swap(
                values["id"],
                JobState.PENDING,
                {"state": JobState.LEASED, "lease_owner": "worker-1"},
                version=0,
            )

        assert updated is not None
        assert updated.state == JobState.LEASED
        assert updated.lease_owner == "worker-1"
        assert updated.version == 1

    async def test_compare_and_swap_conflicts(self, database: Database):
        """Wrong state, owner or version leaves the row untouched."""
        values = job_values(state=JobState.LEASED, lease_owner="worker-1")
        async with database.session() as session:
            await JobRepository(session).insert_job(values)

        async with database.session() as session:
            repo = JobRepository(session)
            wrong_state = await repo.compare_and_swap(
                values["id"], JobState.PENDING, {"state": JobState.RUNNING}
            )
            wrong_owner = await repo.compare_and_swap(
                values["id"], JobState.LEASED, {"state": JobState.RUNNING},
                lease_owner="worker-2",
            )
            wrong_version = await repo.compare_and_swap(
                values["id"], JobState.LEASED, {"state": JobState.RUNNING},
                version=5,
            )

        assert wrong_state is None
        assert wrong_owner is None
        assert wrong_version is None

        async with database.session() as session:
            job = await JobRepository(session).get_job(values["id"])
        assert job.state == JobState.LEASED
        assert job.version == 0

    async def test_find_ready_ordering(self, database: Database):
        """Higher priority first, then oldest first; future jobs excluded."""
        now = utcnow()
        low_old = job_values(priority=0)
        high = job_values(priority=10)
        low_new = job_values(priority=0)
        delayed = job_values(priority=100, available_at=now + timedelta(hours=1))
        running = job_values(priority=100, state=JobState.RUNNING)

        async with database.session() as session:
            repo = JobRepository(session)
            for values in (low_old, high, low_new, delayed, running):
                await repo.insert_job(values)

        async with database.session() as session:
            ready = await JobRepository(session).find_ready(now + timedelta(seconds=1), 10)

        assert [job.id for job in ready] == [high["id"], low_old["id"], low_new["id"]]

    async def test_find_expired_leases(self, database: Database):
        now = utcnow()
        expired = job_values(
            state=JobState.RUNNING,
            lease_owner="w",
            lease_expires_at=now - timedelta(seconds=1),
        )
        live = job_values(
            state=JobState.LEASED,
            lease_owner="w",
            lease_expires_at=now + timedelta(seconds=30),
        )
        async with database.session() as session:
            repo = JobRepository(session)
            await repo.insert_job(expired)
            await repo.insert_job(live)

        async with database.session() as session:
            found = await JobRepository(session).find_expired_leases(now)

        assert [job.id for job in found] == [expired["id"]]

    async def test_list_and_count(self, database: Database):
        async with database.session() as session:
            repo = JobRepository(session)
            await repo.insert_job(job_values(type="echo"))
            await repo.insert_job(job_values(type="echo", state=JobState.RUNNING))
            await repo.insert_job(job_values(type="sleep"))

        async with database.session() as session:
            repo = JobRepository(session)
            echo_jobs, echo_total = await repo.list_jobs(job_type="echo")
            pending_jobs, pending_total = await repo.list_jobs(state=JobState.PENDING, limit=1)
            counts = await repo.count_by_state()
            active = await repo.count_active_leases()

        assert echo_total == 2 and len(echo_jobs) == 2
        assert pending_total == 2 and len(pending_jobs) == 1
        assert counts == {"pending": 2, "running": 1}
        assert active == 1
