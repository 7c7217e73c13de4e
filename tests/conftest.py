"""
Pytest configuration and shared fixtures.
"""

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from jobrunner.clock import utcnow
from jobrunner.config import Settings
from jobrunner.db.connection import Database
from jobrunner.observability.metrics import MetricsCollector
from jobrunner.queue.backoff import BackoffPolicy
from jobrunner.queue.service import JobQueue
from jobrunner.store.base import JobStore
from jobrunner.store.memory import InMemoryJobStore
from jobrunner.store.sql import SqlJobStore
from jobrunner.worker.handlers import register_builtin_handlers
from jobrunner.worker.registry import HandlerRegistry


class FakeClock:
    """Controllable naive-UTC clock for queue tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """
    SQLite file database for tests.

    A file rather than :memory: because every store call opens its own
    connection.
    """
    return f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}"


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=database_url,
        log_level="DEBUG",
        log_format="console",
        worker_concurrency=2,
        worker_lease_ttl_seconds=5,
        worker_poll_interval_seconds=0.05,
        worker_heartbeat_interval_seconds=0,
        reaper_interval_seconds=0,
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.05,
        backoff_jitter=0,
    )


@pytest_asyncio.fixture
async def database(database_url: str, test_settings: Settings) -> AsyncGenerator[Database]:
    """Initialized SQLite database with the schema created."""
    db = Database(database_url, settings=test_settings)
    await db.init()
    await db.create_all()

    yield db

    await db.close()


@pytest.fixture
def sql_store(database: Database) -> SqlJobStore:
    return SqlJobStore(database)


@pytest.fixture
def memory_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture(params=["sql", "memory"])
def store(request: pytest.FixtureRequest) -> JobStore:
    """Run the test against both store implementations."""
    if request.param == "sql":
        return request.getfixturevalue("sql_store")
    return request.getfixturevalue("memory_store")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def prometheus_registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def metrics(prometheus_registry: CollectorRegistry) -> MetricsCollector:
    """Metrics collector on a private registry so tests don't share counters."""
    return MetricsCollector(registry=prometheus_registry)


@pytest.fixture
def queue(store: JobStore, clock: FakeClock, metrics: MetricsCollector) -> JobQueue:
    """Queue with a fake clock and no backoff jitter."""
    return JobQueue(
        store,
        backoff=BackoffPolicy(base_seconds=1.0, max_seconds=60.0, jitter=0),
        default_max_attempts=3,
        reclaim_on_lease=False,
        clock=clock,
        metrics=metrics,
    )


@pytest.fixture
def registry() -> HandlerRegistry:
    """Registry with the built-in handlers."""
    return register_builtin_handlers(HandlerRegistry())


@pytest.fixture
def idempotency_key() -> str:
    """Generate a unique idempotency key."""
    return f"test-{uuid4().hex}"


@pytest.fixture
def sample_payload() -> dict[str, Any]:
    """Create a sample job payload."""
    return {"email": "a@x.com", "subject": "Hello"}
