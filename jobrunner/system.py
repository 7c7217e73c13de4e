"""
Composition root.

Wires the store, queue, handler registry and producer together from
settings. Entry points (API, worker, reaper) each build one JobSystem,
call init() on startup and shutdown() on exit.
"""

import logging

from jobrunner.config import Settings, get_settings
from jobrunner.db.connection import Database
from jobrunner.observability.metrics import MetricsCollector, get_metrics
from jobrunner.producer import Producer
from jobrunner.queue.backoff import BackoffPolicy
from jobrunner.queue.service import JobQueue
from jobrunner.store.base import JobStore
from jobrunner.store.sql import SqlJobStore
from jobrunner.worker.handlers import register_builtin_handlers
from jobrunner.worker.registry import HandlerRegistry

logger = logging.getLogger(__name__)


class JobSystem:
    """
    Owns every long-lived component of a job runner process.

    Example:
        system = JobSystem(database_url="sqlite+aiosqlite:///jobs.db")
        await system.init()
        job_id = await system.producer.submit("send-email", {"email": "a@b.c"})
        ...
        await system.shutdown()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        database_url: str | None = None,
        store: JobStore | None = None,
        registry: HandlerRegistry | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Args:
            settings: Settings to build from. Defaults to the environment.
            database_url: Overrides settings.database_url.
            store: Use this store instead of a SQL one (no database is opened).
            registry: Handler registry. Defaults to one with the built-in handlers.
            metrics: Metrics collector. Defaults to the process-wide one.
        """
        self.settings = settings or get_settings()
        self.database: Database | None = None
        if store is None:
            self.database = Database(database_url, settings=self.settings)
            store = SqlJobStore(self.database)
        self.store = store

        self.registry = registry or register_builtin_handlers(HandlerRegistry())
        self.metrics = metrics or get_metrics()
        self.queue = JobQueue(
            self.store,
            backoff=BackoffPolicy.from_settings(self.settings),
            default_max_attempts=self.settings.default_max_attempts,
            reclaim_on_lease=self.settings.reclaim_on_lease,
            metrics=self.metrics,
        )
        self.producer = Producer(self.queue, self.registry)
        self._initialized = False

    async def init(self) -> None:
        """
        Open the database. SQLite databases get their schema created
        directly; PostgreSQL schemas are managed by Alembic migrations.
        """
        if self._initialized:
            return
        if self.database is not None:
            await self.database.init()
            if self.database.is_sqlite:
                await self.database.create_all()
        self._initialized = True
        logger.info(
            "Job system initialized",
            extra={"job_types": self.registry.list_types()}
        )

    async def shutdown(self) -> None:
        """Close the store and the database."""
        if not self._initialized:
            return
        await self.store.close()
        if self.database is not None:
            await self.database.close()
        self._initialized = False
        logger.info("Job system shut down")

    async def __aenter__(self) -> "JobSystem":
        await self.init()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()
