"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, nullcontext
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from jobrunner.config import Settings, get_settings
from jobrunner.db.models import Base

logger = logging.getLogger(__name__)


def _enable_sqlite_wal(dbapi_connection: Any, connection_record: Any) -> None:
    """Enable WAL mode and a busy timeout for better concurrent access."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


class Database:
    """
    Owns the async engine and session factory.

    Constructed explicitly and passed to whatever needs it; nothing is
    created at import time. Call init() before use and close() on shutdown.

    SQLite allows a single writer, so sessions against it are serialized
    with an in-process lock. PostgreSQL sessions run concurrently.
    """

    def __init__(self, url: str | None = None, settings: Settings | None = None):
        self._settings = settings or get_settings()
        self.url = url or self._settings.database_url
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._sqlite_lock: asyncio.Lock | None = None

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    async def init(self) -> None:
        """
        Create the engine and session factory.
        Should be called on application startup.
        """
        if self._engine is not None:
            return

        if self.is_sqlite:
            self._engine = create_async_engine(self.url, poolclass=NullPool)
            event.listen(self._engine.sync_engine, "connect", _enable_sqlite_wal)
            self._sqlite_lock = asyncio.Lock()
        else:
            self._engine = create_async_engine(
                self.url,
                pool_size=self._settings.database_pool_size,
                max_overflow=self._settings.database_max_overflow,
                echo=self._settings.log_level == "DEBUG",
                pool_pre_ping=True,
            )

        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("Database connection initialized", extra={"dialect": self._engine.dialect.name})

    async def create_all(self) -> None:
        """Create tables directly from the models (tests and SQLite deployments)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        """
        Dispose of the engine.
        Should be called on application shutdown.
        """
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connection closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """
        Context manager for a transactional session.

        Commits on clean exit, rolls back on error.

        Yields:
            AsyncSession: An async database session.
        """
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call init() first.")

        guard = self._sqlite_lock if self._sqlite_lock is not None else nullcontext()
        async with guard:
            async with self._session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
