"""
Relational store implementation.

Holds batches, jobs, job sessions, executions, the event log and metrics
snapshots. PostgreSQL (asyncpg) is the production backend; tests and local
runs point ``postgres.url`` at ``sqlite+aiosqlite`` instead.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from src.core.config.loader import get_config
from src.core.storage.base import BaseDatabase, DatabaseConfig
from src.core.storage.exceptions import ConfigurationError, ConnectionError

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for the orchestration tables."""

    pass


class Database(BaseDatabase):
    """
    Async database wrapper shared by the API, the controllers and workers.

    Every state change the orchestrator makes (claiming a job, recording a
    result, moving counters) runs inside one ``session()`` block, which is
    one transaction.

    Usage:
        db = Database(config)
        await db.connect()

        async with db.session() as session:
            execution = await session.get(Execution, execution_id)

        await db.disconnect()
    """

    def __init__(self, config: DatabaseConfig):
        super().__init__(config)
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    def _build_url(self) -> str:
        return self.config.sqlalchemy_url()

    @property
    def is_sqlite(self) -> bool:
        return self.config.is_sqlite

    def _engine_options(self) -> dict[str, Any]:
        if self.is_sqlite:
            # One connection per session; concurrent writers wait on the file lock
            return {
                "poolclass": NullPool,
                "connect_args": {"timeout": self.config.busy_timeout_seconds},
            }
        return {
            "pool_size": self.config.pool_size,
            "max_overflow": self.config.pool_max_overflow,
            "pool_recycle": self.config.pool_recycle_seconds,
            "pool_pre_ping": True,
            "connect_args": {
                "server_settings": {"application_name": self.config.application_name}
            },
        }

    async def connect(self) -> None:
        """Create the engine and session factory. Idempotent."""
        if self._engine is not None:
            return

        try:
            self._engine = create_async_engine(
                self._build_url(), echo=self.config.echo, **self._engine_options()
            )
            self._session_factory = async_sessionmaker(
                self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
            logger.info(f"Connected to database at {self._engine.url.render_as_string()}")
        except Exception as e:
            self._engine = None
            raise ConnectionError(f"Failed to connect to database: {e}") from e

    async def disconnect(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Disconnected from database")

    async def health_check(self) -> bool:
        """Readiness probe: run ``SELECT 1``."""
        if self._engine is None:
            return False

        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            return False

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Provide a transactional session scope.

        Commits on normal exit, rolls back if the block raises. Objects stay
        readable after commit so results can be returned to callers.
        """
        if self._session_factory is None:
            raise ConnectionError("Database not connected. Call connect() first.")

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_tables(self) -> None:
        """Create missing tables. Production schemas come from Alembic."""
        if self._engine is None:
            raise ConnectionError("Database not connected. Call connect() first.")

        # Register every model with Base.metadata
        from src.core import models  # noqa: F401

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Ensured {len(Base.metadata.tables)} orchestration tables")

    async def drop_tables(self) -> None:
        """Drop every orchestration table."""
        if self._engine is None:
            raise ConnectionError("Database not connected. Call connect() first.")

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        logger.info("Database tables dropped")


def _load_config() -> DatabaseConfig:
    """Read the ``postgres`` section of the merged config."""
    postgres_config = get_config().get("postgres", {})
    if not postgres_config:
        raise ConfigurationError("Database configuration not found")
    return DatabaseConfig.from_mapping(postgres_config)


# Global database instance
_db_instance: Database | None = None


async def get_db() -> Database:
    """
    Get the global database instance.

    Creates and connects the instance on first call.
    Subsequent calls return the same instance.
    """
    global _db_instance

    if _db_instance is None:
        _db_instance = Database(_load_config())
        await _db_instance.connect()

    return _db_instance


async def close_db() -> None:
    """Close the global database instance."""
    global _db_instance

    if _db_instance is not None:
        await _db_instance.disconnect()
        _db_instance = None
