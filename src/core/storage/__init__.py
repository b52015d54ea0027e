"""
Storage module.

Provides unified access to the storage backends:
- Relational store (PostgreSQL via asyncpg) for batches, jobs, executions
  and the event log
- Redis pub/sub for cross-process event fan-out

Usage:
    from src.core.storage import get_db

    db = await get_db()
    async with db.session() as session:
        result = await session.execute(query)
"""

from src.core.storage.base import (
    BaseDatabase,
    BasePubSub,
    DatabaseConfig,
    PubSubConfig,
)
from src.core.storage.exceptions import (
    ConfigurationError,
    ConnectionError,
    NotFoundError,
    StorageError,
)
from src.core.storage.postgres import (
    Base,
    Database,
    close_db,
    get_db,
)
from src.core.storage.redis_pubsub import (
    RedisPubSub,
    close_pubsub,
    get_pubsub,
)

__all__ = [
    "BaseDatabase",
    "BasePubSub",
    "DatabaseConfig",
    "PubSubConfig",
    "StorageError",
    "ConnectionError",
    "NotFoundError",
    "ConfigurationError",
    "Database",
    "Base",
    "get_db",
    "close_db",
    "RedisPubSub",
    "get_pubsub",
    "close_pubsub",
]
