"""
Base interfaces for storage components.

All storage implementations must follow these interfaces.
This keeps the orchestrator independent of the concrete backend.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator


# =============================================================================
# Relational store
# =============================================================================


@dataclass
class DatabaseConfig:
    """
    Connection settings for the relational store that holds batches, jobs,
    executions and the event log.

    ``url`` overrides the assembled PostgreSQL URL when set, e.g.
    ``sqlite+aiosqlite:///./orchestrator.db`` for local runs and tests.
    """

    host: str = "localhost"
    port: int = 5432
    database: str = "orchestrator"
    user: str = "orchestrator"
    password: str = "orchestrator"
    pool_size: int = 5
    pool_max_overflow: int = 10
    # Controllers hold the engine for the life of the process
    pool_recycle_seconds: int = 1800
    # sqlite only: how long a writer waits for the file lock
    busy_timeout_seconds: float = 30.0
    application_name: str = "extraction-orchestrator"
    echo: bool = False
    url: str | None = None

    @classmethod
    def from_mapping(cls, values: dict[str, Any]) -> "DatabaseConfig":
        """Build from the ``postgres`` config section; blank values mean the default."""
        defaults = cls()
        return cls(
            host=values.get("host") or defaults.host,
            port=int(values.get("port") or defaults.port),
            database=values.get("database") or defaults.database,
            user=values.get("user") or defaults.user,
            password=values.get("password") or defaults.password,
            pool_size=int(values.get("pool_size") or defaults.pool_size),
            pool_max_overflow=int(values.get("pool_max_overflow") or defaults.pool_max_overflow),
            pool_recycle_seconds=int(
                values.get("pool_recycle_seconds") or defaults.pool_recycle_seconds
            ),
            busy_timeout_seconds=float(
                values.get("busy_timeout_seconds") or defaults.busy_timeout_seconds
            ),
            application_name=values.get("application_name") or defaults.application_name,
            echo=bool(values.get("echo", False)),
            url=values.get("url") or None,
        )

    def sqlalchemy_url(self) -> str:
        """Async driver URL: the explicit ``url`` or an asyncpg URL from the fields."""
        if self.url:
            return self.url
        return (
            f"postgresql+asyncpg://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )

    @property
    def is_sqlite(self) -> bool:
        return self.sqlalchemy_url().startswith("sqlite")


class BaseDatabase(ABC):
    """
    Abstract base class for the relational store.

    Usage:
        db = SomeDatabase(config)
        await db.connect()

        async with db.session() as session:
            result = await session.execute(query)

        await db.disconnect()
    """

    def __init__(self, config: DatabaseConfig):
        """Initialize with configuration."""
        self.config = config

    @abstractmethod
    async def connect(self) -> None:
        """Establish connection to the database."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close all database connections."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if database is reachable."""
        pass

    @abstractmethod
    def session(self) -> Any:
        """Return a transactional session context manager."""
        pass

    @abstractmethod
    async def create_tables(self) -> None:
        """Create any missing orchestration tables."""
        pass


# =============================================================================
# Pub/Sub broker
# =============================================================================


@dataclass
class PubSubConfig:
    """Configuration for the Redis pub/sub broker used for event fan-out."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: str = ""
    channel: str = "execution_events"
    max_connections: int = 10

    @classmethod
    def from_mapping(cls, values: dict[str, Any]) -> "PubSubConfig":
        """Build from the ``redis`` config section."""
        defaults = cls()
        return cls(
            host=values.get("host") or defaults.host,
            port=int(values.get("port") or defaults.port),
            db=int(values.get("db") or defaults.db),
            password=values.get("password") or "",
            channel=values.get("channel") or defaults.channel,
            max_connections=int(values.get("max_connections") or defaults.max_connections),
        )


class BasePubSub(ABC):
    """
    Abstract base class for a publish/subscribe broker.

    Usage:
        broker = SomePubSub(config)
        await broker.connect()

        await broker.publish({"type": "job.completed"})
        async for message in broker.listen():
            ...

        await broker.disconnect()
    """

    def __init__(self, config: PubSubConfig):
        """Initialize with configuration."""
        self.config = config

    @abstractmethod
    async def connect(self) -> None:
        """Establish connection to the broker."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the broker connection."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the broker is reachable."""
        pass

    @abstractmethod
    async def publish(self, message: dict[str, Any]) -> int:
        """Publish a JSON message on the configured channel."""
        pass

    @abstractmethod
    def listen(self) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded messages received on the configured channel."""
        pass
