"""
Redis pub/sub broker.

Relays execution events between API processes so that a stream subscriber
connected to one process sees events produced by a controller running in
another. Uses redis-py with async support.
"""

import json
import logging
from typing import Any, AsyncIterator

import redis.asyncio as redis

from src.core.config.loader import get_config
from src.core.storage.base import BasePubSub, PubSubConfig
from src.core.storage.exceptions import ConfigurationError, ConnectionError

logger = logging.getLogger(__name__)


class RedisPubSub(BasePubSub):
    """
    Redis pub/sub implementation.

    Usage:
        broker = RedisPubSub(config)
        await broker.connect()

        await broker.publish({"id": 1, "type": "job.started"})

        async for message in broker.listen():
            handle(message)

        await broker.disconnect()
    """

    def __init__(self, config: PubSubConfig):
        """Initialize broker with configuration."""
        super().__init__(config)
        self._client: redis.Redis | None = None

    async def connect(self) -> None:
        """Establish connection to Redis."""
        if self._client is not None:
            return

        try:
            self._client = redis.Redis(
                host=self.config.host,
                port=self.config.port,
                db=self.config.db,
                password=self.config.password if self.config.password else None,
                max_connections=self.config.max_connections,
                decode_responses=True,
            )
            await self._client.ping()
            logger.info(f"Connected to Redis at {self.config.host}:{self.config.port}")
        except Exception as e:
            self._client = None
            raise ConnectionError(f"Failed to connect to Redis: {e}") from e

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Disconnected from Redis")

    async def health_check(self) -> bool:
        """Check if Redis is reachable."""
        if self._client is None:
            return False

        try:
            await self._client.ping()
            return True
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    def _get_client(self) -> redis.Redis:
        """Get Redis client, raising if not connected."""
        if self._client is None:
            raise ConnectionError("Pub/sub not connected. Call connect() first.")
        return self._client

    async def publish(self, message: dict[str, Any]) -> int:
        """Publish a message. Returns the number of receiving clients."""
        client = self._get_client()
        return await client.publish(self.config.channel, json.dumps(message))

    async def listen(self) -> AsyncIterator[dict[str, Any]]:
        """Subscribe to the channel and yield decoded messages until cancelled."""
        client = self._get_client()
        pubsub = client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(self.config.channel)
        logger.info(f"Subscribed to Redis channel {self.config.channel}")
        try:
            async for raw in pubsub.listen():
                if raw.get("type") != "message":
                    continue
                try:
                    yield json.loads(raw["data"])
                except json.JSONDecodeError:
                    logger.warning(f"Dropping undecodable message on {self.config.channel}")
        finally:
            await pubsub.unsubscribe(self.config.channel)
            await pubsub.aclose()


def _load_config() -> PubSubConfig:
    """Load broker configuration from config files."""
    config = get_config()
    redis_config = config.get("redis", {})

    if not redis_config:
        raise ConfigurationError("Redis configuration not found")

    return PubSubConfig.from_mapping(redis_config)


# Global broker instance
_pubsub_instance: RedisPubSub | None = None


async def get_pubsub() -> RedisPubSub:
    """
    Get the global broker instance.

    Creates and connects the instance on first call.
    """
    global _pubsub_instance

    if _pubsub_instance is None:
        config = _load_config()
        _pubsub_instance = RedisPubSub(config)
        await _pubsub_instance.connect()

    return _pubsub_instance


async def close_pubsub() -> None:
    """Close the global broker instance."""
    global _pubsub_instance

    if _pubsub_instance is not None:
        await _pubsub_instance.disconnect()
        _pubsub_instance = None
