"""Redis client wrapper for the gatekeeper.

This module provides a centralized Redis client with:
- Configuration from REDIS_PRIMARY_ENDPOINT environment variable
- Connection management and health checks

Only the Redis-backed merge tracking store uses it.
"""

import redis.asyncio as redis

from src.utils.config import get_redis_endpoint
from src.utils.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """Centralized Redis client manager."""

    def __init__(self):
        self._client: redis.Redis | None = None
        self._connection_url: str | None = None

    @property
    def connection_url(self) -> str:
        """Get Redis connection URL from environment."""
        if not self._connection_url:
            endpoint = get_redis_endpoint()
            # Add redis:// prefix if not present
            if not endpoint.startswith(("redis://", "rediss://", "unix://")):
                endpoint = f"redis://{endpoint}"
            self._connection_url = endpoint
        return self._connection_url

    async def _get_client(self) -> redis.Redis:
        if not self._client:
            self._client = redis.from_url(
                self.connection_url,
                decode_responses=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                retry_on_timeout=True,
                health_check_interval=30,
            )
        return self._client

    async def ping(self) -> bool:
        try:
            client = await self._get_client()
            result = await client.ping()
            logger.debug("Redis ping successful", result=result)
            return bool(result)
        except redis.RedisError as e:
            logger.warning("Redis ping failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


_redis_client = RedisClient()


async def ping() -> bool:
    """Ping Redis server for health checks."""
    return await _redis_client.ping()


async def get_client() -> redis.Redis:
    """Get the shared Redis client instance."""
    return await _redis_client._get_client()


async def close() -> None:
    """Close Redis connection."""
    await _redis_client.close()
