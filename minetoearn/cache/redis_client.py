"""
Redis client configuration and connection management.
"""

from typing import Optional
import redis.asyncio as redis
from redis.asyncio import Redis

from minetoearn.core.config import settings
from minetoearn.core.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """Async Redis client wrapper with connection management."""

    def __init__(self, url: Optional[str] = None, prefix: Optional[str] = None):
        self.url = url or settings.redis_url
        self.prefix = settings.redis_prefix if prefix is None else prefix
        self._client: Optional[Redis] = None
        self._pool: Optional[redis.ConnectionPool] = None

    async def connect(self) -> None:
        """Establish Redis connection."""
        try:
            if self._client is None:
                self._pool = redis.ConnectionPool.from_url(
                    self.url,
                    decode_responses=True,
                    max_connections=20,
                    retry_on_timeout=True,
                )
                self._client = Redis(connection_pool=self._pool)

                await self._client.ping()
                logger.info("Redis connection established", url=self.url)

        except Exception as e:
            logger.error("Failed to connect to Redis", url=self.url, error=str(e))
            raise

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Redis connection closed")

    @property
    def client(self) -> Redis:
        """Get Redis client instance."""
        if self._client is None:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    def key(self, *parts: str) -> str:
        return self.prefix + ":".join(parts)

    async def incr_window(self, key: str, window_seconds: int) -> Optional[int]:
        """
        Increment a fixed-window counter, starting its TTL on first hit.

        Returns None when Redis is unavailable.
        """
        try:
            count = await self.client.incr(key)
            if count == 1:
                await self.client.expire(key, window_seconds)
            return int(count)
        except Exception as e:
            logger.error("Redis INCR failed", key=key, error=str(e))
            return None


# Global Redis client instance
_redis_client: Optional[RedisClient] = None


async def get_redis_client() -> RedisClient:
    """Get connected global Redis client."""
    global _redis_client

    if _redis_client is None:
        client = RedisClient()
        await client.connect()
        _redis_client = client

    return _redis_client


async def close_redis_client() -> None:
    global _redis_client

    if _redis_client is not None:
        await _redis_client.disconnect()
        _redis_client = None
