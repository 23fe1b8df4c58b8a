"""
Redis access for shared counters.
"""

from .redis_client import get_redis_client, close_redis_client, RedisClient

__all__ = [
    "get_redis_client",
    "close_redis_client",
    "RedisClient",
]
