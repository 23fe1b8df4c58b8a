"""
Per-player rate limiting for game actions and cashout requests.
"""

import time
from typing import Callable, Dict, Optional, Tuple

from minetoearn.cache.redis_client import RedisClient, get_redis_client
from minetoearn.core.config import settings
from minetoearn.core.exceptions import RateLimitError
from minetoearn.core.logging import get_logger


logger = get_logger(__name__)


class RateLimiter:
    """Fixed-window limiter interface."""

    async def count(self, key: str, window_seconds: int) -> Optional[int]:
        raise NotImplementedError

    async def check(self, player_id: str, scope: str, limit: int, window_seconds: int) -> None:
        """Record one hit and raise RateLimitError when over ``limit``."""
        if not settings.rate_limit_enabled or limit <= 0:
            return

        hits = await self.count(f"{scope}:{player_id}", window_seconds)
        if hits is None:
            # Counter store unavailable, let the request through
            return
        if hits > limit:
            logger.warning(
                "Rate limit exceeded",
                player_id=player_id,
                scope=scope,
                hits=hits,
                limit=limit
            )
            raise RateLimitError(
                f"Too many {scope} requests, try again shortly",
                {"scope": scope, "limit": limit, "window_seconds": window_seconds}
            )


class RedisRateLimiter(RateLimiter):
    """Counters shared by every API worker through Redis."""

    def __init__(self, redis_client: RedisClient):
        self.redis = redis_client

    async def count(self, key: str, window_seconds: int) -> Optional[int]:
        return await self.redis.incr_window(self.redis.key("ratelimit", key), window_seconds)


class InMemoryRateLimiter(RateLimiter):
    """Process-local counters for single-worker development and tests."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        # key -> (window start, hits, window length)
        self._windows: Dict[str, Tuple[float, int, int]] = {}

    def _prune(self, now: float) -> None:
        expired = [key for key, (started, _, length) in self._windows.items() if now - started >= length]
        for key in expired:
            del self._windows[key]

    async def count(self, key: str, window_seconds: int) -> Optional[int]:
        now = self.clock()
        self._prune(now)
        started, hits, _ = self._windows.get(key, (now, 0, window_seconds))
        hits += 1
        self._windows[key] = (started, hits, window_seconds)
        return hits


_rate_limiter: Optional[RateLimiter] = None


async def get_rate_limiter() -> RateLimiter:
    """Get the global rate limiter for the configured backend."""
    global _rate_limiter

    if _rate_limiter is None:
        if settings.rate_limit_backend == "redis":
            try:
                _rate_limiter = RedisRateLimiter(await get_redis_client())
            except Exception as e:
                logger.error(
                    "Redis unavailable, using process-local rate limits",
                    error=str(e)
                )
                _rate_limiter = InMemoryRateLimiter()
        else:
            _rate_limiter = InMemoryRateLimiter()
        logger.info("Rate limiter initialized", backend=settings.rate_limit_backend)

    return _rate_limiter
