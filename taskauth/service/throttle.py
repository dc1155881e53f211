from __future__ import annotations

import asyncio
import math
import time
from typing import Dict, Optional, Tuple

from redis.exceptions import RedisError

from taskauth.logging import get_logger
from taskauth.service.errors import RateLimitedError
from taskauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def throttle_key(route: str, ip: str) -> str:
    return f"{route}:{ip}"


class LoginThrottle:
    """Fixed-window attempt counter keyed by source address and route.

    Counters live in Redis when a cache is configured, so every instance
    shares them. Without Redis, or while Redis is failing, a process-local map
    is used instead; it only protects a single instance.
    """

    def __init__(self, cache: Optional[RedisCache] = None) -> None:
        self.cache = cache
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    async def hit(self, key: str, limit: int, window_seconds: int) -> int:
        """Count one attempt; raise ``RateLimitedError`` once ``limit`` is exceeded."""
        count, remaining = await self._count(key, window_seconds)
        if count > limit:
            retry_after = max(1, math.ceil(remaining))
            logger.warning(
                "throttle_limit_exceeded",
                key=key,
                count=count,
                limit=limit,
                retry_after=retry_after,
            )
            raise RateLimitedError(
                "Too many attempts, please try again later", retry_after=retry_after
            )
        return count

    async def _count(self, key: str, window_seconds: int) -> Tuple[int, float]:
        if self.cache is not None:
            try:
                count, ttl_ms = await self.cache.hit_window(key, window_seconds * 1000)
                return count, ttl_ms / 1000.0
            except RedisError as exc:
                logger.warning(
                    "throttle_cache_unavailable", key=key, error=str(exc), fallback="local"
                )
        return await self._count_local(key, window_seconds)

    async def _count_local(self, key: str, window_seconds: int) -> Tuple[int, float]:
        async with self._lock:
            now = time.monotonic()
            count, reset_at = self._windows.get(key, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + window_seconds
            count += 1
            self._windows[key] = (count, reset_at)
            return count, reset_at - now

    async def sweep(self) -> int:
        """Drop local windows that have already closed."""
        async with self._lock:
            now = time.monotonic()
            stale = [key for key, (_, reset_at) in self._windows.items() if reset_at <= now]
            for key in stale:
                del self._windows[key]
        if stale:
            logger.debug("throttle_swept", removed=len(stale))
        return len(stale)
