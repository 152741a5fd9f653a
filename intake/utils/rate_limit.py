from __future__ import annotations

from dataclasses import dataclass

from services.cache import CacheBackend


@dataclass(slots=True)
class RateLimitResult:
    allowed: bool
    current: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current)


class DistributedRateLimiter:
    """Fixed-window counters kept in the shared cache, so limits hold across workers."""

    def __init__(self, cache: CacheBackend, namespace: str = "rl") -> None:
        self.cache = cache
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def hit(self, key: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        current = await self.cache.incr(self._key(key), ttl=window_seconds)
        return RateLimitResult(allowed=current <= limit, current=current, limit=limit)

    async def reset(self, key: str) -> None:
        await self.cache.delete(self._key(key))
