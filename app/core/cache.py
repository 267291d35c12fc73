"""
Redis cache backend.

Thin async wrapper over redis.asyncio exposing the four operations the
permission cache needs. Errors are raised to the caller, which decides how
to degrade.
"""
from typing import Optional, Protocol
from redis.asyncio import Redis

from app.core import config
from app.utils import get_logger


log = get_logger(__name__)


class CacheBackend(Protocol):
    """Operations the permission cache relies on."""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    async def scan_keys(self, pattern: str) -> list[str]:
        ...

    async def delete(self, *keys: str) -> None:
        ...

    async def close(self) -> None:
        ...


class RedisCacheBackend:
    """CacheBackend backed by a Redis server."""

    def __init__(self, client: Redis, scan_count: int = 100):
        self.client = client
        self.scan_count = scan_count

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheBackend":
        return cls(Redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=ttl_seconds)

    async def scan_keys(self, pattern: str) -> list[str]:
        """Collect keys matching a glob pattern using SCAN (non-blocking, unlike KEYS)."""
        keys: list[str] = []
        async for key in self.client.scan_iter(match=pattern, count=self.scan_count):
            keys.append(key.decode() if isinstance(key, bytes) else key)
        return keys

    async def delete(self, *keys: str) -> None:
        if keys:
            await self.client.delete(*keys)

    async def close(self) -> None:
        await self.client.aclose()


def create_cache_backend(url: Optional[str] = None) -> Optional[RedisCacheBackend]:
    """
    Build the configured cache backend.

    Returns None when REDIS_URL is not set; callers then run without cache.
    """
    url = url or config.REDIS_URL
    if not url:
        log.info("REDIS_URL not configured. Permission checks will run without cache.")
        return None
    return RedisCacheBackend.from_url(url)
