"""
Cache utilities
Redis-backed cache for multi-worker deployments, in-process cache for single
workers and tests. Both expose the same coroutine interface.
"""

import json
import time
from typing import Any, Callable, Dict, Optional, Tuple
from uuid import uuid4

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from abuse_control.config import get_settings

# Connection pool
_pool = None


async def get_redis_pool() -> ConnectionPool:
    """Get or create Redis connection pool"""
    global _pool
    if _pool is None:
        settings = get_settings()
        _pool = ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=20,
            decode_responses=True,
        )
    return _pool


async def get_redis() -> redis.Redis:
    """Get Redis client"""
    pool = await get_redis_pool()
    return redis.Redis(connection_pool=pool)


async def close_redis():
    """Close Redis connections"""
    global _pool
    if _pool is not None:
        await _pool.disconnect()
        _pool = None


class CacheService:
    """Redis cache with key prefixing, JSON values and NX locks"""

    def __init__(
        self,
        prefix: Optional[str] = None,
        client: Optional[redis.Redis] = None,
        default_ttl: Optional[int] = None,
    ):
        settings = get_settings()
        self.prefix = prefix or settings.CACHE_PREFIX
        self.default_ttl = default_ttl or settings.CONFIG_CACHE_TTL
        self._client = client

    async def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = await get_redis()
        return self._client

    def _key(self, key: str) -> str:
        """Generate full cache key with prefix"""
        return f"{self.prefix}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache"""
        client = await self._get_client()
        value = await client.get(self._key(key))
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value in cache with optional TTL (seconds)"""
        client = await self._get_client()
        return bool(await client.setex(self._key(key), ttl or self.default_ttl, json.dumps(value)))

    async def add(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value only if the key is absent. Returns True when stored."""
        client = await self._get_client()
        stored = await client.set(
            self._key(key), json.dumps(value), ex=ttl or self.default_ttl, nx=True
        )
        return bool(stored)

    async def delete(self, key: str) -> bool:
        """Delete value from cache"""
        client = await self._get_client()
        return await client.delete(self._key(key)) > 0

    async def acquire_lock(self, name: str, ttl: int) -> Optional[str]:
        """Try to take a lock; returns the owner token or None if already held"""
        token = uuid4().hex
        if await self.add(f"lock:{name}", token, ttl):
            return token
        return None

    async def release_lock(self, name: str, token: str) -> bool:
        """Release a lock only if it is still owned by token"""
        if await self.get(f"lock:{name}") != token:
            return False
        return await self.delete(f"lock:{name}")


class MemoryCache:
    """In-process TTL cache with an injectable clock (seconds)"""

    def __init__(
        self,
        prefix: Optional[str] = None,
        default_ttl: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self.prefix = prefix or settings.CACHE_PREFIX
        self.default_ttl = default_ttl or settings.CONFIG_CACHE_TTL
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def _live_entry(self, key: str) -> Optional[Tuple[float, Any]]:
        entry = self._entries.get(self._key(key))
        if entry is None:
            return None
        if entry[0] <= self._clock():
            del self._entries[self._key(key)]
            return None
        return entry

    async def get(self, key: str) -> Optional[Any]:
        entry = self._live_entry(key)
        return entry[1] if entry else None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        self._entries[self._key(key)] = (self._clock() + (ttl or self.default_ttl), value)
        return True

    async def add(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if self._live_entry(key) is not None:
            return False
        return await self.set(key, value, ttl)

    async def delete(self, key: str) -> bool:
        return self._entries.pop(self._key(key), None) is not None

    async def acquire_lock(self, name: str, ttl: int) -> Optional[str]:
        token = uuid4().hex
        if await self.add(f"lock:{name}", token, ttl):
            return token
        return None

    async def release_lock(self, name: str, token: str) -> bool:
        if await self.get(f"lock:{name}") != token:
            return False
        return await self.delete(f"lock:{name}")

    def clear(self):
        self._entries.clear()


def build_cache(prefix: Optional[str] = None):
    """Cache selected by CACHE_BACKEND"""
    settings = get_settings()
    if settings.CACHE_BACKEND == "memory":
        return MemoryCache(prefix=prefix)
    return CacheService(prefix=prefix)
