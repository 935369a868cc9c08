"""
Cache abstraction for tokens and waybills

Two backends share one async interface:
- InMemoryCache: per-process dict with TTL, the default
- RedisCache: shared across processes when REDIS_URL is set

Besides get/set/delete, both provide push_many/pop_many list operations so
the waybill pool can hand out identifiers destructively from shared state.

Usage:
    cache = await create_cache()
    await cache.set("token:DELHIVERY:surface", {"value": "..."}, ttl_seconds=3000)
    data = await cache.get("token:DELHIVERY:surface")
"""
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

import redis.asyncio as redis

from courier_gateway.core.config import settings
from courier_gateway.core.redis_client import get_redis

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Key-value store with expiry plus FIFO lists."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the stored value or None if absent/expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        """Store a JSON-serializable value."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def push_many(self, key: str, values: List[str]) -> int:
        """Append values to the list at key. Returns the new length."""

    @abstractmethod
    async def pop_many(self, key: str, count: int) -> List[str]:
        """Remove and return up to count values from the head of the list."""

    @abstractmethod
    async def length(self, key: str) -> int:
        pass


class InMemoryCache(CacheBackend):
    """
    Per-process cache with TTL.

    Safe for single-threaded asyncio usage: no method awaits between
    reading and mutating state, so pop_many is atomic per event loop.
    """

    def __init__(self):
        self._values: Dict[str, Tuple[Optional[float], Any]] = {}
        self._lists: Dict[str, Deque[str]] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._values.get(key)
        if entry is None:
            return None

        expires_at, value = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            del self._values[key]
            logger.debug(f"[CACHE] Expired: {key}")
            return None
        return value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        self._values[key] = (expires_at, value)

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)
        self._lists.pop(key, None)

    async def push_many(self, key: str, values: List[str]) -> int:
        bucket = self._lists.setdefault(key, deque())
        bucket.extend(values)
        return len(bucket)

    async def pop_many(self, key: str, count: int) -> List[str]:
        bucket = self._lists.get(key)
        if not bucket or count <= 0:
            return []
        return [bucket.popleft() for _ in range(min(count, len(bucket)))]

    async def length(self, key: str) -> int:
        return len(self._lists.get(key, ()))


class RedisCache(CacheBackend):
    """Redis-backed cache. Values are stored as JSON strings."""

    def __init__(self, client: redis.Redis, prefix: str = ""):
        self._client = client
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        data = await self._client.get(self._key(key))
        if data is None:
            return None
        return json.loads(data)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        payload = json.dumps(value)
        if ttl_seconds:
            await self._client.setex(self._key(key), int(ttl_seconds), payload)
        else:
            await self._client.set(self._key(key), payload)

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def push_many(self, key: str, values: List[str]) -> int:
        if not values:
            return await self.length(key)
        return await self._client.rpush(self._key(key), *values)

    async def pop_many(self, key: str, count: int) -> List[str]:
        if count <= 0:
            return []
        # LPOP with count is atomic (Redis >= 6.2)
        popped = await self._client.lpop(self._key(key), count)
        return list(popped or [])

    async def length(self, key: str) -> int:
        return await self._client.llen(self._key(key))


async def create_cache() -> CacheBackend:
    """Redis when configured and reachable, otherwise in-memory."""
    client = await get_redis()
    if client is None:
        logger.info("[CACHE] Using in-memory cache")
        return InMemoryCache()
    return RedisCache(client, prefix=settings.CACHE_KEY_PREFIX)
