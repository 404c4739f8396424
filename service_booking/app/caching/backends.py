"""
Cache tiers behind one interface.

``MemoryCacheBackend`` is the process memory tier. ``RedisCacheBackend`` is the
networked drop-in, and ``TieredCacheBackend`` chains the two, memory first
and then Redis.
"""

import asyncio
import json
import math
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import StoreFault
from shared.logging import get_logger
from .entry_store import CacheEntry, Clock, EntryStore


class CacheBackend(ABC):
    """Storage contract used by the cache engine."""

    name = "abstract"

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for ``key`` or None."""

    @abstractmethod
    async def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Store ``value`` under ``key`` for ``ttl_seconds``."""

    @abstractmethod
    async def invalidate(self, key: str) -> bool:
        """Remove ``key``; True if something was removed."""

    @abstractmethod
    async def invalidate_pattern(self, pattern: str) -> int:
        """Remove every key containing ``pattern``; returns the count."""

    @abstractmethod
    async def stats(self) -> Dict[str, Any]:
        """Return at least ``size`` and ``keys``."""

    @abstractmethod
    async def purge_expired(self, batch_size: int = 500) -> int:
        """Remove entries that have already expired."""

    @abstractmethod
    async def clear(self) -> int:
        """Remove everything; returns the count removed."""

    async def close(self) -> None:
        """Release any connections."""


class MemoryCacheBackend(CacheBackend):
    """Process memory tier backed by :class:`EntryStore`."""

    name = "memory"

    def __init__(self, store: Optional[EntryStore] = None, *, clock: Clock = time.time):
        self.store = store or EntryStore(clock=clock)

    async def get(self, key: str) -> Optional[CacheEntry]:
        return self.store.lookup(key)

    async def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        self.store.put(key, value, ttl_seconds)

    async def put_entry(self, key: str, entry: CacheEntry) -> None:
        self.store.put_entry(key, entry)

    async def invalidate(self, key: str) -> bool:
        return self.store.delete_exact(key)

    async def invalidate_pattern(self, pattern: str) -> int:
        return self.store.delete_by_substring(pattern)

    async def stats(self) -> Dict[str, Any]:
        keys = self.store.keys()
        return {"size": len(keys), "keys": keys}

    async def purge_expired(self, batch_size: int = 500) -> int:
        """Purge in batches, yielding to the event loop between batches.

        Only the key snapshot is taken in one pass; expiry is checked per
        batch, so the lock is never held for the whole map.
        """
        keys = self.store.keys()
        removed = 0
        for start in range(0, len(keys), batch_size):
            removed += self.store.purge_expired(keys[start:start + batch_size])
            await asyncio.sleep(0)
        return removed

    async def clear(self) -> int:
        return self.store.clear()

    def now(self) -> float:
        return self.store.now()


class RedisCacheBackend(CacheBackend):
    """Networked tier. Every Redis or decoding failure surfaces as StoreFault."""

    name = "redis"

    def __init__(
        self,
        redis_url: str,
        *,
        namespace: str = "booking:cache:",
        clock: Clock = time.time,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.namespace = namespace
        self._clock = clock
        self._redis: Optional[redis.Redis] = client
        self.logger = get_logger("booking.cache.redis")

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                health_check_interval=30,
            )
        return self._redis

    def _make_key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    async def get(self, key: str) -> Optional[CacheEntry]:
        try:
            client = await self._get_redis()
            raw = await client.get(self._make_key(key))
            if raw is None:
                return None
            payload = json.loads(raw)
            entry = CacheEntry(value=payload["value"], expires_at=float(payload["expires_at"]))
        except (RedisError, OSError, ValueError, KeyError, TypeError) as exc:
            raise StoreFault("Redis cache read failed", details={"key": key, "error": str(exc)}) from exc

        if not entry.is_fresh(self._clock()):
            return None
        return entry

    async def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        expires_at = self._clock() + ttl_seconds
        try:
            payload = json.dumps({"value": value, "expires_at": expires_at}, default=str)
            client = await self._get_redis()
            await client.setex(self._make_key(key), max(1, math.ceil(ttl_seconds)), payload)
        except (RedisError, OSError, TypeError, ValueError) as exc:
            raise StoreFault("Redis cache write failed", details={"key": key, "error": str(exc)}) from exc

    async def invalidate(self, key: str) -> bool:
        try:
            client = await self._get_redis()
            return bool(await client.delete(self._make_key(key)))
        except (RedisError, OSError) as exc:
            raise StoreFault("Redis cache delete failed", details={"key": key, "error": str(exc)}) from exc

    async def invalidate_pattern(self, pattern: str) -> int:
        keys = await self._scan(f"{self._escape(self.namespace)}*{self._escape(pattern)}*")
        if not keys:
            return 0
        try:
            client = await self._get_redis()
            await client.delete(*keys)
        except (RedisError, OSError) as exc:
            raise StoreFault("Redis cache pattern delete failed", details={"pattern": pattern, "error": str(exc)}) from exc
        self.logger.info("Cleared cache pattern", pattern=pattern, keys_count=len(keys))
        return len(keys)

    async def stats(self) -> Dict[str, Any]:
        keys = [key[len(self.namespace):] for key in await self._scan(f"{self._escape(self.namespace)}*")]
        return {"size": len(keys), "keys": keys}

    async def purge_expired(self, batch_size: int = 500) -> int:
        # SETEX expiry is enforced by Redis itself.
        return 0

    async def clear(self) -> int:
        keys = await self._scan(f"{self._escape(self.namespace)}*")
        if not keys:
            return 0
        try:
            client = await self._get_redis()
            await client.delete(*keys)
        except (RedisError, OSError) as exc:
            raise StoreFault("Redis cache clear failed", details={"error": str(exc)}) from exc
        return len(keys)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def _scan(self, match: str) -> List[str]:
        try:
            client = await self._get_redis()
            return [key async for key in client.scan_iter(match=match, count=500)]
        except (RedisError, OSError) as exc:
            raise StoreFault("Redis cache scan failed", details={"match": match, "error": str(exc)}) from exc

    @staticmethod
    def _escape(text: str) -> str:
        """Escape glob metacharacters so patterns match literally."""
        for char in "\\*?[]":
            text = text.replace(char, "\\" + char)
        return text


class TieredCacheBackend(CacheBackend):
    """
    Memory tier in front of a remote tier.

    A remote hit repopulates memory for at most ``memory_ttl_cap`` seconds,
    writes and invalidations go to both tiers, and a failing remote tier
    degrades to memory only.
    """

    name = "tiered"

    def __init__(self, memory: MemoryCacheBackend, remote: CacheBackend, *, memory_ttl_cap: int = 60):
        self.memory = memory
        self.remote = remote
        self.memory_ttl_cap = memory_ttl_cap
        self.logger = get_logger("booking.cache.tiered")

    async def get(self, key: str) -> Optional[CacheEntry]:
        entry = await self.memory.get(key)
        if entry is not None:
            return entry

        try:
            entry = await self.remote.get(key)
        except StoreFault as exc:
            self.logger.warning("Remote cache tier unavailable on read", key=key, error=exc.message)
            return None
        if entry is None:
            return None

        cap = self.memory.now() + self.memory_ttl_cap
        await self.memory.put_entry(key, CacheEntry(entry.value, min(entry.expires_at, cap)))
        self.logger.debug("Remote tier hit", key=key)
        return entry

    async def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self.memory.put(key, value, min(ttl_seconds, self.memory_ttl_cap))
        try:
            await self.remote.put(key, value, ttl_seconds)
        except StoreFault as exc:
            self.logger.warning("Remote cache tier unavailable on write", key=key, error=exc.message)

    async def invalidate(self, key: str) -> bool:
        removed = await self.memory.invalidate(key)
        try:
            removed = await self.remote.invalidate(key) or removed
        except StoreFault as exc:
            self.logger.warning("Remote cache tier unavailable on invalidate", key=key, error=exc.message)
        return removed

    async def invalidate_pattern(self, pattern: str) -> int:
        removed = await self.memory.invalidate_pattern(pattern)
        try:
            removed = max(removed, await self.remote.invalidate_pattern(pattern))
        except StoreFault as exc:
            self.logger.warning("Remote cache tier unavailable on invalidate", pattern=pattern, error=exc.message)
        return removed

    async def stats(self) -> Dict[str, Any]:
        stats = await self.memory.stats()
        try:
            remote = await self.remote.stats()
            stats["remote"] = {"size": remote["size"]}
        except StoreFault as exc:
            stats["remote"] = {"error": exc.message}
        return stats

    async def purge_expired(self, batch_size: int = 500) -> int:
        return await self.memory.purge_expired(batch_size)

    async def clear(self) -> int:
        removed = await self.memory.clear()
        try:
            removed = max(removed, await self.remote.clear())
        except StoreFault as exc:
            self.logger.warning("Remote cache tier unavailable on clear", error=exc.message)
        return removed

    async def close(self) -> None:
        await self.remote.close()


def build_backend(
    kind: str,
    *,
    redis_url: str,
    memory_ttl_cap: int = 60,
    clock: Clock = time.time,
) -> CacheBackend:
    """Build the configured cache backend ("memory", "redis" or "tiered")."""
    if kind == "memory":
        return MemoryCacheBackend(clock=clock)
    if kind == "redis":
        return RedisCacheBackend(redis_url, clock=clock)
    if kind == "tiered":
        return TieredCacheBackend(
            MemoryCacheBackend(clock=clock),
            RedisCacheBackend(redis_url, clock=clock),
            memory_ttl_cap=memory_ttl_cap,
        )
    raise ValueError(f"Unknown cache backend: {kind!r}")
