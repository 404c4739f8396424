"""
Get-or-compute cache engine for booking reads.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TYPE_CHECKING

from shared.errors import StoreFault
from shared.logging import get_logger
from .backends import CacheBackend
from .strategies import StrategyTable

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


Producer = Callable[[], Awaitable[Any]]

# Result a coalescing leader hands to followers when it was cancelled.
_ABANDONED = object()


@dataclass(frozen=True)
class CacheResult:
    """Value returned by :meth:`CacheManager.fetch` plus how it was served."""

    value: Any
    hit: bool
    strategy: str
    ttl_seconds: int
    cache_type: str


class CacheManager:
    """
    Strategy-driven get-or-compute cache.

    On a hit the stored value is returned and ``produce`` is never called. On
    a miss ``produce`` is awaited; its result is stored under the strategy's
    TTL and returned. A failing ``produce`` stores nothing and its exception
    reaches the caller unchanged. Faults in the backend never fail a read,
    the engine falls back to the producer instead.
    """

    def __init__(
        self,
        backend: CacheBackend,
        strategies: Optional[StrategyTable] = None,
        *,
        metrics: Optional["MetricsCollector"] = None,
        coalesce_misses: bool = False,
    ):
        self.backend = backend
        self.strategies = strategies or StrategyTable()
        self.metrics = metrics
        self.coalesce_misses = coalesce_misses
        self.logger = get_logger("booking.cache_manager")
        self._in_flight: Dict[str, asyncio.Future] = {}

    @property
    def cache_type(self) -> str:
        return self.backend.name

    async def get(self, key: str, produce: Producer, strategy: str) -> Any:
        """Return the cached value for ``key`` or compute it with ``produce``."""
        result = await self.fetch(key, produce, strategy)
        return result.value

    async def fetch(self, key: str, produce: Producer, strategy: str) -> CacheResult:
        """Like :meth:`get` but also reports hit/miss and the resolved TTL."""
        ttl = self.strategies.ttl_for(strategy)

        try:
            entry = await self.backend.get(key)
        except StoreFault as exc:
            self._record_fault("get", key, exc)
            value = await self._produce(produce, strategy)
            return self._result(value, False, strategy, ttl)

        if entry is not None:
            self.logger.debug("Cache hit", key=key, strategy=strategy)
            self._count(strategy, "hit")
            return self._result(entry.value, True, strategy, ttl)

        self.logger.debug("Cache miss", key=key, strategy=strategy)
        if not self.coalesce_misses:
            self._count(strategy, "miss")
            value = await self._produce_and_store(key, produce, strategy, ttl)
            return self._result(value, False, strategy, ttl)

        pending = self._in_flight.get(key)
        if pending is not None:
            outcome = await asyncio.shield(pending)
            if outcome is not _ABANDONED:
                self._count(strategy, "coalesced")
                return self._result(outcome, False, strategy, ttl)
            self.logger.debug("Coalesced producer was cancelled, computing again", key=key)
            self._count(strategy, "miss")
            value = await self._produce_and_store(key, produce, strategy, ttl)
            return self._result(value, False, strategy, ttl)

        self._count(strategy, "miss")
        value = await self._lead(key, produce, strategy, ttl)
        return self._result(value, False, strategy, ttl)

    async def invalidate(self, key: str) -> None:
        """Remove ``key``. Absent keys are not an error."""
        try:
            removed = await self.backend.invalidate(key)
        except StoreFault as exc:
            self._record_fault("invalidate", key, exc)
            return

        self._count_invalidation("key")
        self.logger.info("Cache key invalidated", key=key, removed=removed)

    async def invalidate_pattern(self, pattern: str) -> int:
        """Remove every key containing ``pattern`` and return how many went.

        Matching is by substring, so an empty pattern matches every key.
        """
        try:
            removed = await self.backend.invalidate_pattern(pattern)
        except StoreFault as exc:
            self._record_fault("invalidate_pattern", pattern, exc)
            return 0

        self._count_invalidation("pattern")
        self.logger.info("Cache pattern invalidated", pattern=pattern, removed=removed)
        return removed

    async def clear_all(self) -> int:
        """Empty the cache."""
        try:
            removed = await self.backend.clear()
        except StoreFault as exc:
            self._record_fault("clear", "*", exc)
            return 0

        self._count_invalidation("all")
        self._set_entries_gauge(0)
        self.logger.info("Cache cleared", removed=removed)
        return removed

    async def get_stats(self) -> Dict[str, Any]:
        """Current size and keys, plus engine settings."""
        try:
            stats = await self.backend.stats()
        except StoreFault as exc:
            self._record_fault("stats", "*", exc)
            stats = {"size": 0, "keys": [], "error": exc.message}
        else:
            self._set_entries_gauge(stats["size"])

        stats["backend"] = self.cache_type
        stats["coalesce_misses"] = self.coalesce_misses
        stats["in_flight"] = len(self._in_flight)
        return stats

    def get_config(self) -> Dict[str, int]:
        """Strategy name to TTL seconds."""
        return self.strategies.as_dict()

    async def _lead(self, key: str, produce: Producer, strategy: str, ttl: int) -> Any:
        future = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            value = await self._produce_and_store(key, produce, strategy, ttl)
        except asyncio.CancelledError:
            future.set_result(_ABANDONED)
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved; followers, if any, re-raise it themselves.
            future.exception()
            raise
        else:
            future.set_result(value)
            return value
        finally:
            if self._in_flight.get(key) is future:
                del self._in_flight[key]

    async def _produce_and_store(self, key: str, produce: Producer, strategy: str, ttl: int) -> Any:
        value = await self._produce(produce, strategy)
        try:
            await self.backend.put(key, value, ttl)
        except StoreFault as exc:
            self._record_fault("put", key, exc)
        return value

    async def _produce(self, produce: Producer, strategy: str) -> Any:
        started = time.perf_counter()
        value = await produce()
        if self.metrics:
            self.metrics.observe_histogram(
                "cache_produce_duration_seconds",
                time.perf_counter() - started,
                strategy=strategy,
            )
        return value

    def _result(self, value: Any, hit: bool, strategy: str, ttl: int) -> CacheResult:
        return CacheResult(
            value=value,
            hit=hit,
            strategy=strategy,
            ttl_seconds=ttl,
            cache_type=self.cache_type,
        )

    def _record_fault(self, operation: str, key: str, exc: StoreFault) -> None:
        self.logger.error(
            "Cache store fault",
            operation=operation,
            key=key,
            error=exc.message,
            details=exc.details,
        )
        if self.metrics:
            self.metrics.increment_counter("cache_store_faults_total", operation=operation)

    def _count(self, strategy: str, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("cache_requests_total", strategy=strategy, result=result)

    def _count_invalidation(self, scope: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("cache_invalidations_total", scope=scope)

    def _set_entries_gauge(self, size: int) -> None:
        if self.metrics:
            self.metrics.set_gauge("cache_entries", size)
