"""
Periodic sweep of expired cache entries.
"""

import asyncio
from typing import Optional, TYPE_CHECKING

from shared.logging import get_logger
from .backends import CacheBackend

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


class CacheSweeper:
    """Background task that purges expired entries on a fixed interval.

    Keys that are written once and never read again are only reclaimed here;
    lazy expiry on lookup never sees them.
    """

    def __init__(
        self,
        backend: CacheBackend,
        interval_seconds: float = 300.0,
        batch_size: int = 500,
        *,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.backend = backend
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.metrics = metrics
        self.logger = get_logger("booking.cache.sweeper")

        self.sweep_task: Optional[asyncio.Task] = None
        self.running = False

    async def start(self):
        """Start the sweeper."""
        if self.running:
            return
        self.running = True
        self.sweep_task = asyncio.create_task(self._sweep_loop())
        self.logger.info(
            "Cache sweeper started",
            interval_seconds=self.interval_seconds,
            batch_size=self.batch_size,
        )

    async def stop(self):
        """Stop the sweeper."""
        self.running = False
        if self.sweep_task:
            self.sweep_task.cancel()
            try:
                await self.sweep_task
            except asyncio.CancelledError:
                pass
            self.sweep_task = None

        self.logger.info("Cache sweeper stopped")

    async def run_once(self) -> int:
        """Purge expired entries now and return how many were removed."""
        removed = await self.backend.purge_expired(self.batch_size)
        if removed:
            self.logger.info("Expired cache entries swept", removed=removed)
            if self.metrics:
                self.metrics.increment_counter("cache_sweep_removed_total", removed)
        return removed

    async def _sweep_loop(self):
        """Main sweep loop."""
        while self.running:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Error in cache sweep loop", error=str(e))
                await asyncio.sleep(1)
