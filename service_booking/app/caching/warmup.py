"""
Preloads the cache with data every page needs.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from shared.logging import get_logger
from . import keys
from .cache_manager import CacheManager, Producer

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..adapters.booking_store import BookingStore
    from shared.metrics import MetricsCollector


@dataclass(frozen=True)
class WarmTask:
    key: str
    strategy: str
    produce: Producer


class CacheWarmer:
    """Loads the department directory and system settings ahead of traffic."""

    def __init__(
        self,
        cache: CacheManager,
        store: "BookingStore",
        *,
        concurrency: int = 5,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.cache = cache
        self.store = store
        self.metrics = metrics
        self.logger = get_logger("booking.cache.warmup")
        self._semaphore = asyncio.Semaphore(max(1, concurrency))

    def build_plan(self) -> List[WarmTask]:
        """Critical entries, keyed exactly as the read routes key them."""
        return [
            WarmTask(keys.DEPARTMENTS_ALL, "departments", self.store.list_departments),
            # Settings change about as rarely as departments do.
            WarmTask(keys.SYSTEM_SETTINGS, "departments", self.store.get_system_settings),
        ]

    async def warm(self) -> Dict[str, Any]:
        """
        Run the warm plan.

        Returns ``{"planned", "warmed", "errors"}``. Individual failures are
        logged and reported in ``errors``; they never propagate.
        """
        plan = self.build_plan()
        summary: Dict[str, Any] = {"planned": len(plan), "warmed": 0, "errors": []}

        results = await asyncio.gather(*(self._warm_entry(task) for task in plan))
        for outcome in results:
            if outcome["result"] == "ok":
                summary["warmed"] += 1
            else:
                summary["errors"].append({"key": outcome["key"], "error": outcome["error"]})

        self.logger.info(
            "Cache warm completed",
            planned=summary["planned"],
            warmed=summary["warmed"],
            errors=len(summary["errors"]),
        )
        return summary

    async def _warm_entry(self, task: WarmTask) -> Dict[str, Any]:
        async with self._semaphore:
            start = time.perf_counter()
            result = "ok"
            error: Optional[str] = None
            try:
                await self.cache.get(task.key, task.produce, task.strategy)
            except Exception as exc:
                result = "error"
                error = str(exc)
                self.logger.warning("Cache warm task failed", key=task.key, error=error)

            if self.metrics:
                self.metrics.increment_counter("cache_warm_total", result=result)
            self.logger.debug(
                "Cache warm task finished",
                key=task.key,
                result=result,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            return {"key": task.key, "result": result, "error": error}
