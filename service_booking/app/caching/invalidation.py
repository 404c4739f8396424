"""
Invalidation hooks called by write endpoints after a successful commit.
"""

from typing import Any, Dict, Optional

from shared.logging import get_logger
from . import keys
from .cache_manager import CacheManager


class CacheInvalidator:
    """Maps booking mutations onto the cache keys they make stale.

    Hooks are best effort. A read that raced the write may still re-store an
    older value, which then lives at most one TTL.
    """

    def __init__(self, cache: CacheManager):
        self.cache = cache
        self.logger = get_logger("booking.cache.invalidation")

    async def appointment_changed(
        self,
        department_id: Any,
        date: str,
        client_id: Optional[Any] = None,
    ) -> Dict[str, Any]:
        """An appointment was booked, cancelled or rescheduled."""
        exact = [
            keys.available_slots_key(department_id, date),
            keys.departments_with_availability_key(date),
        ]
        if client_id is not None:
            exact.append(keys.dashboard_stats_key(client_id))

        patterns = [
            keys.key_prefix(keys.AVAILABLE_SLOTS_WEEK),
            keys.key_prefix(keys.APPOINTMENTS_LIST),
        ]

        summary = await self._apply(exact, patterns)
        self.logger.info(
            "Appointment caches invalidated",
            department_id=department_id,
            date=date,
            client_id=client_id,
            **summary,
        )
        return summary

    async def department_changed(self, department_id: Optional[Any] = None) -> Dict[str, Any]:
        """A department was created, updated or (de)activated."""
        patterns = [keys.key_prefix(keys.DEPARTMENTS)]
        if department_id is not None:
            patterns.append(keys.key_prefix(keys.AVAILABLE_SLOTS, department_id))

        summary = await self._apply([], patterns)
        self.logger.info("Department caches invalidated", department_id=department_id, **summary)
        return summary

    async def _apply(self, exact, patterns) -> Dict[str, Any]:
        for key in exact:
            await self.cache.invalidate(key)

        removed = {}
        for pattern in patterns:
            removed[pattern] = await self.cache.invalidate_pattern(pattern)
        return {"keys": list(exact), "patterns": removed}
