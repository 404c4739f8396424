"""
Unit tests for cache keys and mutation-driven invalidation.
"""

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_booking.app.caching import keys
from service_booking.app.caching.backends import MemoryCacheBackend
from service_booking.app.caching.cache_manager import CacheManager
from service_booking.app.caching.invalidation import CacheInvalidator


class TestKeys:
    """Test cases for key builders."""

    def test_available_slots_key(self):
        assert keys.available_slots_key(3, "2025-06-01") == "available_slots_3_2025-06-01"

    def test_keys_are_deterministic(self):
        assert keys.dashboard_stats_key(7) == keys.dashboard_stats_key("7")

    def test_underscores_in_selectors_cannot_collide(self):
        """("a_b", "c") and ("a", "b_c") map to different keys."""
        assert keys.build_key("r", "a_b", "c") != keys.build_key("r", "a", "b_c")
        assert keys.build_key("r", "a_b") == "r_a%5Fb"

    def test_percent_escaped_first(self):
        assert keys.escape_selector("%5F") == "%255F"
        assert keys.build_key("r", "%5F") != keys.build_key("r", "_")

    def test_key_prefix(self):
        assert keys.key_prefix(keys.AVAILABLE_SLOTS, 3) == "available_slots_3_"
        assert keys.key_prefix(keys.APPOINTMENTS_LIST) == "appointments_list_"


class TestCacheInvalidator:
    """Test cases for CacheInvalidator."""

    @pytest.fixture
    def cache(self):
        return CacheManager(MemoryCacheBackend())

    @pytest.fixture
    def invalidator(self, cache):
        return CacheInvalidator(cache)

    async def _populate(self, cache, *cache_keys):
        for key in cache_keys:
            async def produce(key=key):
                return key
            await cache.get(key, produce, "availableSlots")

    async def _remaining(self, cache):
        return sorted((await cache.get_stats())["keys"])

    @pytest.mark.asyncio
    async def test_appointment_changed(self, cache, invalidator):
        """A booking clears its slot list, that day's availability, the client's dashboard and list views."""
        await self._populate(
            cache,
            keys.available_slots_key(3, "2025-06-01"),
            keys.available_slots_key(3, "2025-06-02"),
            keys.available_slots_key(1, "2025-06-01"),
            keys.departments_with_availability_key("2025-06-01"),
            keys.departments_with_availability_key("2025-06-02"),
            keys.dashboard_stats_key(42),
            keys.dashboard_stats_key(43),
            keys.available_slots_week_key(42),
            keys.available_slots_week_key(43),
            keys.appointments_list_key(42, "all"),
            keys.DEPARTMENTS_ALL,
        )

        summary = await invalidator.appointment_changed(3, "2025-06-01", 42)

        assert await self._remaining(cache) == sorted([
            keys.available_slots_key(3, "2025-06-02"),
            keys.available_slots_key(1, "2025-06-01"),
            keys.departments_with_availability_key("2025-06-02"),
            keys.dashboard_stats_key(43),
            keys.DEPARTMENTS_ALL,
        ])
        assert keys.available_slots_key(3, "2025-06-01") in summary["keys"]
        assert summary["patterns"]["available_slots_week_"] == 2
        assert summary["patterns"]["appointments_list_"] == 1

    @pytest.mark.asyncio
    async def test_appointment_changed_without_client(self, cache, invalidator):
        await self._populate(cache, keys.dashboard_stats_key(42))

        summary = await invalidator.appointment_changed(3, "2025-06-01")

        assert await self._remaining(cache) == [keys.dashboard_stats_key(42)]
        assert len(summary["keys"]) == 2

    @pytest.mark.asyncio
    async def test_department_changed(self, cache, invalidator):
        """Department edits clear every departments view and that department's slots."""
        await self._populate(
            cache,
            keys.DEPARTMENTS_ALL,
            keys.departments_with_availability_key("2025-06-01"),
            keys.available_slots_key(3, "2025-06-01"),
            keys.available_slots_key(1, "2025-06-01"),
        )

        await invalidator.department_changed(3)

        assert await self._remaining(cache) == [keys.available_slots_key(1, "2025-06-01")]

    @pytest.mark.asyncio
    async def test_department_changed_does_not_touch_other_department_ids(self, cache, invalidator):
        """Department 1's pattern must not match department 12."""
        await self._populate(cache, keys.available_slots_key(12, "2025-06-01"))

        await invalidator.department_changed(1)

        assert await self._remaining(cache) == [keys.available_slots_key(12, "2025-06-01")]

    @pytest.mark.asyncio
    async def test_invalidating_empty_cache_is_a_no_op(self, invalidator):
        summary = await invalidator.appointment_changed(3, "2025-06-01", 42)
        assert all(count == 0 for count in summary["patterns"].values())
