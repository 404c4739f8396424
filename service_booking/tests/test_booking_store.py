"""
Unit tests for the in-memory booking store.
"""

from datetime import date

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_booking.app.adapters.booking_store import (
    InMemoryBookingStore,
    PostgresBookingStore,
    build_store,
    compute_available_slots,
    week_bounds,
)
from service_booking.app.domain.models import (
    BookingRequest,
    Department,
    DepartmentCreateRequest,
    DepartmentUpdateRequest,
)
from shared.errors import ConflictError, NotFoundError, ValidationError


SUNDAY = date(2025, 6, 1)
MONDAY = date(2025, 6, 2)


def _booking(department_id=3, day=SUNDAY, slot=1, client_id=42):
    return BookingRequest(department_id=department_id, client_id=client_id, appointment_date=day, slot_number=slot)


class TestSlotHelpers:
    """Test cases for slot arithmetic."""

    def test_compute_available_slots(self):
        department = Department(id=1, name="Cardiology", slots_per_day=4)
        assert compute_available_slots(department, MONDAY, [2, 4]) == [1, 3]

    def test_no_slots_on_non_working_day(self):
        department = Department(id=1, name="Cardiology")
        assert compute_available_slots(department, SUNDAY, []) == []

    def test_no_slots_for_inactive_department(self):
        department = Department(id=1, name="Cardiology", is_active=False)
        assert compute_available_slots(department, MONDAY, []) == []

    def test_week_bounds(self):
        assert week_bounds(date(2025, 6, 4)) == (SUNDAY, date(2025, 6, 7))
        assert week_bounds(SUNDAY) == (SUNDAY, date(2025, 6, 7))
        assert week_bounds(date(2025, 6, 7)) == (SUNDAY, date(2025, 6, 7))


class TestInMemoryBookingStore:
    """Test cases for InMemoryBookingStore."""

    @pytest.fixture
    def store(self):
        return InMemoryBookingStore()

    @pytest.mark.asyncio
    async def test_list_departments(self, store):
        departments = await store.list_departments()
        assert [d["name"] for d in departments] == ["Cardiology", "Pediatrics", "Radiology"]

    @pytest.mark.asyncio
    async def test_available_slots(self, store):
        assert await store.available_slots(1, MONDAY) == list(range(1, 11))
        assert await store.available_slots(1, SUNDAY) == []
        assert await store.available_slots(3, SUNDAY) == list(range(1, 9))
        assert await store.available_slots(999, MONDAY) == []

    @pytest.mark.asyncio
    async def test_booking_takes_the_slot(self, store):
        appointment = await store.book_appointment(_booking(slot=2))

        assert appointment["slot_number"] == 2
        assert appointment["appointment_date"] == "2025-06-01"
        assert appointment["status"] == "scheduled"
        assert 2 not in await store.available_slots(3, SUNDAY)

    @pytest.mark.asyncio
    async def test_double_booking_conflicts(self, store):
        await store.book_appointment(_booking(slot=1))

        with pytest.raises(ConflictError) as exc_info:
            await store.book_appointment(_booking(slot=1, client_id=7))

        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_cancel_releases_the_slot(self, store):
        appointment = await store.book_appointment(_booking(slot=1))

        cancelled = await store.cancel_appointment(appointment["id"])

        assert cancelled["status"] == "cancelled"
        assert 1 in await store.available_slots(3, SUNDAY)
        await store.book_appointment(_booking(slot=1, client_id=7))

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, store):
        with pytest.raises(NotFoundError):
            await store.cancel_appointment(999)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("request_args, error", [
        ({"department_id": 1, "day": SUNDAY}, ValidationError),
        ({"department_id": 3, "slot": 9}, ValidationError),
        ({"department_id": 999}, NotFoundError),
    ])
    async def test_invalid_bookings(self, store, request_args, error):
        with pytest.raises(error):
            await store.book_appointment(_booking(**request_args))

    @pytest.mark.asyncio
    async def test_inactive_department_rejects_bookings(self, store):
        await store.update_department(3, DepartmentUpdateRequest(is_active=False))

        with pytest.raises(ValidationError):
            await store.book_appointment(_booking())
        assert "Radiology" not in [d["name"] for d in await store.list_departments()]

    @pytest.mark.asyncio
    async def test_create_department(self, store):
        created = await store.create_department(
            DepartmentCreateRequest(name="Dermatology", slots_per_day=6, working_days=["Saturday"])
        )

        assert created["id"] == 4
        assert created["working_days"] == ["saturday"]
        assert await store.available_slots(4, date(2025, 6, 7)) == list(range(1, 7))

    @pytest.mark.asyncio
    async def test_update_department_partial(self, store):
        updated = await store.update_department(1, DepartmentUpdateRequest(slots_per_day=3))

        assert updated["slots_per_day"] == 3
        assert updated["name"] == "Cardiology"

    @pytest.mark.asyncio
    async def test_update_unknown_department(self, store):
        with pytest.raises(NotFoundError):
            await store.update_department(999, DepartmentUpdateRequest(name="Nope"))

    @pytest.mark.asyncio
    async def test_departments_with_availability(self, store):
        await store.book_appointment(_booking(slot=1))

        by_name = {d["name"]: d for d in await store.departments_with_availability(SUNDAY)}

        assert by_name["Radiology"]["available_slots"] == 7
        assert by_name["Radiology"]["is_working_day"] is True
        assert by_name["Cardiology"]["available_slots"] == 0
        assert by_name["Cardiology"]["is_working_day"] is False

    @pytest.mark.asyncio
    async def test_list_appointments_filters(self, store):
        await store.book_appointment(_booking(slot=1, client_id=42))
        await store.book_appointment(_booking(slot=2, client_id=7))
        await store.book_appointment(_booking(department_id=1, day=MONDAY, slot=1, client_id=42))

        assert len(await store.list_appointments()) == 3
        assert len(await store.list_appointments(client_id=42)) == 2
        assert len(await store.list_appointments(client_id=42, day=MONDAY)) == 1

    @pytest.mark.asyncio
    async def test_dashboard_stats(self, store):
        first = await store.book_appointment(_booking(day=date(2025, 6, 5), slot=1))
        await store.book_appointment(_booking(day=date(2025, 6, 10), slot=2))
        await store.book_appointment(_booking(day=date(2025, 6, 12), slot=3))
        await store.cancel_appointment(first["id"])

        stats = await store.dashboard_stats(42, MONDAY)

        assert stats["upcoming_appointments"] == 2
        assert stats["total_appointments"] == 3
        assert stats["completed_appointments"] == 0
        assert stats["days_until_next"] == 8
        assert len(stats["recent_appointments"]) == 3

    @pytest.mark.asyncio
    async def test_dashboard_stats_for_new_client(self, store):
        stats = await store.dashboard_stats(1, MONDAY)

        assert stats["upcoming_appointments"] == 0
        assert stats["days_until_next"] is None

    @pytest.mark.asyncio
    async def test_weekly_available_slots(self, store):
        """Five days of Cardiology and Pediatrics plus seven of Radiology."""
        assert await store.weekly_available_slots(MONDAY) == 5 * 10 + 5 * 12 + 7 * 8

        await store.book_appointment(_booking(slot=1))
        assert await store.weekly_available_slots(MONDAY) == 5 * 10 + 5 * 12 + 7 * 8 - 1

    @pytest.mark.asyncio
    async def test_system_settings_are_a_copy(self, store):
        settings = await store.get_system_settings()
        settings["hospital_name"] = "changed"

        assert (await store.get_system_settings())["hospital_name"] == "City General Hospital"

    @pytest.mark.asyncio
    async def test_check(self, store):
        assert await store.check() == "ok"


class TestBuildStore:
    """Test cases for build_store."""

    def test_kinds(self):
        assert isinstance(build_store("memory", postgres_dsn="postgres://x"), InMemoryBookingStore)
        assert isinstance(build_store("postgres", postgres_dsn="postgres://x"), PostgresBookingStore)
