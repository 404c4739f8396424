"""
End-to-end tests for the booking service HTTP surface.
"""

from datetime import date

import pytest
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_booking.app.caching.backends import MemoryCacheBackend
from service_booking.app.main import BookingService
from service_booking.app.ratelimit.attempt_limiter import AttemptRateLimiter, RateLimitConfig
from shared.config import get_config
from shared.errors import StoreFault


MONDAY = date(2025, 6, 2)


def _config(**overrides):
    return get_config("booking", 8010, cache_warm_on_startup=False, **overrides)


def _booking(slot=1, department_id=3, day="2025-06-01", client_id=42, **extra):
    body = {"departmentId": department_id, "clientId": client_id, "date": day, "slotNumber": slot}
    body.update(extra)
    return body


@pytest.fixture
def service():
    return BookingService(_config(), today=lambda: MONDAY)


@pytest.fixture
def client(service):
    with TestClient(service.app) as test_client:
        yield test_client


class TestHealth:
    """Test cases for common routes."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["service"] == "booking"
        assert body["dependencies"] == {"store": "ok", "cache": "ok"}

    def test_metrics_exposes_cache_counters(self, client):
        client.get("/api/v1/departments")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "cache_requests_total" in response.text


class TestDepartmentRoutes:
    """Test cases for department routes."""

    def test_second_read_is_a_hit(self, client):
        first = client.get("/api/v1/departments")
        second = client.get("/api/v1/departments")

        assert first.headers["X-Cache"] == "MISS"
        assert second.headers["X-Cache"] == "HIT"
        assert second.headers["X-Cache-Type"] == "memory"
        assert second.headers["X-Cache-Strategy"] == "departments"
        assert second.headers["Cache-Control"] == "public, max-age=3600, stale-while-revalidate=7200"
        assert second.json()["meta"]["cached"] is True
        assert [d["name"] for d in second.json()["data"]] == ["Cardiology", "Pediatrics", "Radiology"]

    def test_departments_with_availability(self, client):
        response = client.get("/api/v1/departments", params={"date": "2025-06-01"})

        assert response.status_code == 200
        assert response.headers["X-Cache-Strategy"] == "availableSlots"
        by_name = {d["name"]: d for d in response.json()["data"]}
        assert by_name["Radiology"]["available_slots"] == 8

    def test_create_department_invalidates_directory(self, client):
        client.get("/api/v1/departments")

        created = client.post("/api/v1/departments", json={"name": "Dermatology", "slots_per_day": 6})
        after = client.get("/api/v1/departments")

        assert created.status_code == 200
        assert created.headers["Cache-Control"] == "no-store"
        assert after.headers["X-Cache"] == "MISS"
        assert "Dermatology" in [d["name"] for d in after.json()["data"]]

    def test_update_department_invalidates_its_slots(self, client):
        client.get("/api/v1/appointments/available-slots", params={"departmentId": 3, "date": "2025-06-01"})

        client.put("/api/v1/departments/3", json={"slots_per_day": 4})
        after = client.get("/api/v1/appointments/available-slots", params={"departmentId": 3, "date": "2025-06-01"})

        assert after.headers["X-Cache"] == "MISS"
        assert after.json()["data"]["available_slots"] == [1, 2, 3, 4]

    def test_update_unknown_department(self, client):
        response = client.put("/api/v1/departments/999", json={"name": "Nope"})

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_invalid_department_payload(self, client):
        response = client.post("/api/v1/departments", json={"name": "Bad", "working_days": ["someday"]})
        assert response.status_code == 422


class TestAppointmentRoutes:
    """Test cases for slot and booking routes."""

    SLOTS = "/api/v1/appointments/available-slots"
    SLOT_PARAMS = {"departmentId": 3, "date": "2025-06-01"}

    def test_booking_invalidates_slot_list(self, client):
        """After a booking the next slot read recomputes without the booked slot."""
        first = client.get(self.SLOTS, params=self.SLOT_PARAMS)
        cached = client.get(self.SLOTS, params=self.SLOT_PARAMS)
        assert first.headers["X-Cache"] == "MISS"
        assert cached.headers["X-Cache"] == "HIT"
        assert cached.headers["Cache-Control"] == "public, max-age=15, stale-while-revalidate=15"

        booked = client.post("/api/v1/appointments/book", json=_booking(slot=1))
        assert booked.status_code == 200
        assert booked.headers["Cache-Control"] == "no-store"
        assert booked.json()["data"]["slot_number"] == 1

        after = client.get(self.SLOTS, params=self.SLOT_PARAMS)
        assert after.headers["X-Cache"] == "MISS"
        assert 1 not in after.json()["data"]["available_slots"]
        assert after.json()["data"]["total_available"] == 7

    def test_taken_slot_conflicts(self, client):
        client.post("/api/v1/appointments/book", json=_booking(slot=1))

        response = client.post("/api/v1/appointments/book", json=_booking(slot=1, client_id=7))

        assert response.status_code == 409
        assert response.json()["code"] == "CONFLICT"
        assert response.headers["Cache-Control"] == "no-store"

    def test_booking_non_working_day(self, client):
        response = client.post("/api/v1/appointments/book", json=_booking(department_id=1))

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_booking_payload_validation(self, client):
        response = client.post("/api/v1/appointments/book", json={"departmentId": 3})
        assert response.status_code == 422

    def test_booking_sets_rate_limit_headers(self, client):
        response = client.post("/api/v1/appointments/book", json=_booking(slot=2, xNumber="X100"))

        assert response.headers["X-RateLimit-Remaining"] == "5"
        assert "X-RateLimit-Reset" in response.headers
        assert "X-Captcha-Required" not in response.headers

    def test_cancel_releases_slot(self, client):
        booked = client.post("/api/v1/appointments/book", json=_booking(slot=1)).json()["data"]
        client.get(self.SLOTS, params=self.SLOT_PARAMS)

        cancelled = client.post(f"/api/v1/appointments/{booked['id']}/cancel")
        after = client.get(self.SLOTS, params=self.SLOT_PARAMS)

        assert cancelled.status_code == 200
        assert cancelled.json()["data"]["status"] == "cancelled"
        assert after.headers["X-Cache"] == "MISS"
        assert 1 in after.json()["data"]["available_slots"]

    def test_cancel_unknown(self, client):
        assert client.post("/api/v1/appointments/999/cancel").status_code == 404

    def test_list_appointments(self, client):
        client.post("/api/v1/appointments/book", json=_booking(slot=1, client_id=42))
        client.post("/api/v1/appointments/book", json=_booking(slot=2, client_id=7))

        mine = client.get("/api/v1/appointments", params={"clientId": 42})
        again = client.get("/api/v1/appointments", params={"clientId": 42})

        assert [a["client_id"] for a in mine.json()["data"]] == [42]
        assert again.headers["X-Cache"] == "HIT"
        assert again.headers["X-Cache-Strategy"] == "appointments"

    def test_list_appointments_invalidated_by_booking(self, client):
        client.get("/api/v1/appointments")
        client.post("/api/v1/appointments/book", json=_booking(slot=3))

        after = client.get("/api/v1/appointments")

        assert after.headers["X-Cache"] == "MISS"
        assert len(after.json()["data"]) == 1

    def test_missing_query_parameters(self, client):
        assert client.get(self.SLOTS, params={"departmentId": 3}).status_code == 422


class TestDashboardRoutes:
    """Test cases for dashboard routes."""

    def test_dashboard_stats(self, client):
        first = client.get("/api/v1/dashboard/stats", params={"clientId": 42})
        second = client.get("/api/v1/dashboard/stats", params={"clientId": 42})

        data = first.json()["data"]
        assert data["upcoming_appointments"] == 0
        assert data["available_slots"] == 5 * 10 + 5 * 12 + 7 * 8
        assert second.headers["X-Cache"] == "HIT"
        assert second.headers["Cache-Control"] == "public, max-age=30, stale-while-revalidate=60"

    def test_booking_refreshes_dashboard(self, client):
        client.get("/api/v1/dashboard/stats", params={"clientId": 42})

        client.post("/api/v1/appointments/book", json=_booking(slot=1, day="2025-06-04"))
        after = client.get("/api/v1/dashboard/stats", params={"clientId": 42})

        assert after.headers["X-Cache"] == "MISS"
        assert after.json()["data"]["upcoming_appointments"] == 1
        assert after.json()["data"]["days_until_next"] == 2
        assert after.json()["data"]["available_slots"] == 5 * 10 + 5 * 12 + 7 * 8 - 1


class TestCacheAdminRoutes:
    """Test cases for cache administration routes."""

    def test_stats(self, client):
        client.get("/api/v1/departments")

        response = client.get("/api/v1/cache/stats")

        body = response.json()
        assert response.headers["Cache-Control"] == "no-store"
        assert body["statistics"]["size"] == 1
        assert body["statistics"]["keys"] == ["departments_all"]
        assert body["configuration"]["availableSlots"] == 15

    def test_config(self, client):
        response = client.get("/api/v1/cache/config")
        assert response.json()["configuration"]["departments"] == 3600

    def test_update_config(self, client):
        response = client.put("/api/v1/cache/config", json={"strategies": {"calendar": 3}})

        assert response.status_code == 200
        assert response.json()["configuration"]["calendar"] == 3
        assert client.get("/api/v1/cache/config").json()["configuration"]["calendar"] == 3

    def test_update_config_rejects_bad_ordering(self, client):
        response = client.put("/api/v1/cache/config", json={"strategies": {"availableSlots": 45}})

        assert response.status_code == 400
        assert client.get("/api/v1/cache/config").json()["configuration"]["availableSlots"] == 15

    def test_update_config_rejects_unknown_strategy(self, client):
        response = client.put("/api/v1/cache/config", json={"strategies": {"reports": 60}})
        assert response.status_code == 400

    def test_invalidate_key(self, client):
        client.get("/api/v1/departments")

        response = client.post("/api/v1/cache/invalidate", json={"key": "departments_all"})

        assert response.status_code == 200
        assert client.get("/api/v1/departments").headers["X-Cache"] == "MISS"

    def test_invalidate_pattern(self, client):
        client.get("/api/v1/appointments/available-slots", params={"departmentId": 3, "date": "2025-06-01"})
        client.get("/api/v1/appointments/available-slots", params={"departmentId": 3, "date": "2025-06-08"})
        client.get("/api/v1/departments")

        response = client.post("/api/v1/cache/invalidate", json={"pattern": "available_slots_3_"})

        assert response.json()["removed"] == 2
        assert client.get("/api/v1/cache/stats").json()["statistics"]["keys"] == ["departments_all"]

    @pytest.mark.parametrize("body", [{}, {"key": "a", "pattern": "b"}, {"pattern": ""}])
    def test_invalidate_requires_exactly_one_target(self, client, body):
        assert client.post("/api/v1/cache/invalidate", json=body).status_code == 422

    def test_clear(self, client):
        client.get("/api/v1/departments")
        client.get("/api/v1/dashboard/stats", params={"clientId": 42})

        response = client.post("/api/v1/cache/clear")

        assert response.json()["removed"] == 3
        assert client.get("/api/v1/cache/stats").json()["statistics"]["size"] == 0

    def test_warm(self, client):
        response = client.post("/api/v1/cache/warm")

        assert response.json()["summary"] == {"planned": 2, "warmed": 2, "errors": []}
        assert client.get("/api/v1/departments").headers["X-Cache"] == "HIT"


class TestWarmOnStartup:
    """Test cases for startup warming."""

    def test_startup_warms_directory(self):
        service = BookingService(get_config("booking", 8010, cache_warm_on_startup=True), today=lambda: MONDAY)

        with TestClient(service.app) as client:
            assert client.get("/api/v1/departments").headers["X-Cache"] == "HIT"


class TestStoreFaults:
    """Test cases for cache store outages."""

    def test_reads_survive_store_fault(self):
        backend = MemoryCacheBackend()
        backend.get = AsyncMock(side_effect=StoreFault("cache down"))
        service = BookingService(_config(), backend=backend, today=lambda: MONDAY)

        with TestClient(service.app) as client:
            response = client.get("/api/v1/departments")

        assert response.status_code == 200
        assert response.headers["X-Cache"] == "MISS"
        assert len(response.json()["data"]) == 3


class TestRateLimiting:
    """Test cases for attempt limiting on bookings."""

    @pytest.fixture
    def strict_client(self):
        limiter = AttemptRateLimiter(RateLimitConfig(captcha_threshold=1, block_threshold=2))
        service = BookingService(_config(), rate_limiter=limiter, today=lambda: MONDAY)
        with TestClient(service.app) as test_client:
            yield test_client

    def test_failed_bookings_lead_to_block(self, strict_client):
        assert strict_client.post("/api/v1/appointments/book", json=_booking(slot=1)).status_code == 200
        assert strict_client.post("/api/v1/appointments/book", json=_booking(slot=1)).status_code == 409

        captcha = strict_client.post("/api/v1/appointments/book", json=_booking(slot=2))
        assert captcha.status_code == 200
        assert captcha.headers["X-Captcha-Required"] == "true"

        assert strict_client.post("/api/v1/appointments/book", json=_booking(slot=2)).status_code == 409

        blocked = strict_client.post("/api/v1/appointments/book", json=_booking(slot=3))
        assert blocked.status_code == 429
        assert blocked.json()["code"] == "RATE_LIMIT_ERROR"
        assert blocked.json()["details"]["block_minutes"] == 30

    def test_admin_reset_unblocks(self, strict_client):
        strict_client.post("/api/v1/appointments/book", json=_booking(slot=1))
        strict_client.post("/api/v1/appointments/book", json=_booking(slot=1))
        strict_client.post("/api/v1/appointments/book", json=_booking(slot=1))
        assert strict_client.post("/api/v1/appointments/book", json=_booking(slot=4)).status_code == 429

        reset = strict_client.post("/api/admin/rate-limit-stats", json={"action": "reset_ip", "ip": "127.0.0.1"})

        assert reset.status_code == 200
        assert strict_client.post("/api/v1/appointments/book", json=_booking(slot=4)).status_code == 200


class TestRateLimitAdminRoutes:
    """Test cases for rate limiter administration."""

    def test_stats(self, client):
        response = client.get("/api/admin/rate-limit-stats")

        body = response.json()
        assert body["statistics"]["total_attempts"] == 0
        assert body["configuration"]["max_attempts_per_ip"] == 10
        assert body["client_info"] == {"request_ip": "127.0.0.1", "is_local": True}

    def test_get_stats_action(self, client):
        client.post("/api/v1/appointments/book", json=_booking(slot=1))

        response = client.post("/api/admin/rate-limit-stats", json={"action": "get_stats"})

        assert response.json()["statistics"]["total_attempts"] == 1

    def test_update_config(self, client):
        response = client.post(
            "/api/admin/rate-limit-stats",
            json={"action": "update_config", "config": {"captcha_threshold": 2}},
        )

        assert response.status_code == 200
        assert response.json()["new_config"]["captcha_threshold"] == 2

    @pytest.mark.parametrize("body", [
        {"action": "reset_ip"},
        {"action": "update_config"},
        {"action": "update_config", "config": {"captcha_threshold": 0}},
        {"action": "explode"},
    ])
    def test_bad_requests(self, client, body):
        response = client.post("/api/admin/rate-limit-stats", json=body)

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
