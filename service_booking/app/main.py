"""
Booking service for the Hospital Booking platform.
"""

import time
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import Query, Request, Response

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import ConfigurationError, RateLimitError, ServiceException, ValidationError
from shared.logging import set_client_context
from .adapters.booking_store import BookingStore, build_store
from .caching import keys
from .caching.backends import CacheBackend, build_backend
from .caching.cache_manager import CacheManager
from .caching.http_headers import apply_cache_headers, apply_no_store
from .caching.invalidation import CacheInvalidator
from .caching.maintenance import CacheSweeper
from .caching.strategies import StrategyTable
from .caching.warmup import CacheWarmer
from .domain.models import (
    BookingRequest,
    CacheConfigUpdateRequest,
    CacheInvalidateRequest,
    DepartmentCreateRequest,
    DepartmentUpdateRequest,
    RateLimitAdminRequest,
)
from .ratelimit.attempt_limiter import AttemptRateLimiter, RateLimitDecision
from .ratelimit.client_ip import get_client_info, get_client_ip


# Every strategy a route below reads with.
ROUTE_STRATEGIES = ("departments", "availableSlots", "appointments", "dashboardStats")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class BookingService(BaseService):
    """Booking service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        store: Optional[BookingStore] = None,
        backend: Optional[CacheBackend] = None,
        rate_limiter: Optional[AttemptRateLimiter] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        super().__init__("booking", 8010, config or get_config("booking", 8010))

        self.strategies = StrategyTable(overrides=self.config.cache_strategy_overrides)
        self.strategies.require(*ROUTE_STRATEGIES)

        self.store = store or build_store(self.config.store_backend, postgres_dsn=self.config.postgres_dsn)
        self.cache_backend = backend or build_backend(
            self.config.cache_backend,
            redis_url=self.config.redis_url,
            memory_ttl_cap=self.config.cache_memory_ttl_cap_seconds,
        )
        self.cache = CacheManager(
            self.cache_backend,
            self.strategies,
            metrics=self.metrics,
            coalesce_misses=self.config.cache_coalesce_misses,
        )
        self.invalidator = CacheInvalidator(self.cache)
        self.sweeper = CacheSweeper(
            self.cache_backend,
            self.config.cache_sweep_interval_seconds,
            self.config.cache_sweep_batch_size,
            metrics=self.metrics,
        )
        self.warmer = CacheWarmer(
            self.cache,
            self.store,
            concurrency=self.config.cache_warm_concurrency,
            metrics=self.metrics,
        )
        self.rate_limiter = rate_limiter or AttemptRateLimiter(metrics=self.metrics)
        self._today = today or (lambda: datetime.now(timezone.utc).date())

        @self.app.on_event("startup")
        async def _startup():
            await self.store.start()
            await self.sweeper.start()
            if self.config.cache_warm_on_startup:
                await self.warmer.warm()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.sweeper.stop()
            await self.cache_backend.close()
            await self.store.stop()

        self._setup_department_routes()
        self._setup_appointment_routes()
        self._setup_dashboard_routes()
        self._setup_cache_admin_routes()
        self._setup_rate_limit_admin_routes()

        self.app.state.booking_service = self

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check the booking store and the cache backend."""
        dependencies = {}
        try:
            dependencies["store"] = await self.store.check()
        except ServiceException as exc:
            self.logger.warning("Booking store health check failed", error=exc.message)
            dependencies["store"] = "error"
        try:
            await self.cache_backend.stats()
            dependencies["cache"] = "ok"
        except ServiceException as exc:
            self.logger.warning("Cache health check failed", error=exc.message)
            dependencies["cache"] = "error"
        return dependencies

    def _meta(self, started: float, **extra) -> Dict[str, Any]:
        meta = {"response_time": f"{round((time.perf_counter() - started) * 1000)}ms"}
        meta.update(extra)
        return meta

    def _enforce_attempt_limit(self, ip: str, x_number: Optional[str]) -> RateLimitDecision:
        decision = self.rate_limiter.check(ip, x_number)
        if not decision.allowed:
            raise RateLimitError(decision.reason or "Rate limit exceeded", details=decision.to_dict())
        return decision

    def _set_rate_limit_headers(self, response: Response, decision: RateLimitDecision) -> None:
        """Propagate attempt limiter state via headers."""
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining_attempts)
        response.headers["X-RateLimit-Reset"] = str(int(decision.reset_at))
        if decision.requires_captcha:
            response.headers["X-Captcha-Required"] = "true"

    def _setup_department_routes(self):
        """Set up department directory routes."""

        @self.app.get("/api/v1/departments")
        async def list_departments(response: Response, day: Optional[date] = Query(None, alias="date")):
            """Active departments, optionally with availability for a date."""
            started = time.perf_counter()
            if day is None:
                key = keys.DEPARTMENTS_ALL
                strategy = "departments"
                produce = self.store.list_departments
            else:
                key = keys.departments_with_availability_key(day.isoformat())
                # Availability changes as fast as slots do.
                strategy = "availableSlots"

                async def produce():
                    return await self.store.departments_with_availability(day)

            result = await self.cache.fetch(key, produce, strategy)
            apply_cache_headers(response, result, started)
            return {
                "success": True,
                "data": result.value,
                "meta": self._meta(started, cached=result.hit, cache_type=result.cache_type,
                                   date=day.isoformat() if day else None),
            }

        @self.app.post("/api/v1/departments")
        async def create_department(request: DepartmentCreateRequest, response: Response):
            """Create a department."""
            started = time.perf_counter()
            department = await self.store.create_department(request)
            await self.invalidator.department_changed()
            apply_no_store(response)
            return {
                "success": True,
                "data": department,
                "meta": self._meta(started, cache_invalidated=True),
            }

        @self.app.put("/api/v1/departments/{department_id}")
        async def update_department(department_id: int, request: DepartmentUpdateRequest, response: Response):
            """Update a department."""
            started = time.perf_counter()
            department = await self.store.update_department(department_id, request)
            await self.invalidator.department_changed(department_id)
            apply_no_store(response)
            return {
                "success": True,
                "data": department,
                "meta": self._meta(started, cache_invalidated=True),
            }

    def _setup_appointment_routes(self):
        """Set up slot lookup and booking routes."""

        @self.app.get("/api/v1/appointments/available-slots")
        async def available_slots(
            response: Response,
            department_id: int = Query(..., alias="departmentId", gt=0),
            day: date = Query(..., alias="date"),
        ):
            """Free slot numbers for a department on a date."""
            started = time.perf_counter()

            async def produce():
                slots = await self.store.available_slots(department_id, day)
                return {
                    "available_slots": slots,
                    "total_available": len(slots),
                    "department_id": department_id,
                    "date": day.isoformat(),
                    "fetched_at": _timestamp(),
                }

            result = await self.cache.fetch(
                keys.available_slots_key(department_id, day.isoformat()),
                produce,
                "availableSlots",
            )
            apply_cache_headers(response, result, started)
            return {
                "success": True,
                "data": result.value,
                "meta": self._meta(started, cached=result.hit, cache_type=result.cache_type,
                                   department_id=department_id, date=day.isoformat()),
            }

        @self.app.get("/api/v1/appointments")
        async def list_appointments(
            response: Response,
            client_id: Optional[int] = Query(None, alias="clientId", gt=0),
            day: Optional[date] = Query(None, alias="date"),
        ):
            """Appointments filtered by client and/or date."""
            started = time.perf_counter()

            async def produce():
                return await self.store.list_appointments(client_id=client_id, day=day)

            result = await self.cache.fetch(
                keys.appointments_list_key(
                    client_id if client_id is not None else "all",
                    day.isoformat() if day else "all",
                ),
                produce,
                "appointments",
            )
            apply_cache_headers(response, result, started)
            return {
                "success": True,
                "data": result.value,
                "meta": self._meta(started, cached=result.hit, cache_type=result.cache_type),
            }

        @self.app.post("/api/v1/appointments/book")
        async def book_appointment(booking: BookingRequest, request: Request, response: Response):
            """Book a slot. Failed attempts count against the caller's attempt budget."""
            started = time.perf_counter()
            client_ip = get_client_ip(request)
            user_agent = request.headers.get("User-Agent")
            set_client_context(str(booking.client_id))

            decision = self._enforce_attempt_limit(client_ip, booking.x_number)
            try:
                appointment = await self.store.book_appointment(booking)
            except ServiceException as exc:
                if exc.status_code < 500:
                    self.rate_limiter.record_attempt(client_ip, False, booking.x_number, user_agent)
                raise
            self.rate_limiter.record_attempt(client_ip, True, booking.x_number, user_agent)

            await self.invalidator.appointment_changed(
                booking.department_id,
                booking.appointment_date.isoformat(),
                booking.client_id,
            )
            apply_no_store(response)
            self._set_rate_limit_headers(response, decision)
            return {
                "success": True,
                "data": appointment,
                "message": "Appointment booked successfully",
                "meta": self._meta(started, cache_invalidated=True),
            }

        @self.app.post("/api/v1/appointments/{appointment_id}/cancel")
        async def cancel_appointment(appointment_id: int, response: Response):
            """Cancel an appointment and release its slot."""
            started = time.perf_counter()
            appointment = await self.store.cancel_appointment(appointment_id)
            await self.invalidator.appointment_changed(
                appointment["department_id"],
                appointment["appointment_date"],
                appointment["client_id"],
            )
            apply_no_store(response)
            return {
                "success": True,
                "data": appointment,
                "message": "Appointment cancelled",
                "meta": self._meta(started, cache_invalidated=True),
            }

    def _setup_dashboard_routes(self):
        """Set up patient dashboard routes."""

        @self.app.get("/api/v1/dashboard/stats")
        async def dashboard_stats(response: Response, client_id: int = Query(..., alias="clientId", gt=0)):
            """Per-client dashboard counters."""
            started = time.perf_counter()
            today = self._today()

            async def weekly_slots():
                return await self.store.weekly_available_slots(today)

            async def produce():
                stats = await self.store.dashboard_stats(client_id, today)
                stats["available_slots"] = await self.cache.get(
                    keys.available_slots_week_key(client_id),
                    weekly_slots,
                    "availableSlots",
                )
                return stats

            result = await self.cache.fetch(keys.dashboard_stats_key(client_id), produce, "dashboardStats")
            apply_cache_headers(response, result, started)
            return {
                "success": True,
                "data": result.value,
                "meta": self._meta(started, cached=result.hit, cache_type=result.cache_type),
            }

    def _setup_cache_admin_routes(self):
        """Set up cache inspection and maintenance routes."""

        @self.app.get("/api/v1/cache/stats")
        async def cache_stats(response: Response):
            """Cache size, keys and strategy table."""
            apply_no_store(response)
            return {
                "success": True,
                "timestamp": _timestamp(),
                "statistics": await self.cache.get_stats(),
                "configuration": self.cache.get_config(),
            }

        @self.app.get("/api/v1/cache/config")
        async def cache_config(response: Response):
            """Strategy name to TTL seconds."""
            apply_no_store(response)
            return {"success": True, "configuration": self.cache.get_config()}

        @self.app.put("/api/v1/cache/config")
        async def update_cache_config(update: CacheConfigUpdateRequest, response: Response):
            """Override TTLs of existing strategies."""
            try:
                configuration = self.strategies.update(update.strategies)
            except ConfigurationError as exc:
                raise ValidationError(exc.message, details=exc.details) from exc
            apply_no_store(response)
            return {"success": True, "configuration": configuration, "timestamp": _timestamp()}

        @self.app.post("/api/v1/cache/invalidate")
        async def invalidate_cache(target: CacheInvalidateRequest, response: Response):
            """Invalidate one key or every key containing a pattern."""
            apply_no_store(response)
            if target.key is not None:
                await self.cache.invalidate(target.key)
                return {"success": True, "key": target.key, "timestamp": _timestamp()}

            removed = await self.cache.invalidate_pattern(target.pattern)
            return {"success": True, "pattern": target.pattern, "removed": removed, "timestamp": _timestamp()}

        @self.app.post("/api/v1/cache/clear")
        async def clear_cache(response: Response):
            """Empty the cache."""
            apply_no_store(response)
            removed = await self.cache.clear_all()
            return {"success": True, "removed": removed, "timestamp": _timestamp()}

        @self.app.post("/api/v1/cache/warm")
        async def warm_cache(response: Response):
            """Preload critical entries."""
            apply_no_store(response)
            summary = await self.warmer.warm()
            return {"success": True, "summary": summary, "timestamp": _timestamp()}

    def _setup_rate_limit_admin_routes(self):
        """Set up attempt limiter monitoring routes."""

        @self.app.get("/api/admin/rate-limit-stats")
        async def rate_limit_stats(request: Request, response: Response):
            """Limiter statistics and configuration."""
            client_info = get_client_info(request)
            self.logger.info("Rate limit stats requested", request_ip=client_info["request_ip"])
            apply_no_store(response)
            return {
                "success": True,
                "timestamp": _timestamp(),
                "statistics": self.rate_limiter.get_stats(),
                "configuration": self.rate_limiter.get_config(),
                "client_info": {
                    "request_ip": client_info["request_ip"],
                    "is_local": client_info["is_local"],
                },
            }

        @self.app.post("/api/admin/rate-limit-stats")
        async def rate_limit_action(action: RateLimitAdminRequest, request: Request, response: Response):
            """Admin actions: reset_ip, update_config, get_stats."""
            self.logger.info(
                "Rate limit admin action",
                action=action.action,
                request_ip=get_client_ip(request),
            )
            apply_no_store(response)

            if action.action == "reset_ip":
                if not action.ip:
                    raise ValidationError("IP address is required for reset action")
                self.rate_limiter.reset_ip(action.ip)
                return {
                    "success": True,
                    "message": f"Rate limits reset for IP: {action.ip}",
                    "timestamp": _timestamp(),
                }

            if action.action == "update_config":
                if not action.config:
                    raise ValidationError("Configuration object is required")
                return {
                    "success": True,
                    "message": "Rate limiting configuration updated",
                    "new_config": self.rate_limiter.update_config(action.config),
                    "timestamp": _timestamp(),
                }

            if action.action == "get_stats":
                return {
                    "success": True,
                    "statistics": self.rate_limiter.get_stats(),
                    "timestamp": _timestamp(),
                }

            raise ValidationError(f"Unknown action: {action.action}", details={"action": action.action})


def create_app():
    """Create FastAPI application."""
    service = BookingService()
    return service.app


if __name__ == "__main__":
    service = BookingService()
    service.run()
