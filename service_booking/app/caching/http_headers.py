"""
HTTP caching headers derived from the same strategy the engine used.
"""

import time
from typing import Optional

from fastapi import Response

from .cache_manager import CacheResult
from .strategies import BOOKING_SENSITIVE_STRATEGIES


NO_STORE = "no-store"


def cache_control_for(strategy: str, ttl_seconds: int) -> str:
    """Build the ``Cache-Control`` value for a strategy and its TTL.

    Booking-sensitive data may be served stale for one extra TTL; everything
    else for two.
    """
    if strategy in BOOKING_SENSITIVE_STRATEGIES:
        stale = ttl_seconds
    else:
        stale = 2 * ttl_seconds
    return f"public, max-age={ttl_seconds}, stale-while-revalidate={stale}"


def apply_cache_headers(
    response: Response,
    result: CacheResult,
    started: Optional[float] = None,
) -> None:
    """Attach cache headers for a cached read.

    ``started`` is a ``time.perf_counter()`` reading taken when the request
    began.
    """
    response.headers["Cache-Control"] = cache_control_for(result.strategy, result.ttl_seconds)
    response.headers["X-Cache"] = "HIT" if result.hit else "MISS"
    response.headers["X-Cache-Type"] = result.cache_type
    response.headers["X-Cache-Strategy"] = result.strategy
    if started is not None:
        response.headers["X-Response-Time"] = f"{round((time.perf_counter() - started) * 1000)}ms"


def apply_no_store(response: Response) -> None:
    """Mark a mutation or admin response as uncacheable."""
    response.headers["Cache-Control"] = NO_STORE
