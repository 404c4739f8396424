"""
Progressive attempt limiter for login and booking attempts.

Tracks attempts by client IP and by patient X-number in a sliding window.
Failures escalate from a CAPTCHA requirement to a temporary IP block.
"""

import math
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from shared.errors import ValidationError
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


class RateLimitConfig(BaseModel):
    """Attempt limiter thresholds."""

    model_config = ConfigDict(extra="forbid")

    max_attempts_per_ip: int = Field(default=10, gt=0)
    max_attempts_per_x_number: int = Field(default=5, gt=0)
    time_window_minutes: int = Field(default=15, gt=0)

    captcha_threshold: int = Field(default=3, gt=0)
    block_threshold: int = Field(default=8, gt=0)
    block_duration_minutes: int = Field(default=30, gt=0)

    # Distinct X-numbers from one IP before it is treated as suspicious
    suspicious_pattern_threshold: int = Field(default=5, gt=0)
    max_unique_x_numbers_per_ip: int = Field(default=10, gt=0)


@dataclass(frozen=True)
class Attempt:
    ip: str
    x_number: Optional[str]
    timestamp: float
    success: bool
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of :meth:`AttemptRateLimiter.check`."""

    allowed: bool
    remaining_attempts: int
    reset_at: float
    requires_captcha: bool
    block_minutes: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AttemptRateLimiter:
    """In-memory sliding-window limiter keyed by IP and X-number."""

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.config = config or RateLimitConfig()
        self.metrics = metrics
        self.logger = get_logger("booking.rate_limiter")
        self._clock = clock
        self._lock = threading.Lock()

        self._attempts: Dict[str, List[Attempt]] = {}
        self._blocked_until: Dict[str, float] = {}
        self._suspicious: Set[str] = set()

    def check(self, ip: str, x_number: Optional[str] = None) -> RateLimitDecision:
        """Decide whether an attempt from ``ip`` (for ``x_number``) may proceed."""
        with self._lock:
            decision = self._check_locked(ip, x_number)

        if self.metrics:
            self.metrics.increment_counter(
                "rate_limit_decisions_total",
                decision="allowed" if decision.allowed else "blocked",
            )
        if not decision.allowed:
            self.logger.warning(
                "Attempt rejected by rate limiter",
                ip=ip,
                x_number=x_number,
                reason=decision.reason,
            )
        return decision

    def _check_locked(self, ip: str, x_number: Optional[str]) -> RateLimitDecision:
        cfg = self.config
        now = self._clock()
        self._cleanup(now)
        window = cfg.time_window_minutes * 60

        blocked_until = self._blocked_until.get(ip)
        if blocked_until and blocked_until > now:
            return RateLimitDecision(
                allowed=False,
                remaining_attempts=0,
                reset_at=blocked_until,
                requires_captcha=True,
                block_minutes=math.ceil((blocked_until - now) / 60),
                reason="IP temporarily blocked due to suspicious activity",
            )

        ip_attempts = self._recent(self._attempts.get(ip, []), now)
        failed_ip = sum(1 for a in ip_attempts if not a.success)

        failed_x_number = 0
        if x_number:
            failed_x_number = sum(
                1
                for attempts in self._attempts.values()
                for a in self._recent(attempts, now)
                if a.x_number == x_number and not a.success
            )

        unique_x_numbers = {a.x_number for a in ip_attempts if a.x_number}
        if len(unique_x_numbers) >= cfg.suspicious_pattern_threshold:
            self._suspicious.add(ip)

        requires_captcha = (
            failed_ip >= cfg.captcha_threshold
            or failed_x_number >= cfg.captcha_threshold
            or ip in self._suspicious
        )

        if failed_ip >= cfg.block_threshold:
            until = now + cfg.block_duration_minutes * 60
            self._blocked_until[ip] = until
            self.logger.warning("IP blocked", ip=ip, failed_attempts=failed_ip, until=until)
            return RateLimitDecision(
                allowed=False,
                remaining_attempts=0,
                reset_at=until,
                requires_captcha=True,
                block_minutes=cfg.block_duration_minutes,
                reason="Too many failed attempts. IP temporarily blocked.",
            )

        ip_exceeded = failed_ip >= cfg.max_attempts_per_ip
        x_number_exceeded = bool(x_number) and failed_x_number >= cfg.max_attempts_per_x_number
        if len(unique_x_numbers) >= cfg.max_unique_x_numbers_per_ip and x_number not in unique_x_numbers:
            return RateLimitDecision(
                allowed=False,
                remaining_attempts=0,
                reset_at=now + window,
                requires_captcha=True,
                reason="Too many different X-numbers from this device. Please try again later.",
            )
        if ip_exceeded or x_number_exceeded:
            return RateLimitDecision(
                allowed=False,
                remaining_attempts=0,
                reset_at=now + window,
                requires_captcha=True,
                reason=(
                    "Too many attempts from this device. Please try again later."
                    if ip_exceeded
                    else "Too many attempts for this X-number. Please try again later."
                ),
            )

        remaining = cfg.max_attempts_per_ip - failed_ip
        if x_number:
            remaining = min(remaining, cfg.max_attempts_per_x_number - failed_x_number)

        return RateLimitDecision(
            allowed=True,
            remaining_attempts=remaining,
            reset_at=now + window,
            requires_captcha=requires_captcha,
        )

    def record_attempt(
        self,
        ip: str,
        success: bool,
        x_number: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Record the outcome of an attempt that was allowed through."""
        attempt = Attempt(ip=ip, x_number=x_number, timestamp=self._clock(), success=success, user_agent=user_agent)
        with self._lock:
            self._attempts.setdefault(ip, []).append(attempt)
            if success:
                self._suspicious.discard(ip)

        self.logger.info(
            "Attempt recorded",
            ip=ip,
            x_number=x_number,
            success=success,
        )

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            self._cleanup(self._clock())
            total = sum(len(attempts) for attempts in self._attempts.values())
            failed = sum(1 for attempts in self._attempts.values() for a in attempts if not a.success)
            return {
                "total_attempts": total,
                "failed_attempts": failed,
                "blocked_ips": len(self._blocked_until),
                "suspicious_ips": len(self._suspicious),
                "unique_ips": len(self._attempts),
            }

    def reset_ip(self, ip: str) -> None:
        """Forget everything about ``ip`` (admin action)."""
        with self._lock:
            self._attempts.pop(ip, None)
            self._blocked_until.pop(ip, None)
            self._suspicious.discard(ip)
        self.logger.info("Rate limits reset for IP", ip=ip)

    def get_config(self) -> Dict[str, int]:
        return self.config.model_dump()

    def update_config(self, changes: Mapping[str, Any]) -> Dict[str, int]:
        """Apply a partial configuration update.

        The merged configuration is validated as a whole; an invalid update
        raises ValidationError and changes nothing.
        """
        try:
            updated = RateLimitConfig(**{**self.config.model_dump(), **dict(changes)})
        except PydanticValidationError as exc:
            raise ValidationError(
                "Invalid rate limit configuration",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

        with self._lock:
            self.config = updated
        self.logger.info("Rate limiter configuration updated", changes=dict(changes))
        return self.get_config()

    def _recent(self, attempts: List[Attempt], now: float) -> List[Attempt]:
        window_start = now - self.config.time_window_minutes * 60
        return [a for a in attempts if a.timestamp > window_start]

    def _cleanup(self, now: float) -> None:
        # Attempts are kept for twice the window.
        cutoff = now - self.config.time_window_minutes * 60 * 2
        for ip in list(self._attempts):
            recent = [a for a in self._attempts[ip] if a.timestamp > cutoff]
            if recent:
                self._attempts[ip] = recent
            else:
                del self._attempts[ip]

        for ip, until in list(self._blocked_until.items()):
            if until <= now:
                del self._blocked_until[ip]
