"""
Named freshness policies for booking data.

Every cached read names one of these strategies; the TTL for a key is never
chosen by the endpoint itself.
"""

import threading
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from shared.errors import ConfigurationError
from shared.logging import get_logger


DEFAULT_CACHE_STRATEGIES: Dict[str, int] = {
    "departments": 3600,     # directory rarely changes
    "monthlyStats": 300,
    "recentActivity": 60,
    "userStats": 30,
    "dashboardStats": 30,
    "availableSlots": 15,    # booking critical
    "appointments": 10,
    "calendar": 5,
}

# Strategies whose data decides whether a slot can still be booked.
BOOKING_SENSITIVE_STRATEGIES = frozenset({"availableSlots", "appointments", "calendar"})

# Must be strictly decreasing in TTL whenever all are present.
FRESHNESS_ORDERING: Tuple[str, ...] = ("departments", "dashboardStats", "availableSlots")


class StrategyTable:
    """Strategy name -> TTL in seconds."""

    def __init__(
        self,
        strategies: Optional[Mapping[str, int]] = None,
        overrides: Optional[Mapping[str, int]] = None,
    ):
        self.logger = get_logger("booking.cache.strategies")
        self._lock = threading.Lock()

        table = dict(DEFAULT_CACHE_STRATEGIES if strategies is None else strategies)
        if overrides:
            unknown = sorted(set(overrides) - set(table))
            if unknown:
                raise ConfigurationError(
                    "Overrides name unknown cache strategies",
                    details={"unknown": unknown},
                )
            table.update(overrides)

        self._validate(table)
        self._ttls: Dict[str, int] = table

    def ttl_for(self, strategy: str) -> int:
        """Return the TTL for ``strategy`` or raise ConfigurationError."""
        try:
            return self._ttls[strategy]
        except KeyError:
            raise ConfigurationError(
                f"Unknown cache strategy: {strategy!r}",
                details={"strategy": strategy, "known": sorted(self._ttls)},
            ) from None

    def require(self, *strategies: str) -> None:
        """Fail fast at startup if any of ``strategies`` is not configured."""
        missing = [name for name in strategies if name not in self._ttls]
        if missing:
            raise ConfigurationError(
                "Required cache strategies are not configured",
                details={"missing": missing},
            )

    def update(self, overrides: Mapping[str, int]) -> Dict[str, int]:
        """Apply TTL overrides for existing strategies.

        The whole update is validated first; a rejected update leaves the
        table untouched.
        """
        with self._lock:
            unknown = sorted(set(overrides) - set(self._ttls))
            if unknown:
                raise ConfigurationError(
                    "Cannot update unknown cache strategies",
                    details={"unknown": unknown},
                )
            candidate = dict(self._ttls)
            candidate.update(overrides)
            self._validate(candidate)
            self._ttls = candidate

        self.logger.info("Cache strategies updated", overrides=dict(overrides))
        return self.as_dict()

    def as_dict(self) -> Dict[str, int]:
        """Return a copy of the table."""
        return dict(self._ttls)

    def names(self) -> List[str]:
        return list(self._ttls)

    def is_booking_sensitive(self, strategy: str) -> bool:
        return strategy in BOOKING_SENSITIVE_STRATEGIES

    def __contains__(self, strategy: object) -> bool:
        return strategy in self._ttls

    def __len__(self) -> int:
        return len(self._ttls)

    @staticmethod
    def _validate(table: Mapping[str, int]) -> None:
        for name, ttl in table.items():
            if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl <= 0:
                raise ConfigurationError(
                    f"TTL for cache strategy {name!r} must be a positive integer",
                    details={"strategy": name, "ttl": ttl},
                )

        present = [name for name in FRESHNESS_ORDERING if name in table]
        if len(present) == len(FRESHNESS_ORDERING):
            ttls = [table[name] for name in FRESHNESS_ORDERING]
            if not _strictly_decreasing(ttls):
                raise ConfigurationError(
                    "Cache strategies must keep reference data fresher-longer than booking data",
                    details={name: table[name] for name in FRESHNESS_ORDERING},
                )


def _strictly_decreasing(values: Iterable[int]) -> bool:
    values = list(values)
    return all(a > b for a, b in zip(values, values[1:]))
