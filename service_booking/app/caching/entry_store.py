"""
Expiry-aware key -> entry map for the process memory tier.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from shared.errors import StoreFault


Clock = Callable[[], float]


@dataclass(frozen=True)
class CacheEntry:
    """A cached value and the absolute instant it stops being valid."""

    value: Any
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


class EntryStore:
    """
    Thread-safe mapping of cache key to :class:`CacheEntry`.

    Each public operation runs under one lock and never awaits, so it is
    atomic for both asyncio tasks and threadpool route handlers. Lookups
    delete an expired entry in the same critical section that observed it
    expired, which keeps a concurrent ``put`` from being undone.
    """

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def now(self) -> float:
        return self._clock()

    def put(self, key: str, value: Any, ttl_seconds: float) -> CacheEntry:
        """Insert or replace ``key``; it expires ``ttl_seconds`` from now."""
        entry = CacheEntry(value=value, expires_at=self._clock() + ttl_seconds)
        with self._lock:
            self._entries[key] = entry
        return entry

    def put_entry(self, key: str, entry: CacheEntry) -> None:
        """Insert an entry whose expiry was computed elsewhere."""
        with self._lock:
            self._entries[key] = entry

    def lookup(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for ``key``, or None if absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if not isinstance(entry, CacheEntry):
                raise StoreFault(
                    "Corrupt cache entry",
                    details={"key": key, "type": type(entry).__name__},
                )
            if entry.is_fresh(self._clock()):
                return entry
            del self._entries[key]
            return None

    def get(self, key: str, default: Any = None) -> Any:
        entry = self.lookup(key)
        return default if entry is None else entry.value

    def delete_exact(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def delete_by_substring(self, substring: str) -> int:
        """Remove every entry whose key contains ``substring``."""
        with self._lock:
            doomed = [key for key in self._entries if substring in key]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def purge_expired(self, keys: Optional[Iterable[str]] = None) -> int:
        """
        Remove expired entries, optionally only among ``keys``.

        Expiry is re-checked under the lock, so a key refreshed after it was
        listed survives.
        """
        removed = 0
        with self._lock:
            now = self._clock()
            candidates = list(self._entries) if keys is None else list(keys)
            for key in candidates:
                entry = self._entries.get(key)
                if isinstance(entry, CacheEntry) and not entry.is_fresh(now):
                    del self._entries[key]
                    removed += 1
        return removed

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries
