"""In-process caches for budget limits, alert configuration and spend."""

import logging
import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)

_MISSING = object()


class SpendCacheUnavailableError(Exception):
    """Raised when enforcement data is not cached and the durable store cannot supply it."""


class TTLCache:
    """Thread-safe key -> value cache whose entries expire after ``ttl_seconds``.

    ``None`` is a valid cached value, so negative lookups are cached too.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable, default: Any = None) -> Any:
        """Fresh cached value for ``key``, or ``default``."""
        value = self._lookup(key)
        return default if value is _MISSING else value

    def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        """Fresh cached value, or the result of ``loader()`` which is then cached.

        The loader runs outside the lock; concurrent misses may load twice.
        """
        value = self._lookup(key)
        if value is not _MISSING:
            return value
        value = loader()
        self.put(key, value)
        logger.debug("Cache refreshed for %s", key)
        return value

    def put(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """Drop one entry, or everything when ``key`` is None."""
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _lookup(self, key: Hashable) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return _MISSING
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[key]
                return _MISSING
            return value


class SpendCache:
    """Last known spend totals keyed by (scope key, window, bucket).

    Reads never expire and never load: entries are written by ledger merges and
    by periodic refreshes. Spend only grows, so a write never replaces a larger
    total with a smaller one delivered late by a concurrent writer.
    """

    def __init__(self) -> None:
        self._totals: Dict[Hashable, float] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            return self._totals.get(key, default)

    def record(self, key: Hashable, total: float) -> None:
        with self._lock:
            current = self._totals.get(key)
            if current is None or total > current:
                self._totals[key] = total

    def discard_if(self, predicate: Callable[[Hashable], bool]) -> int:
        """Drop every entry whose key matches ``predicate``."""
        with self._lock:
            stale = [key for key in self._totals if predicate(key)]
            for key in stale:
                del self._totals[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._totals)
