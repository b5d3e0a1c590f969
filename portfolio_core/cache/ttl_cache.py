# portfolio_core/cache/ttl_cache.py
"""
In-memory key/value cache with per-entry time-to-live.

Expiry is checked lazily on every lookup; ``sweep()`` can be scheduled to
bound memory but nothing relies on it. Keys are namespaced by prefix
("skills:", "portfolio:") so a mutation can drop a whole collection with
``invalidate("skills:")``.
"""
import sys
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from portfolio_core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CacheEntry:
    """A cached value and the moment it was stored."""
    key: str
    value: Any
    stored_at: float
    ttl: float

    def is_valid(self, now: float) -> bool:
        return now - self.stored_at < self.ttl


class TTLCache:
    """Manages cached remote reads for the lifetime of the process."""

    def __init__(
        self,
        default_ttl: float = 300.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize the cache.

        Args:
            default_ttl: TTL in seconds used when set() is called without one
            clock: Monotonic time source, injectable for tests
        """
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        self.default_ttl = default_ttl
        self._clock = clock or time.monotonic
        self._entries: Dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[Any]:
        """
        Look up a value.

        Returns:
            The cached value, or None if absent or expired. None is never
            stored, so a None result is always a miss.
        """
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        if not entry.is_valid(self._clock()):
            del self._entries[key]
            self._misses += 1
            return None

        self._hits += 1
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store a value, replacing any previous entry for the key."""
        if value is None:
            raise ValueError("None cannot be cached; delete the key instead")
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self._entries[key] = CacheEntry(key=key, value=value, stored_at=self._clock(), ttl=ttl)

    def delete(self, key: str) -> bool:
        """Delete a single key. Returns True if it was present."""
        return self._entries.pop(key, None) is not None

    def invalidate(self, prefix: str) -> int:
        """
        Remove every entry whose key starts with ``prefix``.

        Returns:
            Number of entries removed
        """
        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cache entries with prefix '{prefix}'")
        return len(doomed)

    def clear(self) -> None:
        """Remove everything."""
        self._entries.clear()

    def sweep(self) -> int:
        """Evict expired entries. Returns the number evicted."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if not entry.is_valid(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0

    def stats(self) -> Dict[str, Any]:
        """Entry count, approximate footprint and hit ratio since the last reset."""
        lookups = self._hits + self._misses
        approx_bytes = sum(
            sys.getsizeof(key) + sys.getsizeof(entry.value)
            for key, entry in self._entries.items()
        )
        return {
            "entries": len(self._entries),
            "approx_bytes": approx_bytes,
            "hits": self._hits,
            "misses": self._misses,
            "hit_ratio": self._hits / lookups if lookups else 0.0,
        }

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.is_valid(self._clock())

    def __len__(self) -> int:
        return len(self._entries)
