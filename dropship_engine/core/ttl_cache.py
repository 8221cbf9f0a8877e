"""
TTL cache for slow-changing supplier data

Purpose:
- Avoids re-fetching supplier category trees on every call
- TTL: 1 hour (configurable)
- Expired entries are kept until evicted so that callers can fall back to
  the last good value when the supplier rate-limits us (get_stale)
- Max size: LRU eviction

Usage:
    cache = TTLCache(ttl_seconds=3600)
    cached = cache.get("categories")
    if cached is None:
        cache.set("categories", await fetch())
"""
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Optional, Tuple

logger = logging.getLogger(__name__)


class TTLCache:
    """
    LRU cache with TTL.

    Thread-safe for single-threaded async usage (standard in asyncio).

    Attributes:
        ttl_seconds: Time-to-live for fresh entries
        max_size: Maximum cache entries before LRU eviction
    """

    def __init__(
        self,
        ttl_seconds: float = 3600,
        max_size: int = 128,
        clock: Callable[[], float] = time.time,
        name: str = "cache",
    ):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.name = name
        self._clock = clock
        self._cache: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()

    def get(self, key: str) -> Optional[Any]:
        """Return the value if present and younger than the TTL."""
        entry = self._cache.get(key)
        if entry is None:
            return None

        timestamp, value = entry
        if self._clock() - timestamp > self.ttl_seconds:
            logger.debug(f"[{self.name.upper()}] Expired: {key}")
            return None

        self._cache.move_to_end(key)
        return value

    def get_stale(self, key: str) -> Optional[Any]:
        """Return the value regardless of age, or None if never cached."""
        entry = self._cache.get(key)
        return entry[1] if entry else None

    def set(self, key: str, value: Any) -> None:
        if key in self._cache:
            self._cache.move_to_end(key)
        self._cache[key] = (self._clock(), value)

        while len(self._cache) > self.max_size:
            evicted, _ = self._cache.popitem(last=False)
            logger.debug(f"[{self.name.upper()}] Evicted: {evicted}")

    def invalidate(self, key: Optional[str] = None) -> None:
        """Drop one key, or everything when key is None."""
        if key is None:
            self._cache.clear()
        else:
            self._cache.pop(key, None)
