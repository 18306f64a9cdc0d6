"""
In-memory TTL cache with an injectable clock.

Usage:
    from dailylearn.utils.cache import TTLCache

    cache = TTLCache(default_ttl=300)
    cache.set("active_topics", topics)
    topics = cache.get("active_topics")
    cache.invalidate("active_topics")
"""

import threading
from datetime import timedelta
from typing import Any, Optional

from dailylearn.utils.dates import Clock, utcnow


class TTLCache:
    """Thread-safe in-memory cache with TTL support."""

    def __init__(self, maxsize: int = 1000, default_ttl: int = 300, clock: Clock = utcnow):
        self._cache: dict = {}
        self._timestamps: dict = {}
        self._lock = threading.Lock()
        self.maxsize = maxsize
        self.default_ttl = default_ttl
        self._clock = clock

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache if not expired."""
        with self._lock:
            if key in self._cache:
                expiry = self._timestamps.get(key)
                if expiry and self._clock() < expiry:
                    return self._cache[key]
                # Expired - clean up
                del self._cache[key]
                del self._timestamps[key]
        return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Set value in cache with TTL."""
        ttl = ttl or self.default_ttl
        with self._lock:
            # Evict soonest-expiring if at capacity
            if len(self._cache) >= self.maxsize and key not in self._cache:
                self._evict_oldest()

            self._cache[key] = value
            self._timestamps[key] = self._clock() + timedelta(seconds=ttl)

    def invalidate(self, key: str) -> bool:
        """Drop a key from the cache."""
        with self._lock:
            if key in self._cache:
                del self._cache[key]
                del self._timestamps[key]
                return True
        return False

    def clear(self) -> None:
        """Clear all cache entries."""
        with self._lock:
            self._cache.clear()
            self._timestamps.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def _evict_oldest(self) -> None:
        if self._timestamps:
            oldest_key = min(self._timestamps.items(), key=lambda x: x[1])[0]
            del self._cache[oldest_key]
            del self._timestamps[oldest_key]
