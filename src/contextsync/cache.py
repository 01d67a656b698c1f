"""Simple TTL cache for ContextSync.

This module provides an in-memory cache with time-to-live (TTL)
expiration. Instances are injected where short-lived state is needed:
pending OAuth state tokens, resolved chat user names, and seen webhook
event ids.

Example:
    cache = TTLCache(ttl=600, max_size=1000)  # 10 min TTL
    cache.set("state-token", ("alice", "slack"))
    owner = cache.pop("state-token")  # One-shot read
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from contextsync.constants import DEFAULT_CACHE_MAX_SIZE, DEFAULT_CACHE_TTL_SECONDS


class CacheEntry:
    """A cache entry with value and expiration time.

    Attributes:
        value: The cached value.
        expires_at: Clock time when this entry expires.
    """

    __slots__ = ("expires_at", "value")

    def __init__(self, value: Any, expires_at: float) -> None:
        self.value = value
        self.expires_at = expires_at

    def is_expired(self, now: float) -> bool:
        """Check if this entry has expired at `now`."""
        return now > self.expires_at


class TTLCache:
    """Simple in-memory TTL cache.

    Uses a dict with expiry times. Evicts expired entries lazily on access
    and when the cache is full, then the oldest entry if still at capacity.

    Attributes:
        _cache: The underlying cache dictionary.
        _ttl: Time-to-live in seconds for new entries.
        _max_size: Maximum number of entries.
        _clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_CACHE_TTL_SECONDS,
        max_size: int = DEFAULT_CACHE_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the cache.

        Args:
            ttl: Time-to-live in seconds for cache entries.
            max_size: Maximum number of items in cache.
            clock: Source of monotonic time.
        """
        self._cache: dict[str, CacheEntry] = {}
        self._ttl = ttl
        self._max_size = max_size
        self._clock = clock

    def get(self, key: str) -> Any | None:
        """Get a value from the cache.

        Args:
            key: Cache key.

        Returns:
            Cached value or None if not found/expired.
        """
        entry = self._cache.get(key)

        if entry is None:
            return None

        if entry.is_expired(self._clock()):
            del self._cache[key]
            return None

        return entry.value

    def pop(self, key: str) -> Any | None:
        """Remove a key and return its value if it had not expired."""
        entry = self._cache.pop(key, None)
        if entry is None or entry.is_expired(self._clock()):
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Set a value in the cache.

        Args:
            key: Cache key.
            value: Value to cache.
            ttl: Override of the default time-to-live for this entry.
        """
        if len(self._cache) >= self._max_size and key not in self._cache:
            self._evict_expired()

        if len(self._cache) >= self._max_size and key not in self._cache:
            oldest_key = next(iter(self._cache))
            del self._cache[oldest_key]

        lifetime = self._ttl if ttl is None else ttl
        self._cache[key] = CacheEntry(value, self._clock() + lifetime)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def invalidate(self, key: str) -> None:
        """Remove a specific key from the cache."""
        self._cache.pop(key, None)

    def clear(self) -> None:
        """Clear all cache entries."""
        self._cache.clear()

    def _evict_expired(self) -> None:
        """Remove all expired entries from the cache."""
        now = self._clock()
        expired_keys = [key for key, entry in self._cache.items() if entry.is_expired(now)]
        for key in expired_keys:
            del self._cache[key]

    def __len__(self) -> int:
        """Return the number of entries, including potentially expired ones."""
        return len(self._cache)
