"""TTL (Time-To-Live) cache for short-lived in-process state."""

import asyncio
import time
from collections.abc import Callable
from typing import Any


class TTLCache:
    """Simple TTL cache keyed by tuples; entries expire lazily on access."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.time):
        """Initialize TTL cache.

        Args:
            ttl: Time-to-live in seconds
            clock: Time source returning seconds, injectable for tests
        """
        self.ttl = ttl
        self.clock = clock
        self.cache: dict[tuple, tuple[float, Any]] = {}
        self.lock = asyncio.Lock()

    async def get(self, key: tuple) -> Any | None:
        """Get value from cache if not expired."""
        async with self.lock:
            if key in self.cache:
                timestamp, value = self.cache[key]
                if self.clock() - timestamp < self.ttl:
                    return value
                else:
                    # Remove expired entry
                    del self.cache[key]
            return None

    async def set(self, key: tuple, value: Any, timestamp: float | None = None) -> None:
        """Set value in cache, stamped with `timestamp` or the current time."""
        async with self.lock:
            self.cache[key] = (self.clock() if timestamp is None else timestamp, value)

    async def pop(self, key: tuple) -> Any | None:
        """Remove and return a live value, or None."""
        async with self.lock:
            entry = self.cache.pop(key, None)
            if entry is None or self.clock() - entry[0] >= self.ttl:
                return None
            return entry[1]

    async def items(self) -> list[tuple[tuple, Any]]:
        """Return (key, value) pairs of live entries, purging expired ones."""
        async with self.lock:
            self._purge_expired()
            return [(key, value) for key, (_, value) in self.cache.items()]

    async def clear(self) -> None:
        """Clear all cache entries."""
        async with self.lock:
            self.cache.clear()

    async def cleanup_expired(self) -> None:
        """Remove all expired entries from cache."""
        async with self.lock:
            self._purge_expired()

    def _purge_expired(self) -> None:
        current_time = self.clock()
        expired_keys = [
            key
            for key, (timestamp, _) in self.cache.items()
            if current_time - timestamp >= self.ttl
        ]
        for key in expired_keys:
            del self.cache[key]
