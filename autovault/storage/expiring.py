from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple


class ExpiringStore(Protocol):
    """Keyed counters and flags that expire on their own.

    Holds the token denylist, abuse violation counters and pending-MFA
    markers. Every instance serving traffic must share one backend for
    lockouts and revocations to hold across instances.
    """

    async def increment(self, key: str, ttl_seconds: int) -> int:
        """Increment ``key`` and (re)arm its expiry; return the new count."""
        ...

    async def get(self, key: str) -> int:
        ...

    async def clear(self, key: str) -> None:
        ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    async def get_value(self, key: str) -> Optional[str]:
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def ttl(self, key: str) -> int:
        """Seconds until ``key`` expires, 0 when absent."""
        ...

    async def sweep(self) -> int:
        """Drop expired entries; return how many were removed."""
        ...


class MemoryExpiringStore:
    """Single-process expiring-key map used in tests and dev fallback."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, float]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry

    async def increment(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            entry = self._live(key)
            count = int(entry[0]) + 1 if entry else 1
            self._entries[key] = (str(count), self._clock() + max(1, ttl_seconds))
            return count

    async def get(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
        if not entry:
            return 0
        try:
            return int(entry[0])
        except ValueError:
            return 0

    async def clear(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)

    async def get_value(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
        return entry[0] if entry else None

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if not entry:
                return 0
            return max(0, int(entry[1] - self._clock()))

    async def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, expires) in self._entries.items() if expires <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)
