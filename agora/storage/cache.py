from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple


class EphemeralStore(Protocol):
    """Keyed store with per-key expiry used for denylists and short-lived tokens.

    TTLs are in seconds and may be fractional; backends keep at least
    millisecond resolution.

    ``set_if_absent`` and ``pop`` must be atomic per key so that concurrent
    callers in different processes observe a single winner.
    """

    async def set(self, key: str, value: str, ttl_seconds: float) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool: ...

    async def pop(self, key: str) -> Optional[str]: ...

    async def close(self) -> None: ...


class MemoryCache:
    """In-process EphemeralStore for tests and single-process development.

    Expired entries are dropped lazily on access.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live_value(self, key: str) -> Optional[str]:
        # Caller holds the lock
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    @staticmethod
    def _ttl(ttl_seconds: float) -> float:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        return ttl_seconds

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        ttl = self._ttl(ttl_seconds)
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_value(key) is not None

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        ttl = self._ttl(ttl_seconds)
        with self._lock:
            if self._live_value(key) is not None:
                return False
            self._entries[key] = (value, self._clock() + ttl)
            return True

    async def pop(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live_value(key)
            self._entries.pop(key, None)
            return value

    async def ttl(self, key: str) -> Optional[float]:
        """Seconds until ``key`` expires, or None when absent."""
        with self._lock:
            if self._live_value(key) is None:
                return None
            return self._entries[key][1] - self._clock()

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()


__all__ = ["EphemeralStore", "MemoryCache"]
