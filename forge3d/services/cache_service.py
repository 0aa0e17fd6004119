"""
Read-through cache port.

Routes cache hot reads (balance, project lists) for a few seconds; the
ledger and job store invalidate the affected prefixes when they write.
The backend is injected, so a shared store (e.g. Redis) can replace the
in-process implementation without touching callers.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Callable, Optional, Tuple, TypeVar

T = TypeVar("T")


def cache_key(prefix: str, *parts: Any) -> str:
    """cache_key("credits", "u1") -> "credits:u1"."""
    return ":".join([prefix, *(str(p) for p in parts)])


class TTLCache(ABC):
    @abstractmethod
    def get(self, key: str) -> Any:
        """Return the cached value or None."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def invalidate_prefix(self, prefix: str) -> int:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...

    def cleanup(self) -> int:
        return 0


class MemoryTTLCache(TTLCache):
    """
    Bounded in-process cache. When full, the oldest inserted entry is evicted.
    default_ttl is in seconds.
    """

    def __init__(self, max_size: int = 1000, default_ttl: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[Any, float]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() > expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + (self.default_ttl if ttl is None else ttl)
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
            self._entries[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def cleanup(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, exp) in self._entries.items() if now > exp]
            for k in expired:
                del self._entries[k]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def cached(cache: Optional[TTLCache], key: str, fn: Callable[[], T], ttl: Optional[float] = None) -> T:
    """Return cache[key], computing and storing fn() on a miss."""
    if cache is None:
        return fn()
    value = cache.get(key)
    if value is not None:
        return value
    value = fn()
    if value is not None:
        cache.set(key, value, ttl)
    return value
