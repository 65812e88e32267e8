"""
In-Memory Counter Store

Process-local implementation of the shared store. Used for single-worker
deployments and tests; expiry is passive (checked on access).
"""

from __future__ import annotations

import asyncio
import fnmatch
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from hookwarden.store.base import SharedCounterStore


@dataclass
class _Entry:
    value: Any
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class MemoryCounterStore(SharedCounterStore):
    """
    Dictionary-backed store with TTL support.

    The clock is injectable so tests can move time forward without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl: Optional[int]) -> Optional[float]:
        if ttl is not None and ttl > 0:
            return self._clock() + ttl
        return None

    async def get(self, key: str) -> Optional[str]:
        entry = self._live(key)
        if entry is None or isinstance(entry.value, set):
            return None
        return entry.value

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        async with self._lock:
            self._data[key] = _Entry(value=value, expires_at=self._expiry(ttl))

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            deleted = 0
            for key in keys:
                if self._live(key) is not None:
                    del self._data[key]
                    deleted += 1
            return deleted

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def ttl(self, key: str) -> Optional[float]:
        entry = self._live(key)
        if entry is None or entry.expires_at is None:
            return None
        return max(0.0, entry.expires_at - self._clock())

    async def incr(self, key: str, amount: int = 1, ttl: Optional[int] = None) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                entry = _Entry(value="0", expires_at=self._expiry(ttl))
                self._data[key] = entry
            value = int(entry.value) + amount
            entry.value = str(value)
            return value

    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl: Optional[int] = None,
    ) -> bool:
        async with self._lock:
            entry = self._live(key)
            current = entry.value if entry is not None else None
            if current != expected:
                return False
            self._data[key] = _Entry(value=value, expires_at=self._expiry(ttl))
            return True

    async def add_member(self, key: str, member: str) -> None:
        async with self._lock:
            entry = self._live(key)
            if entry is None or not isinstance(entry.value, set):
                entry = _Entry(value=set())
                self._data[key] = entry
            entry.value.add(member)

    async def remove_member(self, key: str, member: str) -> None:
        async with self._lock:
            entry = self._live(key)
            if entry is not None and isinstance(entry.value, set):
                entry.value.discard(member)

    async def members(self, key: str) -> set[str]:
        entry = self._live(key)
        if entry is None or not isinstance(entry.value, set):
            return set()
        return set(entry.value)

    def keys(self, pattern: str = "*") -> list[str]:
        """Get live keys matching a glob pattern."""
        now = self._clock()
        return [
            k for k, entry in self._data.items()
            if not entry.is_expired(now) and fnmatch.fnmatch(k, pattern)
        ]

    async def clear(self) -> None:
        async with self._lock:
            self._data.clear()
