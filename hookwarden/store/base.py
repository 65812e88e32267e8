"""
Shared Counter Store Interface

Cross-process state (circuit records, rate counters, block records) lives
behind this interface. Implementations must make ``incr`` and
``compare_and_set`` atomic with respect to every other worker sharing the
store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional


class SharedCounterStore(ABC):
    """Abstract key-value store with atomic counters and TTL expiry."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def ttl(self, key: str) -> Optional[float]:
        """Seconds until the key expires, or None if it has no expiry or is absent."""

    @abstractmethod
    async def incr(self, key: str, amount: int = 1, ttl: Optional[int] = None) -> int:
        """
        Atomically increment a counter and return the new value.

        ``ttl`` is only applied when the increment creates the key, which
        gives fixed-window semantics for rate counters.
        """

    @abstractmethod
    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl: Optional[int] = None,
    ) -> bool:
        """
        Atomically replace ``key`` with ``value`` if it currently holds ``expected``.

        ``expected=None`` means the key must be absent.
        """

    @abstractmethod
    async def add_member(self, key: str, member: str) -> None:
        pass

    @abstractmethod
    async def remove_member(self, key: str, member: str) -> None:
        pass

    @abstractmethod
    async def members(self, key: str) -> set[str]:
        pass

    async def close(self) -> None:
        """Release any underlying connections."""
