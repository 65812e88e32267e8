"""
HookWarden Shared Store

Key-value store with atomic counters used for all cross-request state.
"""

from typing import Optional

from hookwarden.core.config import StoreSettings
from hookwarden.store.base import SharedCounterStore
from hookwarden.store.memory import MemoryCounterStore
from hookwarden.store.redis import RedisCounterStore


def create_store(settings: Optional[StoreSettings] = None) -> SharedCounterStore:
    """Build the store selected by configuration."""
    settings = settings or StoreSettings()
    if settings.backend == "redis":
        return RedisCounterStore.from_settings(settings)
    return MemoryCounterStore()


__all__ = [
    "SharedCounterStore",
    "MemoryCounterStore",
    "RedisCounterStore",
    "create_store",
]
