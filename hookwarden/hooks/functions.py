"""
Module-level hook API.

Thin wrappers around a process-wide HookManager, for plugin code that
registers hooks at import time.

Usage:
    from hookwarden.hooks.functions import add_filter, apply_filters

    add_filter("entity_data", lambda data, entity: {**data, "seen": True})
    data = await apply_filters("entity_data", data, entity)
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from hookwarden.hooks.manager import HookManager
from hookwarden.hooks.types import DEFAULT_PRIORITY, HookRegistration

_hook_manager: Optional[HookManager] = None


def get_hook_manager() -> HookManager:
    """Get the global hook manager, creating it on first use."""
    global _hook_manager
    if _hook_manager is None:
        _hook_manager = HookManager()
    return _hook_manager


def set_hook_manager(manager: Optional[HookManager]) -> None:
    """Replace the global hook manager (``None`` resets it)."""
    global _hook_manager
    _hook_manager = manager


def add_action(
    hook_name: str,
    callback: Callable,
    priority: Any = DEFAULT_PRIORITY,
    plugin: Optional[str] = None,
) -> HookRegistration:
    return get_hook_manager().add_action(hook_name, callback, priority, plugin)


def add_filter(
    hook_name: str,
    callback: Callable,
    priority: Any = DEFAULT_PRIORITY,
    plugin: Optional[str] = None,
) -> HookRegistration:
    return get_hook_manager().add_filter(hook_name, callback, priority, plugin)


async def do_action(hook_name: str, *args: Any, **kwargs: Any) -> None:
    await get_hook_manager().do_action(hook_name, *args, **kwargs)


async def apply_filters(hook_name: str, value: Any, *args: Any, **kwargs: Any) -> Any:
    return await get_hook_manager().apply_filters(hook_name, value, *args, **kwargs)


def has_action(hook_name: str, callback: Optional[Callable] = None) -> bool:
    return get_hook_manager().has_action(hook_name, callback)


def has_filter(hook_name: str, callback: Optional[Callable] = None) -> bool:
    return get_hook_manager().has_filter(hook_name, callback)


def remove_action(hook_name: str, callback: Callable, priority: Any = DEFAULT_PRIORITY) -> bool:
    return get_hook_manager().remove_action(hook_name, callback, priority)


def remove_filter(hook_name: str, callback: Callable, priority: Any = DEFAULT_PRIORITY) -> bool:
    return get_hook_manager().remove_filter(hook_name, callback, priority)


def remove_all_actions(hook_name: str, priority: Optional[int] = None) -> bool:
    return get_hook_manager().remove_all_actions(hook_name, priority)


def remove_all_filters(hook_name: str, priority: Optional[int] = None) -> bool:
    return get_hook_manager().remove_all_filters(hook_name, priority)


def current_filter() -> Optional[str]:
    return get_hook_manager().current_filter()


def doing_filter(hook_name: Optional[str] = None) -> bool:
    return get_hook_manager().doing_filter(hook_name)


def set_plugin_context(plugin_slug: Optional[str]) -> None:
    HookManager.set_plugin_context(plugin_slug)
