"""
HookWarden Hooks

Action and filter hook dispatch.
"""

from hookwarden.hooks.context import FilterExecutionStack, plugin_context
from hookwarden.hooks.manager import HookManager, normalize_priority
from hookwarden.hooks.types import (
    DEFAULT_PRIORITY,
    CallOutcome,
    Filters,
    HookRegistration,
    Hooks,
    HookType,
    OutcomeStatus,
    Priority,
)

__all__ = [
    "HookManager",
    "HookRegistration",
    "HookType",
    "Hooks",
    "Filters",
    "Priority",
    "DEFAULT_PRIORITY",
    "CallOutcome",
    "OutcomeStatus",
    "FilterExecutionStack",
    "plugin_context",
    "normalize_priority",
]
