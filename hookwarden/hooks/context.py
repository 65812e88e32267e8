"""
Execution-context state for hook dispatch.

Both the plugin context and the filter stack live in ContextVars, so
concurrent tasks dispatching or registering hooks never see each other's
state.
"""

from __future__ import annotations

import contextvars
from contextlib import contextmanager
from typing import Iterator, Optional, Tuple

_plugin_context: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "hookwarden_plugin_context", default=None
)


def get_plugin_context() -> Optional[str]:
    """The plugin slug that new registrations are attributed to."""
    return _plugin_context.get()


def set_plugin_context(plugin_slug: Optional[str]) -> contextvars.Token:
    return _plugin_context.set(plugin_slug)


@contextmanager
def plugin_context(plugin_slug: Optional[str]) -> Iterator[Optional[str]]:
    """
    Attribute registrations made inside the block to ``plugin_slug``.

    Usage:
        with plugin_context("my-plugin"):
            manager.add_filter("entity_data", enrich)
    """
    token = _plugin_context.set(plugin_slug)
    try:
        yield plugin_slug
    finally:
        _plugin_context.reset(token)


class FilterExecutionStack:
    """Names of the filters currently being applied, innermost last."""

    def __init__(self, name: str = "hookwarden_filter_stack"):
        self._stack: contextvars.ContextVar[Tuple[str, ...]] = contextvars.ContextVar(
            name, default=()
        )

    def push(self, hook_name: str) -> contextvars.Token:
        return self._stack.set(self._stack.get() + (hook_name,))

    def pop(self, token: contextvars.Token) -> None:
        self._stack.reset(token)

    @contextmanager
    def entered(self, hook_name: str) -> Iterator[None]:
        token = self.push(hook_name)
        try:
            yield
        finally:
            self.pop(token)

    def current(self) -> Optional[str]:
        stack = self._stack.get()
        return stack[-1] if stack else None

    def contains(self, hook_name: Optional[str] = None) -> bool:
        stack = self._stack.get()
        if hook_name is None:
            return bool(stack)
        return hook_name in stack
