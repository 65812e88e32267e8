"""
HookWarden Hook Manager

Action and filter hooks for plugin extensibility, with every plugin
callback dispatched through the circuit breaker and the resource sandbox.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Set, Tuple

import structlog

from hookwarden.audit import AuditEvent, AuditEventSeverity, AuditEventType, AuditLogger
from hookwarden.core.config import HookSettings, get_config
import hookwarden.hooks.context as hook_context
from hookwarden.hooks.context import FilterExecutionStack
from hookwarden.hooks.types import (
    DEFAULT_PRIORITY,
    CallOutcome,
    HookRegistration,
    HookType,
)
from hookwarden.resilience.circuit_breaker import CircuitBreaker
from hookwarden.sandbox.runtime import ExecutionSample, PluginSandbox
from hookwarden.sandbox.violations import SandboxViolation
from hookwarden.store import SharedCounterStore, create_store

logger = structlog.get_logger(__name__)

# hook name -> priority -> registrations in registration order
Registry = Dict[str, Dict[int, List[HookRegistration]]]


def normalize_priority(priority: Any) -> int:
    """Priorities that are not plain integers fall back to the default."""
    if isinstance(priority, bool) or not isinstance(priority, int):
        return DEFAULT_PRIORITY
    return int(priority)


class HookManager:
    """
    Action and filter hook dispatcher.

    Features:
    - Priority ordering, FIFO within a priority
    - Registrations attributed to the plugin in context
    - Per-(plugin, hook) circuit breaking
    - Sandbox enforcement for plugin callbacks
    - Failure isolation, with strict mode and critical hooks

    Usage:
        hooks = HookManager()

        with hooks.plugin_context("my-plugin"):
            hooks.add_filter(Filters.ENTITY_DATA, add_timestamps, priority=5)

        data = await hooks.apply_filters(Filters.ENTITY_DATA, data, entity)
        await hooks.do_action(Hooks.ENTITY_RECORD_CREATED, record)
    """

    def __init__(
        self,
        sandbox: Optional[PluginSandbox] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        settings: Optional[HookSettings] = None,
        audit: Optional[AuditLogger] = None,
        store: Optional[SharedCounterStore] = None,
    ):
        self._settings = settings or get_config().hooks
        self._sandbox = sandbox
        self._circuit_breaker = circuit_breaker
        self._audit = audit or AuditLogger()
        self._store = store
        self._owns_store = False

        self._actions: Registry = {}
        self._filters: Registry = {}
        self._sequence = itertools.count(1)
        self._filter_stack = FilterExecutionStack(f"hookwarden_filter_stack_{id(self)}")

        self._debug = self._settings.debug
        self._strict = self._settings.strict
        self._critical_hooks: Set[str] = set(self._settings.critical_hooks)

        # Statistics
        self._execution_count: Dict[str, int] = {}
        self._failed_executions: Deque[Dict[str, Any]] = deque(
            maxlen=self._settings.max_failed_executions
        )

    # === Collaborators ===

    def _get_store(self) -> SharedCounterStore:
        if self._store is None:
            self._store = create_store(get_config().store)
            self._owns_store = True
        return self._store

    def get_sandbox(self) -> PluginSandbox:
        if self._sandbox is None:
            self._sandbox = PluginSandbox(
                self._get_store(),
                get_config().sandbox,
                audit=self._audit,
            )
        return self._sandbox

    def set_sandbox(self, sandbox: Optional[PluginSandbox]) -> None:
        self._sandbox = sandbox

    def get_circuit_breaker(self) -> CircuitBreaker:
        if self._circuit_breaker is None:
            self._circuit_breaker = CircuitBreaker(
                self._get_store(),
                get_config().circuit_breaker,
                audit=self._audit,
            )
        return self._circuit_breaker

    def set_circuit_breaker(self, circuit_breaker: Optional[CircuitBreaker]) -> None:
        self._circuit_breaker = circuit_breaker

    async def close(self) -> None:
        """Close the shared store if this manager created it."""
        if self._owns_store and self._store is not None:
            await self._store.close()
            self._store = None
            self._owns_store = False

    # === Modes ===

    def set_debug_mode(self, enabled: bool) -> None:
        """Include tracebacks when logging callback failures."""
        self._debug = enabled

    def set_strict_mode(self, enabled: bool) -> None:
        """Re-raise every callback failure after it has been recorded."""
        self._strict = enabled

    def add_critical_hook(self, hook_name: str) -> None:
        """Callback failures on this hook are always re-raised."""
        self._critical_hooks.add(hook_name)

    def get_critical_hooks(self) -> List[str]:
        return sorted(self._critical_hooks)

    # === Plugin Context ===

    @staticmethod
    def set_plugin_context(plugin_slug: Optional[str]) -> None:
        hook_context.set_plugin_context(plugin_slug)

    @staticmethod
    def get_plugin_context() -> Optional[str]:
        return hook_context.get_plugin_context()

    @staticmethod
    @contextmanager
    def plugin_context(plugin_slug: Optional[str]) -> Iterator[Optional[str]]:
        with hook_context.plugin_context(plugin_slug) as slug:
            yield slug

    # === Registration ===

    def _register(
        self,
        registry: Registry,
        hook_type: HookType,
        hook_name: str,
        callback: Callable,
        priority: Any,
        plugin: Optional[str],
    ) -> HookRegistration:
        # Registration never fails; a bad callback fails (isolated) at dispatch
        if not callable(callback):
            logger.warning("Registering non-callable hook callback", hook=hook_name)

        registration = HookRegistration(
            hook_name=hook_name,
            hook_type=hook_type,
            callback=callback,
            priority=normalize_priority(priority),
            sequence=next(self._sequence),
            owner_plugin=plugin if plugin is not None else self.get_plugin_context(),
        )
        registry.setdefault(hook_name, {}).setdefault(registration.priority, []).append(
            registration
        )

        logger.debug(
            f"Registered {hook_type.value}",
            hook=hook_name,
            plugin=registration.owner_plugin,
            priority=registration.priority,
        )
        return registration

    def add_action(
        self,
        hook_name: str,
        callback: Callable,
        priority: Any = DEFAULT_PRIORITY,
        plugin: Optional[str] = None,
    ) -> HookRegistration:
        """
        Register an action callback.

        Args:
            hook_name: Action name
            callback: Sync or async callable
            priority: Lower runs earlier; same priority runs in registration order
            plugin: Owning plugin, defaults to the current plugin context

        Returns:
            The registration
        """
        return self._register(self._actions, HookType.ACTION, hook_name, callback, priority, plugin)

    def add_filter(
        self,
        hook_name: str,
        callback: Callable,
        priority: Any = DEFAULT_PRIORITY,
        plugin: Optional[str] = None,
    ) -> HookRegistration:
        """Register a filter callback. It receives the value and returns the new value."""
        return self._register(self._filters, HookType.FILTER, hook_name, callback, priority, plugin)

    # === Dispatch ===

    @staticmethod
    def _snapshot(registry: Registry, hook_name: str) -> List[HookRegistration]:
        buckets = registry.get(hook_name)
        if not buckets:
            return []
        registrations = [
            registration
            for bucket in buckets.values()
            for registration in bucket
        ]
        return sorted(registrations, key=lambda registration: registration.sort_key)

    def _count_execution(self, hook_name: str) -> None:
        self._execution_count[hook_name] = self._execution_count.get(hook_name, 0) + 1

    async def do_action(self, hook_name: str, *args: Any, **kwargs: Any) -> None:
        """Run every callback registered for an action."""
        self._count_execution(hook_name)

        for registration in self._snapshot(self._actions, hook_name):
            await self._guarded_call(registration, args, kwargs)

    async def apply_filters(self, hook_name: str, value: Any, *args: Any, **kwargs: Any) -> Any:
        """
        Pass a value through every filter registered for a hook.

        A filter that fails or is skipped leaves the value as it was.

        Returns:
            The filtered value
        """
        self._count_execution(hook_name)

        with self._filter_stack.entered(hook_name):
            for registration in self._snapshot(self._filters, hook_name):
                outcome = await self._guarded_call(registration, (value, *args), kwargs)
                if outcome.ok:
                    value = outcome.value

        return value

    def current_filter(self) -> Optional[str]:
        """Name of the innermost filter being applied."""
        return self._filter_stack.current()

    def doing_filter(self, hook_name: Optional[str] = None) -> bool:
        """Whether a filter (or the named one) is being applied."""
        return self._filter_stack.contains(hook_name)

    # === Guarded Call ===

    async def _guarded_call(
        self,
        registration: HookRegistration,
        args: Tuple[Any, ...],
        kwargs: Dict[str, Any],
    ) -> CallOutcome:
        hook_name = registration.hook_name
        plugin = registration.owner_plugin

        breaker = self.get_circuit_breaker()
        circuit_key = breaker.hook_key(hook_name, plugin)
        sandbox = self.get_sandbox()
        sandboxed = plugin is not None and sandbox.is_enabled()

        if sandboxed and await sandbox.is_blocked(plugin):
            await sandbox.record_violation(SandboxViolation.plugin_blocked(plugin))
            return CallOutcome.skipped("plugin_blocked")

        if await breaker.is_open(circuit_key):
            logger.debug("Circuit open, skipping callback", hook=hook_name, plugin=plugin)
            return CallOutcome.skipped("circuit_open")

        sample: Optional[ExecutionSample] = None
        if sandboxed:
            try:
                await sandbox.check_rate_limits(plugin, "hook_executions")
            except SandboxViolation as violation:
                await sandbox.record_violation(violation)
                return CallOutcome.skipped("rate_limit")
            sample = sandbox.begin_execution(plugin)

        try:
            value = await self._invoke(registration, args, kwargs, sandbox if sandboxed else None)
        except asyncio.CancelledError:
            if sample is not None:
                await sandbox.end_execution(sample)
            raise
        except Exception as e:
            if sample is not None:
                await sandbox.end_execution(sample)

            await breaker.record_failure(circuit_key)

            if sandboxed:
                if isinstance(e, SandboxViolation):
                    await sandbox.record_violation(e)
                else:
                    await sandbox.record_error(plugin, e)

            await self._record_failure(registration, e)
            if self._strict or hook_name in self._critical_hooks:
                raise
            return CallOutcome.failure(e)

        if sample is not None:
            stats = await sandbox.end_execution(sample)
            for violation in await sandbox.evaluate_execution(stats):
                await sandbox.record_violation(violation)

        await breaker.record_success(circuit_key)

        if sandboxed:
            await sandbox.clear_error_count(plugin)

        return CallOutcome.success(value)

    async def _invoke(
        self,
        registration: HookRegistration,
        args: Tuple[Any, ...],
        kwargs: Dict[str, Any],
        sandbox: Optional[PluginSandbox],
    ) -> Any:
        """
        Call a callback, awaiting it if it is a coroutine.

        Under the sandbox, awaitables run with the plugin's execution time
        limit as a deadline. Plain callables cannot be interrupted.
        """
        result = registration.callback(*args, **kwargs)
        if not inspect.isawaitable(result):
            return result

        if sandbox is None or not sandbox.settings.preempt_async_callbacks:
            return await result

        plugin = registration.owner_plugin
        limit = sandbox.get_plugin_limits(plugin).execution_time_seconds
        try:
            return await asyncio.wait_for(result, timeout=limit)
        except asyncio.TimeoutError as e:
            raise SandboxViolation.execution_time_exceeded(plugin, limit, limit) from e

    async def _record_failure(self, registration: HookRegistration, error: Exception) -> None:
        hook_name = registration.hook_name
        plugin = registration.owner_plugin

        self._failed_executions.append({
            "hook": hook_name,
            "plugin": plugin,
            "error": str(error),
            "error_type": type(error).__name__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

        log_kwargs: Dict[str, Any] = {
            "hook": hook_name,
            "plugin": plugin,
            "error": str(error),
            "error_type": type(error).__name__,
        }
        if self._debug:
            log_kwargs["exc_info"] = error
        logger.error(f"Hook callback exception: {hook_name}", **log_kwargs)

        await self._audit.log(AuditEvent(
            event_type=AuditEventType.HOOK_FAILURE,
            message=f"Callback for '{hook_name}' raised {type(error).__name__}",
            plugin_slug=plugin,
            severity=AuditEventSeverity.ERROR,
            details={"hook": hook_name, "error": str(error)},
        ))

    # === Queries ===

    @staticmethod
    def _has(registry: Registry, hook_name: str, callback: Optional[Callable]) -> bool:
        buckets = registry.get(hook_name)
        if not buckets:
            return False
        if callback is None:
            return True
        return any(
            registration.callback == callback
            for registrations in buckets.values()
            for registration in registrations
        )

    def has_action(self, hook_name: str, callback: Optional[Callable] = None) -> bool:
        return self._has(self._actions, hook_name, callback)

    def has_filter(self, hook_name: str, callback: Optional[Callable] = None) -> bool:
        return self._has(self._filters, hook_name, callback)

    def get_actions(self) -> Registry:
        return {hook: {p: list(regs) for p, regs in buckets.items()} for hook, buckets in self._actions.items()}

    def get_filters(self) -> Registry:
        return {hook: {p: list(regs) for p, regs in buckets.items()} for hook, buckets in self._filters.items()}

    @staticmethod
    def _plugin_hook_names(registry: Registry, plugin_slug: str) -> List[str]:
        return [
            hook_name
            for hook_name, buckets in registry.items()
            if any(
                registration.owner_plugin == plugin_slug
                for registrations in buckets.values()
                for registration in registrations
            )
        ]

    def get_plugin_hooks(self, plugin_slug: str) -> Dict[str, List[str]]:
        """Names of the actions and filters a plugin has registered for."""
        return {
            "actions": self._plugin_hook_names(self._actions, plugin_slug),
            "filters": self._plugin_hook_names(self._filters, plugin_slug),
        }

    def get_stats(self) -> Dict[str, Any]:
        def count(registry: Registry) -> int:
            return sum(len(regs) for buckets in registry.values() for regs in buckets.values())

        return {
            "total_actions": len(self._actions),
            "total_filters": len(self._filters),
            "action_callbacks": count(self._actions),
            "filter_callbacks": count(self._filters),
            "execution_counts": dict(self._execution_count),
            "failed_executions": len(self._failed_executions),
        }

    def get_failed_executions(self) -> List[Dict[str, Any]]:
        return list(self._failed_executions)

    def clear_failed_executions(self) -> None:
        self._failed_executions.clear()

    # === Removal ===

    @staticmethod
    def _remove(registry: Registry, hook_name: str, callback: Callable, priority: Any) -> bool:
        buckets = registry.get(hook_name)
        priority = normalize_priority(priority)
        if not buckets or priority not in buckets:
            return False

        registrations = buckets[priority]
        for index, registration in enumerate(registrations):
            if registration.callback == callback:
                del registrations[index]
                if not registrations:
                    del buckets[priority]
                if not buckets:
                    del registry[hook_name]
                return True
        return False

    @staticmethod
    def _remove_all(registry: Registry, hook_name: str, priority: Any) -> bool:
        if hook_name.endswith("*"):
            prefix = hook_name[:-1]
            matched = [name for name in registry if name.startswith(prefix)]
            for name in matched:
                del registry[name]
            return bool(matched)

        buckets = registry.get(hook_name)
        if not buckets:
            return False

        if priority is None:
            del registry[hook_name]
            return True

        removed = buckets.pop(normalize_priority(priority), None) is not None
        if not buckets:
            del registry[hook_name]
        return removed

    @staticmethod
    def _remove_plugin(registry: Registry, plugin_slug: str) -> int:
        removed = 0
        for hook_name in list(registry):
            buckets = registry[hook_name]
            for priority in list(buckets):
                kept = [r for r in buckets[priority] if r.owner_plugin != plugin_slug]
                removed += len(buckets[priority]) - len(kept)
                if kept:
                    buckets[priority] = kept
                else:
                    del buckets[priority]
            if not buckets:
                del registry[hook_name]
        return removed

    def remove_action(self, hook_name: str, callback: Callable, priority: Any = DEFAULT_PRIORITY) -> bool:
        return self._remove(self._actions, hook_name, callback, priority)

    def remove_filter(self, hook_name: str, callback: Callable, priority: Any = DEFAULT_PRIORITY) -> bool:
        return self._remove(self._filters, hook_name, callback, priority)

    def remove_all_actions(self, hook_name: str, priority: Optional[int] = None) -> bool:
        """Remove every callback for an action; a trailing ``*`` matches by prefix."""
        return self._remove_all(self._actions, hook_name, priority)

    def remove_all_filters(self, hook_name: str, priority: Optional[int] = None) -> bool:
        """Remove every callback for a filter; a trailing ``*`` matches by prefix."""
        return self._remove_all(self._filters, hook_name, priority)

    def remove_plugin_actions(self, plugin_slug: str) -> int:
        return self._remove_plugin(self._actions, plugin_slug)

    def remove_plugin_filters(self, plugin_slug: str) -> int:
        return self._remove_plugin(self._filters, plugin_slug)

    def remove_plugin_hooks(self, plugin_slug: str) -> int:
        """Remove everything a plugin registered. Returns the number removed."""
        removed = self.remove_plugin_actions(plugin_slug) + self.remove_plugin_filters(plugin_slug)
        logger.debug("Removed plugin hooks", plugin=plugin_slug, removed=removed)
        return removed

    def clear(self) -> None:
        """Drop every registration and execution count."""
        self._actions.clear()
        self._filters.clear()
        self._execution_count.clear()
