"""
HookWarden - Sandboxed action/filter hooks for plugin systems

Plugins extend a host application through named actions and filters.
HookWarden dispatches them in priority order while a per-(plugin, hook)
circuit breaker and a resource sandbox keep a misbehaving plugin from
taking the host down with it.
"""

__version__ = "1.0.0"

from hookwarden.audit import AuditEvent, AuditEventType, AuditLogger
from hookwarden.core.config import HookWardenConfig, get_config, set_config
from hookwarden.hooks import Filters, HookManager, Hooks, Priority
from hookwarden.resilience import CircuitBreaker, CircuitState
from hookwarden.sandbox import PluginSandbox, SandboxHttpClient, SandboxViolation, ViolationType
from hookwarden.store import MemoryCounterStore, RedisCounterStore, create_store

__all__ = [
    "__version__",
    "HookManager",
    "Hooks",
    "Filters",
    "Priority",
    "CircuitBreaker",
    "CircuitState",
    "PluginSandbox",
    "SandboxHttpClient",
    "SandboxViolation",
    "ViolationType",
    "MemoryCounterStore",
    "RedisCounterStore",
    "create_store",
    "AuditEvent",
    "AuditEventType",
    "AuditLogger",
    "HookWardenConfig",
    "get_config",
    "set_config",
]
