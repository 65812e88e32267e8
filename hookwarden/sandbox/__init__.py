"""
HookWarden Plugin Sandbox

Resource limits, violation tracking and plugin blocking.
"""

from hookwarden.sandbox.http import SandboxHttpClient
from hookwarden.sandbox.runtime import (
    ExecutionSample,
    ExecutionStats,
    MemoryProbe,
    PluginSandbox,
    RATE_COUNTERS,
)
from hookwarden.sandbox.violations import (
    SandboxViolation,
    VIOLATION_CODES,
    ViolationType,
)

__all__ = [
    "PluginSandbox",
    "ExecutionSample",
    "ExecutionStats",
    "MemoryProbe",
    "RATE_COUNTERS",
    "SandboxHttpClient",
    "SandboxViolation",
    "ViolationType",
    "VIOLATION_CODES",
]
