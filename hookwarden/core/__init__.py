"""
HookWarden Core

Configuration and logging shared by every subsystem.
"""

from hookwarden.core.config import (
    CircuitBreakerSettings,
    HookSettings,
    HookWardenConfig,
    SandboxLimits,
    SandboxSettings,
    StoreSettings,
    get_config,
    reset_config,
    set_config,
)
from hookwarden.core.logging import setup_logging

__all__ = [
    "CircuitBreakerSettings",
    "HookSettings",
    "HookWardenConfig",
    "SandboxLimits",
    "SandboxSettings",
    "StoreSettings",
    "get_config",
    "reset_config",
    "set_config",
    "setup_logging",
]
