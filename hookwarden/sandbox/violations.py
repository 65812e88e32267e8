"""
Sandbox Violations

Raised when a plugin crosses one of its resource limits. Each violation
carries a machine-readable type, structured details and an HTTP-status-like
severity code for logging and audit consumers.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ViolationType(str, Enum):
    """Closed set of sandbox violation kinds."""

    RATE_LIMIT = "rate_limit"
    MEMORY_LIMIT = "memory_limit"
    EXECUTION_TIME = "execution_time"
    STORAGE_LIMIT = "storage_limit"
    NETWORK_LIMIT = "network_limit"
    DOMAIN_BLOCKED = "domain_blocked"
    PLUGIN_BLOCKED = "plugin_blocked"


VIOLATION_CODES: Dict[ViolationType, int] = {
    ViolationType.RATE_LIMIT: 429,
    ViolationType.MEMORY_LIMIT: 429,
    ViolationType.EXECUTION_TIME: 408,
    ViolationType.STORAGE_LIMIT: 429,
    ViolationType.NETWORK_LIMIT: 429,
    ViolationType.DOMAIN_BLOCKED: 403,
    ViolationType.PLUGIN_BLOCKED: 503,
}


class SandboxViolation(Exception):
    """Raised when a plugin exceeds a sandbox limit."""

    def __init__(
        self,
        message: str,
        plugin_slug: str,
        violation_type: ViolationType,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[int] = None,
    ):
        self.message = message
        self.plugin_slug = plugin_slug
        self.violation_type = violation_type
        self.details = details or {}
        self.code = code if code is not None else VIOLATION_CODES[violation_type]
        # Set by PluginSandbox.record_violation; a violation is counted once
        self.recorded = False
        super().__init__(message)

    @classmethod
    def rate_limit_exceeded(
        cls,
        plugin_slug: str,
        limit_type: str,
        limit: int,
    ) -> "SandboxViolation":
        return cls(
            f"Plugin '{plugin_slug}' exceeded rate limit for {limit_type} ({limit})",
            plugin_slug,
            ViolationType.RATE_LIMIT,
            {"limit_type": limit_type, "limit": limit},
        )

    @classmethod
    def memory_limit_exceeded(
        cls,
        plugin_slug: str,
        limit_mb: float,
        used_mb: float,
    ) -> "SandboxViolation":
        return cls(
            f"Plugin '{plugin_slug}' exceeded memory limit: used {used_mb}MB of {limit_mb}MB",
            plugin_slug,
            ViolationType.MEMORY_LIMIT,
            {"limit_mb": limit_mb, "used_mb": used_mb},
        )

    @classmethod
    def execution_time_exceeded(
        cls,
        plugin_slug: str,
        limit_seconds: float,
        elapsed_seconds: float,
    ) -> "SandboxViolation":
        return cls(
            f"Plugin '{plugin_slug}' exceeded execution time limit: "
            f"{elapsed_seconds}s of {limit_seconds}s",
            plugin_slug,
            ViolationType.EXECUTION_TIME,
            {"limit_seconds": limit_seconds, "elapsed_seconds": elapsed_seconds},
        )

    @classmethod
    def storage_limit_exceeded(cls, plugin_slug: str, limit_mb: float) -> "SandboxViolation":
        return cls(
            f"Plugin '{plugin_slug}' exceeded storage limit of {limit_mb}MB",
            plugin_slug,
            ViolationType.STORAGE_LIMIT,
            {"limit_mb": limit_mb},
        )

    @classmethod
    def network_limit_exceeded(cls, plugin_slug: str, limit_bytes: int) -> "SandboxViolation":
        return cls(
            f"Plugin '{plugin_slug}' exceeded daily network limit of {limit_bytes} bytes",
            plugin_slug,
            ViolationType.NETWORK_LIMIT,
            {"limit_bytes": limit_bytes},
        )

    @classmethod
    def domain_not_allowed(cls, plugin_slug: str, domain: str) -> "SandboxViolation":
        return cls(
            f"Plugin '{plugin_slug}' is not allowed to contact domain '{domain}'",
            plugin_slug,
            ViolationType.DOMAIN_BLOCKED,
            {"domain": domain},
        )

    @classmethod
    def plugin_blocked(cls, plugin_slug: str) -> "SandboxViolation":
        return cls(
            f"Plugin '{plugin_slug}' is temporarily blocked",
            plugin_slug,
            ViolationType.PLUGIN_BLOCKED,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Stable shape for logging and audit collaborators."""
        return {
            "message": self.message,
            "plugin": self.plugin_slug,
            "violation_type": self.violation_type.value,
            "details": self.details,
            "code": self.code,
        }
