"""
HookWarden Plugin Sandbox

Cooperative, in-process resource sandbox for plugin code. Plugins share the
host's memory space, so the sandbox constrains them through counters,
post-hoc measurement and voluntary checks before risky operations:

- Per-plugin limits merged over process-wide defaults
- Call-scoped execution tracking (time and memory)
- Fixed-window rate limits held in the shared store
- Daily usage ceilings (API calls, storage, network bytes)
- Network domain whitelists
- Temporary block list with automatic escalation on repeated violations
"""

from __future__ import annotations

import contextvars
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

import psutil
import structlog

from hookwarden.audit import AuditEvent, AuditEventSeverity, AuditEventType, AuditLogger
from hookwarden.core.config import SandboxLimits, SandboxSettings
from hookwarden.sandbox.violations import SandboxViolation, ViolationType
from hookwarden.store.base import SharedCounterStore

if sys.platform != "win32":
    import resource

logger = structlog.get_logger(__name__)

MB = 1024 * 1024

RATE_WINDOW_SECONDS = 60
USAGE_TTL_SECONDS = 2 * 86400

# Counter name -> limit field
RATE_COUNTERS: Dict[str, str] = {
    "api_requests": "api_requests_per_minute",
    "hook_executions": "hook_executions_per_minute",
    "entity_reads": "entity_reads_per_minute",
    "entity_writes": "entity_writes_per_minute",
    "network_requests": "network_requests_per_minute",
}

USAGE_FIELDS = (
    "api_requests",
    "hook_executions",
    "execution_ms",
    "network_bytes_out",
    "network_bytes_in",
    "errors",
    "rate_limit_hits",
    "timeouts",
)


@dataclass(frozen=True, eq=False)
class ExecutionSample:
    """Start-of-call measurements for one guarded invocation."""

    plugin: str
    started_at: float
    start_memory_bytes: int


@dataclass
class ExecutionStats:
    """Measurements for one completed invocation."""

    plugin: Optional[str]
    execution_time_ms: float = 0.0
    memory_used_bytes: int = 0
    peak_memory_bytes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plugin": self.plugin,
            "execution_time_ms": self.execution_time_ms,
            "memory_used_bytes": self.memory_used_bytes,
            "peak_memory_bytes": self.peak_memory_bytes,
        }


class MemoryProbe:
    """Reads process memory figures."""

    def __init__(self):
        self._process = psutil.Process()

    def current(self) -> int:
        """Resident set size in bytes."""
        return self._process.memory_info().rss

    def peak(self) -> int:
        """Peak resident set size in bytes."""
        if sys.platform == "win32":
            return getattr(self._process.memory_info(), "peak_wset", 0)

        usage = resource.getrusage(resource.RUSAGE_SELF)
        if sys.platform == "darwin":
            return usage.ru_maxrss
        return usage.ru_maxrss * 1024  # Linux reports KB


class PluginSandbox:
    """
    Resource sandbox for plugin callbacks.

    All cross-request state goes through the shared store, so limits and
    blocks hold across every worker process that shares it.

    Usage:
        sandbox = PluginSandbox(store, settings)

        if not await sandbox.is_blocked("my-plugin"):
            await sandbox.check_rate_limits("my-plugin", "hook_executions")
            sample = sandbox.begin_execution("my-plugin")
            ...
            stats = await sandbox.end_execution(sample)
    """

    RATE_PREFIX = "sandbox:rate:"
    USAGE_PREFIX = "sandbox:usage:"
    STORAGE_PREFIX = "sandbox:storage:"
    BLOCKED_PREFIX = "sandbox:blocked:"
    VIOLATIONS_PREFIX = "sandbox:violations:"
    ERRORS_PREFIX = "sandbox:errors:"

    def __init__(
        self,
        store: SharedCounterStore,
        settings: Optional[SandboxSettings] = None,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.time,
        memory_probe: Optional[MemoryProbe] = None,
    ):
        self._store = store
        self._settings = settings or SandboxSettings()
        self._audit = audit or AuditLogger()
        self._clock = clock
        self._probe = memory_probe or MemoryProbe()
        self._enabled = self._settings.enabled
        self._plugin_limits: Dict[str, SandboxLimits] = {}
        self._executions: contextvars.ContextVar[tuple] = contextvars.ContextVar(
            f"hookwarden_executions_{id(self)}", default=()
        )

    @property
    def settings(self) -> SandboxSettings:
        return self._settings

    # === Configuration ===

    def is_enabled(self) -> bool:
        """Global kill-switch; when off, limit checks are no-ops."""
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        logger.info("Sandbox toggled", enabled=enabled)

    def get_default_limits(self) -> SandboxLimits:
        return self._settings.limits.model_copy(deep=True)

    def set_plugin_limits(
        self,
        plugin_slug: str,
        limits: Union[SandboxLimits, Dict[str, Any]],
    ) -> SandboxLimits:
        """Set limit overrides for a plugin; missing keys fall back to defaults."""
        if isinstance(limits, SandboxLimits):
            merged = limits
        else:
            merged = self._settings.limits.merged(limits)
        self._plugin_limits[plugin_slug] = merged
        return merged

    def get_plugin_limits(self, plugin_slug: str) -> SandboxLimits:
        return self._plugin_limits.get(plugin_slug) or self._settings.limits

    def clear_plugin_limits(self, plugin_slug: str) -> None:
        self._plugin_limits.pop(plugin_slug, None)

    # === Execution Tracking ===

    def begin_execution(self, plugin_slug: str) -> ExecutionSample:
        """
        Start tracking one invocation.

        The returned sample must be handed back to ``end_execution``.
        Samples are also kept on a context-local stack, so nested
        invocations for other plugins never overwrite each other.
        """
        sample = ExecutionSample(
            plugin=plugin_slug,
            started_at=time.perf_counter(),
            start_memory_bytes=self._probe.current(),
        )
        self._executions.set(self._executions.get() + (sample,))
        return sample

    async def end_execution(self, sample: Optional[ExecutionSample] = None) -> ExecutionStats:
        """
        Finish tracking an invocation and record its usage.

        Without a sample, the innermost open execution is closed.
        """
        stack = self._executions.get()
        if sample is None:
            if not stack:
                return ExecutionStats(plugin=None)
            sample = stack[-1]
        self._executions.set(tuple(s for s in stack if s is not sample))

        current = self._probe.current()
        stats = ExecutionStats(
            plugin=sample.plugin,
            execution_time_ms=(time.perf_counter() - sample.started_at) * 1000,
            memory_used_bytes=max(0, current - sample.start_memory_bytes),
            peak_memory_bytes=self._probe.peak(),
        )

        await self._record_usage(sample.plugin, "hook_executions")
        await self._record_usage(sample.plugin, "execution_ms", int(stats.execution_time_ms))

        return stats

    def current_execution(self) -> Optional[ExecutionSample]:
        """The innermost open execution in this context."""
        stack = self._executions.get()
        return stack[-1] if stack else None

    async def evaluate_execution(self, stats: ExecutionStats) -> List[SandboxViolation]:
        """
        Compare a finished invocation against the plugin's limits.

        This is detection after the fact: the call has already completed.
        """
        if not self.is_enabled() or stats.plugin is None:
            return []

        limits = self.get_plugin_limits(stats.plugin)
        violations: List[SandboxViolation] = []

        elapsed = stats.execution_time_ms / 1000
        if elapsed > limits.execution_time_seconds:
            await self._record_usage(stats.plugin, "timeouts")
            violations.append(
                SandboxViolation.execution_time_exceeded(
                    stats.plugin,
                    limits.execution_time_seconds,
                    round(elapsed, 2),
                )
            )

        used_mb = stats.memory_used_bytes / MB
        if used_mb > limits.memory_mb:
            violations.append(
                SandboxViolation.memory_limit_exceeded(
                    stats.plugin,
                    limits.memory_mb,
                    round(used_mb, 2),
                )
            )

        return violations

    # === Rate Limiting ===

    async def check_rate_limits(self, plugin_slug: str, counter: str = "hook_executions") -> int:
        """
        Count one operation against a per-minute counter.

        Raises:
            SandboxViolation: If the post-increment count exceeds the limit
            ValueError: If the counter name is unknown
        """
        limit_field = RATE_COUNTERS.get(counter)
        if limit_field is None:
            raise ValueError(f"Unknown rate limit counter: {counter}")

        if not self.is_enabled():
            return 0

        limits = self.get_plugin_limits(plugin_slug)
        limit = getattr(limits, limit_field)

        count = await self._store.incr(
            f"{self.RATE_PREFIX}{plugin_slug}:{counter}",
            ttl=RATE_WINDOW_SECONDS,
        )
        if count > limit:
            await self._record_usage(plugin_slug, "rate_limit_hits")
            raise SandboxViolation.rate_limit_exceeded(plugin_slug, counter, limit)

        if counter == "api_requests":
            daily = await self._record_usage(plugin_slug, "api_requests")
            if daily > limits.api_requests_per_day:
                await self._record_usage(plugin_slug, "rate_limit_hits")
                raise SandboxViolation.rate_limit_exceeded(
                    plugin_slug,
                    "api_requests_per_day",
                    limits.api_requests_per_day,
                )

        return count

    async def enforce_limits(self, plugin_slug: str) -> None:
        """
        Check daily usage ceilings.

        Raises:
            SandboxViolation: On the first ceiling already reached
        """
        if not self.is_enabled():
            return

        limits = self.get_plugin_limits(plugin_slug)
        usage = await self.get_usage(plugin_slug)

        if usage["api_requests"] >= limits.api_requests_per_day:
            raise SandboxViolation.rate_limit_exceeded(
                plugin_slug,
                "api_requests_per_day",
                limits.api_requests_per_day,
            )

        if usage["storage_bytes"] >= limits.storage_mb * MB:
            raise SandboxViolation.storage_limit_exceeded(plugin_slug, limits.storage_mb)

        network_total = usage["network_bytes_out"] + usage["network_bytes_in"]
        if network_total >= limits.network_bytes_per_day:
            raise SandboxViolation.network_limit_exceeded(
                plugin_slug,
                limits.network_bytes_per_day,
            )

    # === Usage ===

    def _usage_key(self, plugin_slug: str, field: str) -> str:
        day = datetime.fromtimestamp(self._clock(), tz=timezone.utc).strftime("%Y-%m-%d")
        return f"{self.USAGE_PREFIX}{plugin_slug}:{day}:{field}"

    async def _record_usage(self, plugin_slug: str, field: str, amount: int = 1) -> int:
        return await self._store.incr(
            self._usage_key(plugin_slug, field),
            amount,
            ttl=USAGE_TTL_SECONDS,
        )

    async def get_usage(self, plugin_slug: str) -> Dict[str, int]:
        """Today's usage counters plus current storage use."""
        usage: Dict[str, int] = {}
        for field in USAGE_FIELDS:
            value = await self._store.get(self._usage_key(plugin_slug, field))
            usage[field] = int(value) if value is not None else 0

        storage = await self._store.get(f"{self.STORAGE_PREFIX}{plugin_slug}")
        usage["storage_bytes"] = int(storage) if storage is not None else 0
        return usage

    async def record_storage_usage(self, plugin_slug: str, delta_bytes: int) -> int:
        """Adjust a plugin's storage use; returns the new total."""
        total = await self._store.incr(f"{self.STORAGE_PREFIX}{plugin_slug}", delta_bytes)
        if total < 0:
            await self._store.set(f"{self.STORAGE_PREFIX}{plugin_slug}", "0")
            return 0
        return total

    # === Network Filtering ===

    def get_network_whitelist(self, plugin_slug: str) -> List[str]:
        return list(self.get_plugin_limits(plugin_slug).network_whitelist)

    def is_domain_allowed(self, plugin_slug: str, domain: str) -> bool:
        """
        Check if a domain is allowed for outbound requests.

        No whitelist allows everything. ``*.example.com`` matches
        ``example.com`` and any of its subdomains.
        """
        whitelist = self.get_network_whitelist(plugin_slug)
        if not whitelist:
            return True

        domain = domain.lower()
        for allowed in whitelist:
            allowed = allowed.lower()
            if domain == allowed:
                return True

            if allowed.startswith("*."):
                base = allowed[2:]
                if domain == base or domain.endswith(f".{base}"):
                    return True

        return False

    def check_domain(self, plugin_slug: str, domain: str) -> None:
        """Raise if the plugin may not contact ``domain``."""
        if not self.is_domain_allowed(plugin_slug, domain):
            raise SandboxViolation.domain_not_allowed(plugin_slug, domain)

    async def record_network_request(
        self,
        plugin_slug: str,
        bytes_out: int,
        bytes_in: int,
    ) -> None:
        await self._record_usage(plugin_slug, "network_bytes_out", bytes_out)
        await self._record_usage(plugin_slug, "network_bytes_in", bytes_in)

    # === Violation Tracking ===

    async def record_violation(self, violation: SandboxViolation) -> int:
        """
        Record a violation and escalate to a block at the threshold.

        ``plugin_blocked`` violations are reported but not counted, since
        they are a consequence of an existing block. A violation that was
        already recorded (for example by the HTTP client before it raised
        into a guarded call) is not counted or audited again.

        Returns:
            Violations counted in the current window
        """
        plugin_slug = violation.plugin_slug
        counter_key = f"{self.VIOLATIONS_PREFIX}{plugin_slug}"

        if violation.recorded:
            current = await self._store.get(counter_key)
            return int(current) if current is not None else 0
        violation.recorded = True

        if violation.violation_type == ViolationType.PLUGIN_BLOCKED:
            current = await self._store.get(counter_key)
            count = int(current) if current is not None else 0
        else:
            count = await self._store.incr(
                counter_key,
                ttl=self._settings.violation_window_seconds,
            )

        logger.warning(
            "Plugin sandbox violation",
            plugin=plugin_slug,
            type=violation.violation_type.value,
            description=violation.message,
            total_violations=count,
        )

        await self._audit.log(AuditEvent(
            event_type=AuditEventType.SANDBOX_VIOLATION,
            message=f"Sandbox violation: {violation.violation_type.value}",
            plugin_slug=plugin_slug,
            severity=AuditEventSeverity.WARNING,
            details={**violation.to_dict(), "total_violations": count},
        ))

        if (
            violation.violation_type != ViolationType.PLUGIN_BLOCKED
            and count >= self._settings.violation_threshold
        ):
            await self._auto_block(plugin_slug, violation.violation_type.value)

        return count

    async def record_error(self, plugin_slug: str, error: BaseException) -> int:
        """
        Record a callback error; consecutive errors escalate to a block.

        Returns:
            Consecutive error count
        """
        await self._record_usage(plugin_slug, "errors")
        count = await self._store.incr(
            f"{self.ERRORS_PREFIX}{plugin_slug}",
            ttl=self._settings.error_window_seconds,
        )

        limits = self.get_plugin_limits(plugin_slug)
        if count >= limits.max_consecutive_errors:
            logger.error(
                "Plugin reached consecutive error limit",
                plugin=plugin_slug,
                errors=count,
                last_error=str(error),
            )
            await self._auto_block(plugin_slug, "consecutive_errors")

        return count

    async def clear_error_count(self, plugin_slug: str) -> None:
        """Reset the consecutive error counter (call after a success)."""
        await self._store.delete(f"{self.ERRORS_PREFIX}{plugin_slug}")

    # === Plugin Blocking ===

    async def is_blocked(self, plugin_slug: str) -> bool:
        blocked_until = await self._store.get(f"{self.BLOCKED_PREFIX}{plugin_slug}")
        if blocked_until is None:
            return False
        return float(blocked_until) > self._clock()

    async def get_block_remaining(self, plugin_slug: str) -> float:
        """Seconds left on a plugin's block, 0 if not blocked."""
        blocked_until = await self._store.get(f"{self.BLOCKED_PREFIX}{plugin_slug}")
        if blocked_until is None:
            return 0.0
        return max(0.0, float(blocked_until) - self._clock())

    async def block_plugin(self, plugin_slug: str, seconds: int = 3600) -> None:
        """Block a plugin from hook execution and sandboxed operations."""
        blocked_until = self._clock() + seconds
        await self._store.set(
            f"{self.BLOCKED_PREFIX}{plugin_slug}",
            repr(blocked_until),
            ttl=seconds,
        )

        logger.warning("Plugin blocked", plugin=plugin_slug, duration_seconds=seconds)

        await self._audit.log(AuditEvent(
            event_type=AuditEventType.PLUGIN_BLOCKED,
            message=f"Plugin temporarily blocked for {seconds} seconds",
            plugin_slug=plugin_slug,
            severity=AuditEventSeverity.ERROR,
            details={"duration_seconds": seconds, "blocked_until": blocked_until},
        ))

    async def unblock_plugin(self, plugin_slug: str) -> None:
        """Lift a block and forget the plugin's violation and error counts."""
        await self._store.delete(
            f"{self.BLOCKED_PREFIX}{plugin_slug}",
            f"{self.VIOLATIONS_PREFIX}{plugin_slug}",
            f"{self.ERRORS_PREFIX}{plugin_slug}",
        )

        logger.info("Plugin unblocked", plugin=plugin_slug)

        await self._audit.log(AuditEvent(
            event_type=AuditEventType.PLUGIN_UNBLOCKED,
            message="Plugin unblocked",
            plugin_slug=plugin_slug,
        ))

    async def _auto_block(self, plugin_slug: str, reason: str) -> None:
        await self.block_plugin(plugin_slug, self._settings.auto_block_seconds)

        logger.error("Plugin auto-disabled", plugin=plugin_slug, reason=reason)

        await self._audit.log(AuditEvent(
            event_type=AuditEventType.PLUGIN_AUTO_DISABLED,
            message=f"Plugin auto-disabled due to repeated violations: {reason}",
            plugin_slug=plugin_slug,
            severity=AuditEventSeverity.CRITICAL,
            details={"reason": reason},
        ))

    # === Stats ===

    async def get_stats(self, plugin_slug: str) -> Dict[str, Any]:
        """Limits, usage and block state for one plugin."""
        violations = await self._store.get(f"{self.VIOLATIONS_PREFIX}{plugin_slug}")
        errors = await self._store.get(f"{self.ERRORS_PREFIX}{plugin_slug}")
        return {
            "plugin": plugin_slug,
            "enabled": self.is_enabled(),
            "limits": self.get_plugin_limits(plugin_slug).model_dump(),
            "usage": await self.get_usage(plugin_slug),
            "violations": int(violations) if violations is not None else 0,
            "consecutive_errors": int(errors) if errors is not None else 0,
            "blocked": await self.is_blocked(plugin_slug),
            "block_remaining_seconds": await self.get_block_remaining(plugin_slug),
        }
