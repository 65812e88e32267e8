"""
HookWarden Circuit Breaker

Per-(plugin, hook) circuit breaker whose state lives in the shared store, so
a circuit tripped by one worker process is open for all of them.

States:
- CLOSED: Normal operation, callbacks run
- OPEN: Too many recent failures, callbacks are skipped
- HALF_OPEN: Recovery timeout elapsed, trial calls decide the next state

The whole record for a key is one JSON value, and every transition is a
compare-and-set on that value.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import structlog

from hookwarden.audit import AuditEvent, AuditEventSeverity, AuditEventType, AuditLogger
from hookwarden.core.config import CircuitBreakerSettings
from hookwarden.store.base import SharedCounterStore

logger = structlog.get_logger(__name__)


class CircuitState(str, Enum):
    """State of a circuit."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitRecord:
    """Persisted state of one circuit."""
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    opened_at: Optional[float] = None
    last_failure_at: Optional[float] = None

    def to_json(self) -> str:
        data = asdict(self)
        data["state"] = self.state.value
        return json.dumps(data, sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "CircuitRecord":
        data = json.loads(raw)
        return cls(
            state=CircuitState(data.get("state", CircuitState.CLOSED.value)),
            failure_count=int(data.get("failure_count", 0)),
            success_count=int(data.get("success_count", 0)),
            opened_at=data.get("opened_at"),
            last_failure_at=data.get("last_failure_at"),
        )


# Returns the new record, or None to leave the stored one untouched
Mutation = Callable[[CircuitRecord], Optional[CircuitRecord]]


class CircuitBreaker:
    """
    Shared-state circuit breaker for hook callbacks.

    Usage:
        breaker = CircuitBreaker(store)
        key = CircuitBreaker.hook_key("entity_data", "my-plugin")

        if not await breaker.is_open(key):
            try:
                ...
                await breaker.record_success(key)
            except Exception:
                await breaker.record_failure(key)
    """

    STATE_PREFIX = "circuit_breaker:state:"
    TRACKED_KEY = "circuit_breaker:tracked_keys"

    def __init__(
        self,
        store: SharedCounterStore,
        settings: Optional[CircuitBreakerSettings] = None,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._settings = settings or CircuitBreakerSettings()
        self._audit = audit or AuditLogger()
        self._clock = clock

    @property
    def settings(self) -> CircuitBreakerSettings:
        return self._settings

    @staticmethod
    def hook_key(hook_name: str, plugin_slug: Optional[str] = None) -> str:
        """Circuit key for a hook, scoped to the owning plugin or to core."""
        return f"{plugin_slug or 'core'}:{hook_name}"

    # === Persistence ===

    async def _load(self, key: str) -> Tuple[Optional[str], CircuitRecord]:
        raw = await self._store.get(f"{self.STATE_PREFIX}{key}")
        if raw is None:
            return None, CircuitRecord()
        return raw, CircuitRecord.from_json(raw)

    async def _mutate(
        self,
        key: str,
        mutation: Mutation,
        reason: Optional[str] = None,
    ) -> CircuitRecord:
        """Apply a mutation with compare-and-set, retrying on contention."""
        for _ in range(self._settings.max_cas_retries):
            raw, current = await self._load(key)
            updated = mutation(current)
            if updated is None or updated == current:
                return current

            stored = await self._store.compare_and_set(
                f"{self.STATE_PREFIX}{key}",
                raw,
                updated.to_json(),
                ttl=self._settings.state_ttl,
            )
            if stored:
                await self._store.add_member(self.TRACKED_KEY, key)
                if updated.state != current.state:
                    await self._on_transition(key, current.state, updated.state, reason)
                return updated

        logger.warning(
            "Circuit update abandoned after contention",
            key=key,
            retries=self._settings.max_cas_retries,
        )
        _, current = await self._load(key)
        return current

    async def _on_transition(
        self,
        key: str,
        old_state: CircuitState,
        new_state: CircuitState,
        reason: Optional[str],
    ) -> None:
        log_fn = logger.warning if new_state == CircuitState.OPEN else logger.info
        log_fn(
            "Circuit state changed",
            key=key,
            old_state=old_state.value,
            new_state=new_state.value,
            reason=reason,
        )

        owner = key.split(":", 1)[0]
        await self._audit.log(AuditEvent(
            event_type=AuditEventType.CIRCUIT_TRANSITION,
            message=f"Circuit {key} changed from {old_state.value} to {new_state.value}",
            plugin_slug=None if owner == "core" else owner,
            severity=(
                AuditEventSeverity.WARNING
                if new_state == CircuitState.OPEN
                else AuditEventSeverity.INFO
            ),
            details={
                "key": key,
                "old_state": old_state.value,
                "new_state": new_state.value,
                "reason": reason,
            },
        ))

    # === State Checks ===

    async def is_open(self, key: str) -> bool:
        """
        True while calls for ``key`` should be skipped.

        Once the recovery timeout has elapsed the circuit moves to
        HALF_OPEN and trial calls are admitted.
        """
        _, record = await self._load(key)
        if record.state != CircuitState.OPEN:
            return False

        now = self._clock()
        if now < (record.opened_at or 0) + self._settings.recovery_timeout:
            return True

        def to_half_open(current: CircuitRecord) -> Optional[CircuitRecord]:
            if current.state != CircuitState.OPEN:
                return None
            if now < (current.opened_at or 0) + self._settings.recovery_timeout:
                return None
            return replace(current, state=CircuitState.HALF_OPEN, success_count=0)

        updated = await self._mutate(key, to_half_open, reason="recovery_timeout")
        return updated.state == CircuitState.OPEN

    async def get_state(self, key: str) -> CircuitState:
        _, record = await self._load(key)
        return record.state

    async def get_record(self, key: str) -> CircuitRecord:
        _, record = await self._load(key)
        return record

    # === Outcomes ===

    async def record_success(self, key: str) -> CircuitState:
        threshold = self._settings.success_threshold

        def on_success(current: CircuitRecord) -> Optional[CircuitRecord]:
            if current.state == CircuitState.CLOSED:
                if current.failure_count == 0:
                    return None
                return replace(current, failure_count=0)

            if current.state == CircuitState.HALF_OPEN:
                successes = current.success_count + 1
                if successes >= threshold:
                    return CircuitRecord(last_failure_at=current.last_failure_at)
                return replace(current, success_count=successes)

            return None

        updated = await self._mutate(key, on_success, reason="success_threshold")
        return updated.state

    async def record_failure(self, key: str) -> CircuitState:
        now = self._clock()
        threshold = self._settings.failure_threshold
        window = self._settings.failure_window

        def on_failure(current: CircuitRecord) -> Optional[CircuitRecord]:
            if current.state == CircuitState.HALF_OPEN:
                return replace(
                    current,
                    state=CircuitState.OPEN,
                    opened_at=now,
                    success_count=0,
                    last_failure_at=now,
                )

            if current.state == CircuitState.OPEN:
                return replace(current, last_failure_at=now)

            failures = current.failure_count
            if current.last_failure_at is not None and now - current.last_failure_at > window:
                failures = 0
            failures += 1

            if failures >= threshold:
                return replace(
                    current,
                    state=CircuitState.OPEN,
                    failure_count=0,
                    success_count=0,
                    opened_at=now,
                    last_failure_at=now,
                )
            return replace(current, failure_count=failures, last_failure_at=now)

        updated = await self._mutate(key, on_failure, reason="failure")
        return updated.state

    # === Administration ===

    async def reset(self, key: str) -> None:
        """Close the circuit and zero its counters."""
        await self._mutate(key, lambda current: CircuitRecord(), reason="reset")

    async def force_open(self, key: str, reason: str = "manual") -> None:
        """Open the circuit now, regardless of its failure count."""
        now = self._clock()

        def to_open(current: CircuitRecord) -> CircuitRecord:
            return replace(
                current,
                state=CircuitState.OPEN,
                failure_count=0,
                success_count=0,
                opened_at=now,
            )

        await self._mutate(key, to_open, reason=reason)

    async def get_metrics(self, key: str) -> Dict[str, Any]:
        _, record = await self._load(key)
        return {
            "key": key,
            "state": record.state.value,
            "failure_count": record.failure_count,
            "success_count": record.success_count,
            "opened_at": record.opened_at,
            "last_failure_at": record.last_failure_at,
            "failure_threshold": self._settings.failure_threshold,
            "success_threshold": self._settings.success_threshold,
            "recovery_timeout": self._settings.recovery_timeout,
        }

    async def get_open_circuits(self) -> Dict[str, Dict[str, Any]]:
        """Metrics for every tracked circuit currently OPEN."""
        open_circuits: Dict[str, Dict[str, Any]] = {}
        for key in sorted(await self._store.members(self.TRACKED_KEY)):
            raw, record = await self._load(key)
            if raw is None:
                await self._store.remove_member(self.TRACKED_KEY, key)
                continue
            if record.state == CircuitState.OPEN:
                open_circuits[key] = await self.get_metrics(key)
        return open_circuits
