"""
HookWarden Audit Events

Structured events for violations, plugin blocks and circuit transitions.
HookWarden does not persist an audit trail itself; it hands events to
exporters, which an external audit collaborator can implement.
"""

from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


class AuditEventType(str, Enum):
    """Kinds of audit events emitted by the safety layer."""

    SANDBOX_VIOLATION = "sandbox.violation"
    CIRCUIT_TRANSITION = "circuit.transition"
    PLUGIN_BLOCKED = "plugin.blocked"
    PLUGIN_UNBLOCKED = "plugin.unblocked"
    PLUGIN_AUTO_DISABLED = "plugin.auto_disabled"
    HOOK_FAILURE = "hook.failure"


class AuditEventSeverity(str, Enum):
    """Severity levels for audit events."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class AuditEvent:
    """A single audit event."""

    event_type: AuditEventType
    message: str
    plugin_slug: Optional[str] = None
    severity: AuditEventSeverity = AuditEventSeverity.INFO
    details: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "plugin": self.plugin_slug,
            "message": self.message,
            "details": self.details,
        }


class AuditExporter:
    """Base class for audit exporters."""

    async def export(self, event: AuditEvent) -> bool:
        """Export an audit event. Returns True on success."""
        raise NotImplementedError


class ConsoleExporter(AuditExporter):
    """Export audit events through structlog."""

    async def export(self, event: AuditEvent) -> bool:
        severity_map = {
            AuditEventSeverity.DEBUG: logger.debug,
            AuditEventSeverity.INFO: logger.info,
            AuditEventSeverity.WARNING: logger.warning,
            AuditEventSeverity.ERROR: logger.error,
            AuditEventSeverity.CRITICAL: logger.critical,
        }

        log_fn = severity_map.get(event.severity, logger.info)
        log_fn(
            f"AUDIT: {event.event_type.value}",
            audit_id=event.id,
            plugin=event.plugin_slug,
            message=event.message,
            details=event.details,
        )
        return True


class MemoryExporter(AuditExporter):
    """Keeps the most recent events in memory for inspection."""

    def __init__(self, max_events: int = 1000):
        self._events: deque[AuditEvent] = deque(maxlen=max_events)

    async def export(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    def get_history(
        self,
        plugin_slug: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Get recent events, newest last."""
        events = [
            e for e in self._events
            if (plugin_slug is None or e.plugin_slug == plugin_slug)
            and (event_type is None or e.event_type == event_type)
        ]
        return events[-limit:]

    def clear(self) -> None:
        self._events.clear()


class AuditLogger:
    """
    Fans audit events out to the registered exporters.

    An exporter that fails is logged and skipped; auditing never interrupts
    hook dispatch.
    """

    def __init__(self, exporters: Optional[List[AuditExporter]] = None):
        self._exporters: List[AuditExporter] = (
            list(exporters) if exporters is not None else [ConsoleExporter()]
        )

    def add_exporter(self, exporter: AuditExporter) -> None:
        self._exporters.append(exporter)

    def remove_exporter(self, exporter: AuditExporter) -> bool:
        if exporter in self._exporters:
            self._exporters.remove(exporter)
            return True
        return False

    async def log(self, event: AuditEvent) -> None:
        for exporter in self._exporters:
            try:
                await exporter.export(event)
            except Exception as e:
                logger.error(
                    "Audit export failed",
                    exporter=type(exporter).__name__,
                    event_type=event.event_type.value,
                    error=str(e),
                )
