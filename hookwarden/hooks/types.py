"""
Hook type definitions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Callable, Optional


class HookType(str, Enum):
    """Kind of hook a callback is registered for."""
    ACTION = "action"
    FILTER = "filter"


class Priority(IntEnum):
    """Named priorities. Lower runs earlier."""
    EARLIEST = 1
    EARLY = 5
    NORMAL = 10
    LATE = 15
    LATEST = 20


DEFAULT_PRIORITY = Priority.NORMAL.value


class Hooks:
    """Names of the actions fired by the host application."""

    # Plugin lifecycle
    PLUGIN_ACTIVATED = "plugin_activated"
    PLUGIN_DEACTIVATED = "plugin_deactivated"
    PLUGIN_INSTALLED = "plugin_installed"
    PLUGIN_UNINSTALLED = "plugin_uninstalled"
    PLUGIN_UPDATED = "plugin_updated"
    PLUGINS_LOADED = "plugins_loaded"

    # Entities
    ENTITY_REGISTERED = "entity_registered"
    ENTITY_UNREGISTERED = "entity_unregistered"
    ENTITY_RECORD_CREATING = "entity_record_creating"
    ENTITY_RECORD_CREATED = "entity_record_created"
    ENTITY_RECORD_UPDATING = "entity_record_updating"
    ENTITY_RECORD_UPDATED = "entity_record_updated"
    ENTITY_RECORD_DELETING = "entity_record_deleting"
    ENTITY_RECORD_DELETED = "entity_record_deleted"

    # API
    API_REQUEST = "api_request"
    API_RESPONSE = "api_response"
    API_ENDPOINT_REGISTERED = "api_endpoint_registered"

    # Views
    VIEW_RENDERING = "view_rendering"
    VIEW_RENDERED = "view_rendered"
    VIEW_EXTENSION_APPLIED = "view_extension_applied"


class Filters:
    """Names of the filters applied by the host application."""
    ENTITY_DATA = "entity_data"
    API_RESPONSE = "api_response"
    MENU_ITEMS = "menu_items"
    PERMISSION_CHECK = "permission_check"
    SHORTCODE_CONTENT = "shortcode_content"
    VIEW_DATA = "view_data"


@dataclass(frozen=True)
class HookRegistration:
    """A registered hook callback. Ordered by (priority, sequence)."""

    hook_name: str
    hook_type: HookType
    callback: Callable = field(compare=False)
    priority: int = DEFAULT_PRIORITY
    sequence: int = 0
    owner_plugin: Optional[str] = None

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.priority, self.sequence)


class OutcomeStatus(str, Enum):
    OK = "ok"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class CallOutcome:
    """Result of one guarded callback invocation."""

    status: OutcomeStatus
    value: Any = None
    error: Optional[BaseException] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.OK

    @classmethod
    def success(cls, value: Any) -> "CallOutcome":
        return cls(OutcomeStatus.OK, value=value)

    @classmethod
    def failure(cls, error: BaseException) -> "CallOutcome":
        return cls(OutcomeStatus.ERROR, error=error)

    @classmethod
    def skipped(cls, reason: str) -> "CallOutcome":
        return cls(OutcomeStatus.SKIPPED, reason=reason)
