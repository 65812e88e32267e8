"""
Shared fixtures for HookWarden tests.
"""

import pytest

from hookwarden.audit import AuditLogger, MemoryExporter
from hookwarden.core.config import (
    CircuitBreakerSettings,
    HookSettings,
    SandboxSettings,
    reset_config,
)
from hookwarden.hooks import HookManager
from hookwarden.hooks.context import set_plugin_context
from hookwarden.resilience import CircuitBreaker
from hookwarden.sandbox import PluginSandbox
from hookwarden.store import MemoryCounterStore


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeMemoryProbe:
    """Memory probe whose readings are set by the test."""

    def __init__(self, rss: int = 100 * 1024 * 1024):
        self.rss = rss
        self.max_rss = rss

    def current(self) -> int:
        self.max_rss = max(self.max_rss, self.rss)
        return self.rss

    def peak(self) -> int:
        return self.max_rss


@pytest.fixture(autouse=True)
def isolated_state():
    """Reset global config and plugin context around each test."""
    reset_config()
    set_plugin_context(None)
    yield
    set_plugin_context(None)
    reset_config()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryCounterStore(clock=clock)


@pytest.fixture
def exporter():
    return MemoryExporter()


@pytest.fixture
def audit(exporter):
    return AuditLogger([exporter])


@pytest.fixture
def breaker_settings():
    return CircuitBreakerSettings()


@pytest.fixture
def breaker(store, audit, clock, breaker_settings):
    return CircuitBreaker(store, breaker_settings, audit=audit, clock=clock)


@pytest.fixture
def memory_probe():
    return FakeMemoryProbe()


@pytest.fixture
def sandbox_settings():
    return SandboxSettings(enabled=True)


@pytest.fixture
def sandbox(store, audit, clock, sandbox_settings, memory_probe):
    return PluginSandbox(
        store,
        sandbox_settings,
        audit=audit,
        clock=clock,
        memory_probe=memory_probe,
    )


@pytest.fixture
def manager(sandbox, breaker, audit):
    return HookManager(
        sandbox=sandbox,
        circuit_breaker=breaker,
        settings=HookSettings(),
        audit=audit,
    )
