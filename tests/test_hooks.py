"""
Hook manager tests.
"""

import asyncio

import pytest

from hookwarden.audit import AuditEventType
from hookwarden.core.config import HookSettings, SandboxSettings
from hookwarden.hooks import Filters, HookManager, Hooks, HookType, Priority
from hookwarden.hooks import functions
from hookwarden.resilience import CircuitState
from hookwarden.sandbox import SandboxViolation

PLUGIN = "my-plugin"
MB = 1024 * 1024


class TestRegistration:
    """Test adding hooks."""

    def test_add_action_returns_registration(self, manager):
        def callback():
            pass

        registration = manager.add_action("init", callback, Priority.EARLY)
        assert registration.hook_name == "init"
        assert registration.hook_type == HookType.ACTION
        assert registration.priority == 5
        assert registration.owner_plugin is None
        assert manager.has_action("init", callback)

    def test_plugin_context_attribution(self, manager):
        """Test registrations inside a plugin context belong to that plugin."""
        with manager.plugin_context(PLUGIN):
            registration = manager.add_filter("title", str.upper)
        assert registration.owner_plugin == PLUGIN
        assert manager.get_plugin_context() is None

    def test_explicit_plugin_wins(self, manager):
        manager.set_plugin_context("ambient")
        registration = manager.add_action("init", print, plugin=PLUGIN)
        assert registration.owner_plugin == PLUGIN

    @pytest.mark.parametrize("priority", ["high", 2.5, None, True])
    def test_malformed_priority_falls_back(self, manager, priority):
        registration = manager.add_action("init", print, priority)
        assert registration.priority == 10

    @pytest.mark.asyncio
    async def test_non_callable_fails_at_dispatch(self, manager):
        """Test registration never fails; the bad callback is isolated when run."""
        calls = []
        manager.add_action("init", "not callable")
        manager.add_action("init", lambda: calls.append(1))

        await manager.do_action("init")
        assert calls == [1]
        assert manager.get_failed_executions()[0]["error_type"] == "TypeError"

    def test_hook_constants(self):
        assert Hooks.PLUGIN_ACTIVATED == "plugin_activated"
        assert Hooks.ENTITY_RECORD_CREATING == "entity_record_creating"
        assert Filters.ENTITY_DATA == "entity_data"
        assert [p.value for p in Priority] == [1, 5, 10, 15, 20]


class TestDispatchOrder:
    """Test priority and FIFO ordering."""

    @pytest.mark.asyncio
    async def test_fifo_within_priority(self, manager):
        calls = []
        manager.add_action("save", lambda: calls.append("A"))
        manager.add_action("save", lambda: calls.append("B"))

        await manager.do_action("save")
        assert calls == ["A", "B"]

    @pytest.mark.asyncio
    async def test_lower_priority_runs_first(self, manager):
        calls = []
        manager.add_action("save", lambda: calls.append("A"), 10)
        manager.add_action("save", lambda: calls.append("B"), 5)
        manager.add_action("save", lambda: calls.append("C"), 20)

        await manager.do_action("save")
        assert calls == ["B", "A", "C"]

    @pytest.mark.asyncio
    async def test_empty_hook_is_noop(self, manager):
        await manager.do_action("nothing")
        assert await manager.apply_filters("nothing", 42) == 42

    @pytest.mark.asyncio
    async def test_arguments_are_passed(self, manager):
        received = []

        async def callback(record, *, source):
            received.append((record, source))

        manager.add_action(Hooks.ENTITY_RECORD_CREATED, callback)
        await manager.do_action(Hooks.ENTITY_RECORD_CREATED, {"id": 1}, source="api")
        assert received == [({"id": 1}, "api")]

    @pytest.mark.asyncio
    async def test_registration_during_dispatch(self, manager):
        """Test hooks added while dispatching run only on the next dispatch."""
        calls = []

        def late():
            calls.append("late")

        def first():
            calls.append("first")
            manager.add_action("save", late)

        manager.add_action("save", first)
        await manager.do_action("save")
        assert calls == ["first"]

        await manager.do_action("save")
        assert calls == ["first", "first", "late"]


class TestFilters:
    """Test filter chains."""

    @pytest.mark.asyncio
    async def test_value_threads_through_filters(self, manager):
        manager.add_filter(Filters.ENTITY_DATA, lambda data, entity: {**data, "a": 1})

        async def add_b(data, entity):
            return {**data, "b": entity}

        manager.add_filter(Filters.ENTITY_DATA, add_b, Priority.LATE)

        result = await manager.apply_filters(Filters.ENTITY_DATA, {}, "post")
        assert result == {"a": 1, "b": "post"}

    @pytest.mark.asyncio
    async def test_failing_filter_passes_value_through(self, manager):
        """Test a throwing filter leaves the previous value."""
        manager.add_filter("title", lambda v: v + "!", Priority.EARLY)

        def broken(value):
            raise RuntimeError("boom")

        manager.add_filter("title", broken)
        manager.add_filter("title", str.upper, Priority.LATE)

        assert await manager.apply_filters("title", "hi") == "HI!"
        failed = manager.get_failed_executions()
        assert failed[-1]["hook"] == "title"
        assert failed[-1]["error"] == "boom"

    @pytest.mark.asyncio
    async def test_current_filter(self, manager):
        seen = []

        def outer(value):
            seen.append((manager.current_filter(), manager.doing_filter("outer")))
            return value

        manager.add_filter("outer", outer)
        await manager.apply_filters("outer", 1)

        assert seen == [("outer", True)]
        assert manager.current_filter() is None
        assert not manager.doing_filter()

    @pytest.mark.asyncio
    async def test_nested_filters(self, manager):
        """Test filters applied from inside a filter see both on the stack."""
        seen = []

        def inner(value):
            seen.append((manager.current_filter(), manager.doing_filter("outer")))
            return value * 2

        async def outer(value):
            return await manager.apply_filters("inner", value) + 1

        manager.add_filter("inner", inner)
        manager.add_filter("outer", outer)

        assert await manager.apply_filters("outer", 5) == 11
        assert seen == [("inner", True)]
        assert manager.current_filter() is None

    @pytest.mark.asyncio
    async def test_filter_stack_unwinds_on_critical_failure(self, manager):
        def broken(value):
            raise ValueError("invalid")

        manager.add_filter(Hooks.ENTITY_RECORD_CREATING, broken)
        with pytest.raises(ValueError):
            await manager.apply_filters(Hooks.ENTITY_RECORD_CREATING, {})
        assert not manager.doing_filter()

    @pytest.mark.asyncio
    async def test_concurrent_filter_stacks_are_isolated(self, manager):
        """Test concurrent tasks do not see each other's filters."""
        seen = {}

        async def record(value):
            await asyncio.sleep(0)
            seen[value] = manager.current_filter()
            return value

        manager.add_filter("a", record)
        manager.add_filter("b", record)

        await asyncio.gather(
            manager.apply_filters("a", "a"),
            manager.apply_filters("b", "b"),
        )
        assert seen == {"a": "a", "b": "b"}


class TestFailureIsolation:
    """Test failure handling."""

    @pytest.mark.asyncio
    async def test_action_failure_does_not_stop_others(self, manager, exporter):
        calls = []

        def broken():
            raise RuntimeError("boom")

        manager.add_action("save", broken, Priority.EARLY)
        manager.add_action("save", lambda: calls.append("ok"))

        await manager.do_action("save")
        assert calls == ["ok"]
        assert exporter.get_history(event_type=AuditEventType.HOOK_FAILURE)

    @pytest.mark.asyncio
    async def test_strict_mode_reraises(self, manager):
        manager.set_strict_mode(True)

        def broken():
            raise RuntimeError("boom")

        manager.add_action("save", broken)
        with pytest.raises(RuntimeError, match="boom"):
            await manager.do_action("save")
        assert len(manager.get_failed_executions()) == 1

    @pytest.mark.asyncio
    async def test_critical_hooks_reraise(self, manager):
        def broken(record):
            raise RuntimeError("invalid record")

        manager.add_action(Hooks.ENTITY_RECORD_DELETING, broken)
        with pytest.raises(RuntimeError):
            await manager.do_action(Hooks.ENTITY_RECORD_DELETING, {"id": 1})

        manager.add_critical_hook("custom_hook")
        manager.add_action("custom_hook", broken)
        with pytest.raises(RuntimeError):
            await manager.do_action("custom_hook", {"id": 1})
        assert "custom_hook" in manager.get_critical_hooks()
        assert Hooks.ENTITY_RECORD_DELETING in manager.get_critical_hooks()

    @pytest.mark.asyncio
    async def test_debug_mode_does_not_reraise(self, manager):
        manager.set_debug_mode(True)

        def broken():
            raise RuntimeError("boom")

        manager.add_action("save", broken)
        await manager.do_action("save")
        assert manager.get_failed_executions()[0]["error_type"] == "RuntimeError"

    @pytest.mark.asyncio
    async def test_failed_executions_log_is_bounded(self, sandbox, breaker, audit):
        manager = HookManager(
            sandbox=sandbox,
            circuit_breaker=breaker,
            settings=HookSettings(max_failed_executions=3),
            audit=audit,
        )

        def broken():
            raise RuntimeError("boom")

        for index in range(5):
            manager.add_action(f"hook_{index}", broken)
            await manager.do_action(f"hook_{index}")

        failed = manager.get_failed_executions()
        assert [entry["hook"] for entry in failed] == ["hook_2", "hook_3", "hook_4"]

        manager.clear_failed_executions()
        assert manager.get_failed_executions() == []


class TestCircuitBreaking:
    """Test callbacks are skipped while their circuit is open."""

    @pytest.mark.asyncio
    async def test_circuit_opens_after_five_failures(self, manager, breaker):
        calls = []

        def broken():
            calls.append(1)
            raise RuntimeError("boom")

        manager.add_action("save", broken, plugin=PLUGIN)
        for _ in range(6):
            await manager.do_action("save")

        assert len(calls) == 5
        assert await breaker.get_state(f"{PLUGIN}:save") == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_core_callbacks_use_core_key(self, manager, breaker):
        def broken():
            raise RuntimeError("boom")

        manager.add_action("save", broken)
        for _ in range(5):
            await manager.do_action("save")

        assert await breaker.get_state("core:save") == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_circuit_is_per_plugin(self, manager):
        calls = []

        def broken():
            raise RuntimeError("boom")

        manager.add_action("save", broken, plugin="bad-plugin")
        manager.add_action("save", lambda: calls.append(1), plugin="good-plugin")
        for _ in range(7):
            await manager.do_action("save")

        assert len(calls) == 7

    @pytest.mark.asyncio
    async def test_recovers_after_timeout(self, manager, breaker, clock):
        state = {"fail": True, "calls": 0}

        def flaky(value):
            state["calls"] += 1
            if state["fail"]:
                raise RuntimeError("down")
            return value + 1

        manager.add_filter("count", flaky, plugin=PLUGIN)
        for _ in range(5):
            assert await manager.apply_filters("count", 1) == 1

        state["fail"] = False
        assert await manager.apply_filters("count", 1) == 1
        assert state["calls"] == 5

        clock.advance(300)
        assert await manager.apply_filters("count", 1) == 2
        assert await manager.apply_filters("count", 1) == 2
        assert await breaker.get_state(f"{PLUGIN}:count") == CircuitState.CLOSED


class TestSandboxEnforcement:
    """Test the sandbox steps of a guarded call."""

    @pytest.mark.asyncio
    async def test_blocked_plugin_is_skipped(self, manager, sandbox, exporter):
        calls = []
        manager.add_action("save", lambda: calls.append(1), plugin=PLUGIN)
        await sandbox.block_plugin(PLUGIN, 60)

        await manager.do_action("save")
        assert calls == []

        violations = exporter.get_history(event_type=AuditEventType.SANDBOX_VIOLATION)
        assert violations[-1].details["violation_type"] == "plugin_blocked"

    @pytest.mark.asyncio
    async def test_collaborators_are_swappable(self, store, sandbox, breaker):
        manager = HookManager(store=store)
        assert manager.get_sandbox() is manager.get_sandbox()
        assert manager.get_circuit_breaker() is manager.get_circuit_breaker()

        manager.set_sandbox(sandbox)
        manager.set_circuit_breaker(breaker)
        assert manager.get_sandbox() is sandbox
        assert manager.get_circuit_breaker() is breaker

        await sandbox.block_plugin(PLUGIN, 60)
        calls = []
        manager.add_action("save", lambda: calls.append(1), plugin=PLUGIN)
        await manager.do_action("save")
        assert calls == []

    @pytest.mark.asyncio
    async def test_core_callbacks_ignore_sandbox(self, manager, sandbox):
        calls = []
        manager.add_action("save", lambda: calls.append(1))
        await manager.do_action("save")
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_rate_limited_callback_is_skipped(self, manager, sandbox):
        calls = []
        sandbox.set_plugin_limits(PLUGIN, {"hook_executions_per_minute": 2})
        manager.add_filter("count", lambda v: calls.append(1) or v + 1, plugin=PLUGIN)

        results = [await manager.apply_filters("count", 0) for _ in range(3)]
        assert results == [1, 1, 0]
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_async_timeout_is_preempted(self, manager, sandbox, breaker):
        """Test coroutine callbacks are cancelled at the execution time limit."""
        sandbox.set_plugin_limits(PLUGIN, {"execution_time_seconds": 0.01})

        async def slow(value):
            await asyncio.sleep(5)
            return "late"

        manager.add_filter("title", slow, plugin=PLUGIN)
        assert await manager.apply_filters("title", "original") == "original"

        failed = manager.get_failed_executions()[-1]
        assert failed["error_type"] == "SandboxViolation"
        assert (await breaker.get_record(f"{PLUGIN}:title")).failure_count == 1
        assert (await sandbox.get_usage(PLUGIN))["hook_executions"] == 1

    @pytest.mark.asyncio
    async def test_memory_violation_is_recorded_after_success(
        self, manager, sandbox, memory_probe, exporter
    ):
        """Test a callback that completes over its memory limit keeps its result."""
        sandbox.set_plugin_limits(PLUGIN, {"memory_mb": 1})

        def hungry(value):
            memory_probe.rss += 2 * MB
            return value + 1

        manager.add_filter("count", hungry, plugin=PLUGIN)
        assert await manager.apply_filters("count", 1) == 2

        violations = exporter.get_history(event_type=AuditEventType.SANDBOX_VIOLATION)
        assert violations[-1].details["violation_type"] == "memory_limit"

    @pytest.mark.asyncio
    async def test_callback_violation_is_recorded(self, manager, store):
        def fetch():
            raise SandboxViolation.domain_not_allowed(PLUGIN, "evil.com")

        manager.add_action("sync", fetch, plugin=PLUGIN)
        await manager.do_action("sync")
        assert await store.get(f"sandbox:violations:{PLUGIN}") == "1"
        assert await store.get(f"sandbox:errors:{PLUGIN}") is None

    @pytest.mark.asyncio
    async def test_errors_escalate_to_block(self, manager, sandbox):
        sandbox.set_plugin_limits(PLUGIN, {"max_consecutive_errors": 3})

        def broken():
            raise RuntimeError("boom")

        manager.add_action("save", broken, plugin=PLUGIN)
        for _ in range(3):
            await manager.do_action("save")

        assert await sandbox.is_blocked(PLUGIN)

    @pytest.mark.asyncio
    async def test_success_clears_error_count(self, manager, sandbox, store):
        state = {"fail": True}

        def flaky():
            if state["fail"]:
                raise RuntimeError("boom")

        manager.add_action("save", flaky, plugin=PLUGIN)
        await manager.do_action("save")
        assert await store.get(f"sandbox:errors:{PLUGIN}") == "1"

        state["fail"] = False
        await manager.do_action("save")
        assert await store.get(f"sandbox:errors:{PLUGIN}") is None

    @pytest.mark.parametrize("sandbox_settings", [SandboxSettings(enabled=False)])
    @pytest.mark.asyncio
    async def test_disabled_sandbox_skips_limits(self, manager, sandbox, sandbox_settings):
        calls = []
        sandbox.set_plugin_limits(PLUGIN, {"hook_executions_per_minute": 0})
        await sandbox.block_plugin(PLUGIN)

        manager.add_action("save", lambda: calls.append(1), plugin=PLUGIN)
        await manager.do_action("save")
        assert calls == [1]


class TestRemoval:
    """Test queries and removal."""

    def test_remove_action(self, manager):
        def callback():
            pass

        manager.add_action("save", callback, 5)
        assert not manager.remove_action("save", callback)
        assert manager.remove_action("save", callback, 5)
        assert not manager.has_action("save")
        assert not manager.remove_action("save", callback, 5)

    def test_remove_filter(self, manager):
        manager.add_filter("title", str.upper)
        assert manager.remove_filter("title", str.upper)
        assert not manager.has_filter("title", str.upper)

    def test_remove_all_with_priority(self, manager):
        manager.add_action("save", print, 5)
        manager.add_action("save", repr, 10)

        assert manager.remove_all_actions("save", 5)
        assert manager.has_action("save", repr)
        assert not manager.has_action("save", print)

    def test_remove_all_wildcard(self, manager):
        manager.add_filter("entity_data", str)
        manager.add_filter("entity_title", str)
        manager.add_filter("menu_items", str)

        assert manager.remove_all_filters("entity_*")
        assert not manager.has_filter("entity_data")
        assert not manager.has_filter("entity_title")
        assert manager.has_filter("menu_items")
        assert not manager.remove_all_filters("entity_*")

    def test_remove_missing_never_raises(self, manager):
        assert not manager.remove_all_actions("missing")
        assert not manager.remove_filter("missing", print)
        assert manager.remove_plugin_hooks("nobody") == 0

    def test_remove_plugin_hooks(self, manager):
        with manager.plugin_context(PLUGIN):
            manager.add_action("save", print)
            manager.add_action("load", print, 5)
            manager.add_filter("title", str.upper)
        manager.add_action("save", repr)

        assert manager.get_plugin_hooks(PLUGIN) == {
            "actions": ["save", "load"],
            "filters": ["title"],
        }

        assert manager.remove_plugin_hooks(PLUGIN) == 3
        assert manager.has_action("save", repr)
        assert not manager.has_action("load")
        assert manager.get_plugin_hooks(PLUGIN) == {"actions": [], "filters": []}

    @pytest.mark.asyncio
    async def test_stats_and_clear(self, manager):
        manager.add_action("save", print)
        manager.add_filter("title", str.upper)
        await manager.do_action("save", "x")
        await manager.do_action("save", "y")
        await manager.apply_filters("title", "a")

        stats = manager.get_stats()
        assert stats["total_actions"] == 1
        assert stats["total_filters"] == 1
        assert stats["execution_counts"] == {"save": 2, "title": 1}

        manager.clear()
        assert manager.get_stats()["execution_counts"] == {}
        assert manager.get_actions() == {}
        assert manager.get_filters() == {}


class TestFunctionApi:
    """Test module-level wrappers."""

    @pytest.fixture(autouse=True)
    def global_manager(self, manager):
        functions.set_hook_manager(manager)
        yield manager
        functions.set_hook_manager(None)

    @pytest.mark.asyncio
    async def test_round_trip(self, global_manager):
        functions.set_plugin_context(PLUGIN)
        registration = functions.add_filter("title", str.upper)
        functions.set_plugin_context(None)

        assert registration.owner_plugin == PLUGIN
        assert functions.has_filter("title")
        assert await functions.apply_filters("title", "hi") == "HI"
        assert functions.get_hook_manager() is global_manager

    @pytest.mark.asyncio
    async def test_actions(self):
        calls = []
        functions.add_action("save", calls.append)
        await functions.do_action("save", 1)
        assert calls == [1]
        assert functions.remove_all_actions("save")
        assert not functions.has_action("save")
