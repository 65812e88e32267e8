"""
Example Entity Audit Plugin for HookWarden

This plugin demonstrates how a plugin extends a host application through
hooks, including:
- Registering filters and actions under its own plugin context
- Outbound HTTP through the sandboxed client
- A callback that fails and trips its circuit
- Cleaning up on deactivation

Run it directly to see dispatch, circuit breaking and sandbox blocking:

    python examples/plugins/entity-audit/plugin.py
"""

import asyncio
from typing import Any, Dict

import httpx

from hookwarden import (
    CircuitBreaker,
    Filters,
    HookManager,
    Hooks,
    MemoryCounterStore,
    PluginSandbox,
    Priority,
    SandboxHttpClient,
)
from hookwarden.core import SandboxSettings, setup_logging

PLUGIN_SLUG = "entity-audit"


class EntityAuditPlugin:
    """Stamps entity data and reports record changes to a remote collector."""

    def __init__(self, hooks: HookManager, http: SandboxHttpClient):
        self._hooks = hooks
        self._http = http.for_plugin(PLUGIN_SLUG)
        self._reported = 0

    def activate(self) -> None:
        with self._hooks.plugin_context(PLUGIN_SLUG):
            self._hooks.add_filter(Filters.ENTITY_DATA, self.stamp, Priority.EARLY)
            self._hooks.add_action(Hooks.ENTITY_RECORD_CREATED, self.report)
            self._hooks.add_action(Hooks.ENTITY_RECORD_UPDATED, self.unstable)

    def deactivate(self) -> int:
        return self._hooks.remove_plugin_hooks(PLUGIN_SLUG)

    def stamp(self, data: Dict[str, Any], entity: str) -> Dict[str, Any]:
        return {**data, "_audited": True, "_entity": entity}

    async def report(self, record: Dict[str, Any]) -> None:
        await self._http.post("https://collector.example.com/events", json=record)
        self._reported += 1

    def unstable(self, record: Dict[str, Any]) -> None:
        raise RuntimeError("collector schema mismatch")


def collector(request: httpx.Request) -> httpx.Response:
    return httpx.Response(202, json={"accepted": True})


async def main() -> None:
    setup_logging("INFO", json_logs=False)

    store = MemoryCounterStore()
    sandbox = PluginSandbox(store, SandboxSettings(enabled=True))
    sandbox.set_plugin_limits(PLUGIN_SLUG, {"network_whitelist": ["*.example.com"]})
    hooks = HookManager(sandbox=sandbox, circuit_breaker=CircuitBreaker(store))

    async with SandboxHttpClient(
        sandbox,
        client=httpx.AsyncClient(transport=httpx.MockTransport(collector)),
    ) as http:
        plugin = EntityAuditPlugin(hooks, http)
        plugin.activate()

        data = await hooks.apply_filters(Filters.ENTITY_DATA, {"title": "Hello"}, "post")
        print("filtered:", data)

        await hooks.do_action(Hooks.ENTITY_RECORD_CREATED, data)
        print("usage:", await sandbox.get_usage(PLUGIN_SLUG))

        # Five failures open the circuit; later dispatches skip the callback
        for _ in range(7):
            await hooks.do_action(Hooks.ENTITY_RECORD_UPDATED, data)
        print("open circuits:", list(await hooks.get_circuit_breaker().get_open_circuits()))

        print("removed hooks:", plugin.deactivate())


if __name__ == "__main__":
    asyncio.run(main())
