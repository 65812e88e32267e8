"""
Sandboxed outbound HTTP for plugins.

Every request made on behalf of a plugin passes the block list, the domain
whitelist, the daily ceilings and the per-minute network rate limit before
it leaves the process, and its byte counts are charged to the plugin
afterwards. A violation is recorded here before it is raised, so a guarded
call that catches it does not count it again.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog

from hookwarden.sandbox.runtime import PluginSandbox
from hookwarden.sandbox.violations import SandboxViolation

logger = structlog.get_logger(__name__)


class SandboxHttpClient:
    """
    ``httpx.AsyncClient`` wrapper attributed to a plugin.

    Usage:
        async with SandboxHttpClient(sandbox) as http:
            client = http.for_plugin("my-plugin")
            response = await client.get("https://api.example.com/items")
    """

    def __init__(
        self,
        sandbox: PluginSandbox,
        client: Optional[httpx.AsyncClient] = None,
        plugin_slug: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self._sandbox = sandbox
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._plugin_slug = plugin_slug

    @property
    def plugin_slug(self) -> Optional[str]:
        return self._plugin_slug

    def for_plugin(self, plugin_slug: str) -> "SandboxHttpClient":
        """A client sharing this connection pool, charged to ``plugin_slug``."""
        return SandboxHttpClient(
            self._sandbox,
            client=self._client,
            plugin_slug=plugin_slug,
        )

    async def _reject(self, violation: SandboxViolation) -> None:
        await self._sandbox.record_violation(violation)
        raise violation

    async def _preflight(self, plugin_slug: str, host: str) -> None:
        if await self._sandbox.is_blocked(plugin_slug):
            await self._reject(SandboxViolation.plugin_blocked(plugin_slug))

        if not self._sandbox.is_domain_allowed(plugin_slug, host):
            await self._reject(SandboxViolation.domain_not_allowed(plugin_slug, host))

        # Ceilings first, so a rejected request does not use a rate slot
        try:
            await self._sandbox.enforce_limits(plugin_slug)
            await self._sandbox.check_rate_limits(plugin_slug, "network_requests")
        except SandboxViolation as violation:
            await self._reject(violation)

    async def request(self, method: str, url: Any, **kwargs: Any) -> httpx.Response:
        """
        Send a request through the sandbox.

        Raises:
            SandboxViolation: If the plugin may not make this request
        """
        request = self._client.build_request(method, url, **kwargs)
        plugin_slug = self._plugin_slug

        if plugin_slug is None or not self._sandbox.is_enabled():
            return await self._client.send(request)

        await self._preflight(plugin_slug, request.url.host)

        body = await request.aread()
        response = await self._client.send(request)

        await self._sandbox.record_network_request(
            plugin_slug,
            bytes_out=len(body),
            bytes_in=len(response.content),
        )

        logger.debug(
            "Sandboxed request",
            plugin=plugin_slug,
            method=method,
            host=request.url.host,
            status=response.status_code,
        )
        return response

    async def get(self, url: Any, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: Any, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: Any, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: Any, **kwargs: Any) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: Any, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "SandboxHttpClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
