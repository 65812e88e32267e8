"""
Redis Counter Store

Shared store backed by Redis so that circuit state, rate counters and block
records are visible to every worker process. Counter creation with TTL and
compare-and-set run as Lua scripts, which Redis executes atomically.
"""

from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
import structlog

from hookwarden.core.config import StoreSettings
from hookwarden.store.base import SharedCounterStore

logger = structlog.get_logger(__name__)


# KEYS[1] = counter, ARGV[1] = amount, ARGV[2] = ttl seconds (0 = none)
INCR_SCRIPT = """
local value = redis.call('INCRBY', KEYS[1], ARGV[1])
if tonumber(ARGV[2]) > 0 and redis.call('TTL', KEYS[1]) == -1 then
    redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return value
"""

# KEYS[1] = key, ARGV[1] = has_expected (0/1), ARGV[2] = expected,
# ARGV[3] = new value, ARGV[4] = ttl seconds (0 = none)
CAS_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if ARGV[1] == '0' then
    if current then return 0 end
elseif current ~= ARGV[2] then
    return 0
end
if tonumber(ARGV[4]) > 0 then
    redis.call('SET', KEYS[1], ARGV[3], 'EX', ARGV[4])
else
    redis.call('SET', KEYS[1], ARGV[3])
end
return 1
"""


class RedisCounterStore(SharedCounterStore):
    """
    Redis-backed shared store.

    Usage:
        store = RedisCounterStore.from_settings(config.store)
        await store.incr("sandbox:rate:my-plugin:hook_executions", ttl=60)
    """

    def __init__(self, client: "aioredis.Redis", prefix: str = "hookwarden:"):
        self._client = client
        self._prefix = prefix
        self._incr = client.register_script(INCR_SCRIPT)
        self._cas = client.register_script(CAS_SCRIPT)

    @classmethod
    def from_settings(cls, settings: StoreSettings) -> "RedisCounterStore":
        logger.info(
            "Connecting Redis counter store",
            host=settings.redis_host,
            port=settings.redis_port,
        )
        client = aioredis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            db=settings.redis_db,
            password=settings.redis_password,
            ssl=settings.redis_ssl,
            decode_responses=True,
        )
        return cls(client, prefix=settings.prefix)

    def _make_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(self._make_key(key))

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        if ttl is not None and ttl > 0:
            await self._client.set(self._make_key(key), value, ex=ttl)
        else:
            await self._client.set(self._make_key(key), value)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._client.delete(*(self._make_key(k) for k in keys))

    async def exists(self, key: str) -> bool:
        return await self._client.exists(self._make_key(key)) > 0

    async def ttl(self, key: str) -> Optional[float]:
        remaining = await self._client.pttl(self._make_key(key))
        # -1: no expiry, -2: missing
        if remaining < 0:
            return None
        return remaining / 1000.0

    async def incr(self, key: str, amount: int = 1, ttl: Optional[int] = None) -> int:
        value = await self._incr(
            keys=[self._make_key(key)],
            args=[amount, ttl or 0],
        )
        return int(value)

    async def compare_and_set(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl: Optional[int] = None,
    ) -> bool:
        result = await self._cas(
            keys=[self._make_key(key)],
            args=[
                "0" if expected is None else "1",
                expected or "",
                value,
                ttl or 0,
            ],
        )
        return bool(result)

    async def add_member(self, key: str, member: str) -> None:
        await self._client.sadd(self._make_key(key), member)

    async def remove_member(self, key: str, member: str) -> None:
        await self._client.srem(self._make_key(key), member)

    async def members(self, key: str) -> set[str]:
        return set(await self._client.smembers(self._make_key(key)))

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Redis counter store closed")
