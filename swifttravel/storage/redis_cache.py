from __future__ import annotations

from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ResponseError


class RedisCache:
    """Thin Redis wrapper for magic tokens, rate counters and revocation markers."""

    # Atomic check + increment + expire for fixed-size counters. ARGV[3] == '1'
    # restarts the expiry on every allowed increment.
    _INCREMENT_IF_BELOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local ttl = tonumber(ARGV[2])
local refresh = ARGV[3]

local current = tonumber(redis.call('GET', key) or '0')
if current >= limit then
  return {0, current, redis.call('TTL', key)}
end

local count = redis.call('INCR', key)
if count == 1 or refresh == '1' then
  redis.call('EXPIRE', key, ttl)
end
return {1, count, redis.call('TTL', key)}
"""

    _GET_AND_DELETE_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment_if_below = self.client.register_script(
            self._INCREMENT_IF_BELOW_SCRIPT
        )

    @staticmethod
    def _unpack_counter(result) -> Tuple[bool, int, int]:
        allowed, count, ttl = result
        return bool(int(allowed)), int(count), max(0, int(ttl))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> bool:
        return bool(await self.client.delete(key))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def get_and_delete(self, key: str) -> Optional[str]:
        """Atomically read and remove ``key``.

        Uses GETDEL (Redis 6.2+) and falls back to a Lua script when the client
        or server does not support it, so two concurrent consumers can never
        both observe the value.
        """
        try:
            return await self.client.getdel(key)
        except (AttributeError, ResponseError):
            return await self.client.eval(self._GET_AND_DELETE_SCRIPT, 1, key)

    async def increment_if_below(
        self, key: str, limit: int, ttl_seconds: int, *, refresh_ttl: bool = True
    ) -> Tuple[bool, int, int]:
        result = await self._increment_if_below(
            keys=[key],
            args=[int(limit), max(1, int(ttl_seconds)), "1" if refresh_ttl else "0"],
        )
        return self._unpack_counter(result)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment_if_below = self._sync_client.register_script(
            RedisCache._INCREMENT_IF_BELOW_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def get(self, key: str) -> Optional[str]:
        return self._sync_client.get(key)

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        self._sync_client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> bool:
        return bool(self._sync_client.delete(key))

    async def exists(self, key: str) -> bool:
        return bool(self._sync_client.exists(key))

    async def get_and_delete(self, key: str) -> Optional[str]:
        try:
            return self._sync_client.getdel(key)
        except (AttributeError, ResponseError):
            return self._sync_client.eval(RedisCache._GET_AND_DELETE_SCRIPT, 1, key)

    async def increment_if_below(
        self, key: str, limit: int, ttl_seconds: int, *, refresh_ttl: bool = True
    ) -> Tuple[bool, int, int]:
        result = self._increment_if_below(
            keys=[key],
            args=[int(limit), max(1, int(ttl_seconds)), "1" if refresh_ttl else "0"],
        )
        return RedisCache._unpack_counter(result)

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
