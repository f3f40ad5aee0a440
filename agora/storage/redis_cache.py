from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis-backed EphemeralStore.

    ``set_if_absent`` maps to ``SET NX PX`` and ``pop`` to ``GETDEL`` so both
    stay atomic across every process sharing the instance.
    """

    _GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0, client=None):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_ms(ttl_seconds: float) -> int:
        # Never longer than requested; Redis rejects a zero expiry
        return max(1, int(ttl_seconds * 1000))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # A short-lived synchronous client avoids binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        await self.client.set(key, value, px=self._ttl_ms(ttl_seconds))

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        acquired = await self.client.set(key, value, px=self._ttl_ms(ttl_seconds), nx=True)
        return bool(acquired)

    async def pop(self, key: str) -> Optional[str]:
        """Atomically read and delete ``key``.

        Uses GETDEL (Redis 6.2+) with a Lua fallback for older servers.
        """
        getdel = getattr(self.client, "getdel", None)
        if getdel is not None:
            return await getdel(key)
        return await self.client.eval(self._GETDEL_SCRIPT, 1, key)

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down the runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisCache"]
