from __future__ import annotations

import hashlib
from typing import Tuple

import redis.asyncio as aioredis


class RedisCache:
    """Redis-backed counters shared by every API worker."""

    # Atomic fixed-window counter: INCR, set the window TTL on first hit,
    # report the remaining TTL so callers can emit reset headers.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window = tonumber(ARGV[1])
local hits = redis.call('INCR', key)
if hits == 1 then
  redis.call('EXPIRE', key, window)
end
local ttl = redis.call('TTL', key)
if ttl < 0 then
  redis.call('EXPIRE', key, window)
  ttl = window
end
return {hits, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling shared rate limits."""
        from redis import Redis

        # Short-lived sync client so the async pool is not bound to a startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Count one hit against ``key`` and report ``(allowed, remaining, reset_seconds)``."""

        hits, ttl = await self._fixed_window(
            keys=[self._normalize_rate_key(key)], args=[int(window_seconds)]
        )
        hits = int(hits)
        return hits <= limit, max(0, limit - hits), max(0, int(ttl))

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()
