from __future__ import annotations

import hashlib
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding fixed-window rate counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic fixed window: reject without incrementing once the cap is reached,
    # so the stored count never exceeds the limit.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local current = tonumber(redis.call('GET', key) or '0')
local ttl = redis.call('TTL', key)
if current > 0 and ttl < 0 then
  redis.call('EXPIRE', key, window)
  ttl = window
end

if current >= limit then
  return {0, current, math.max(ttl, 1)}
end

current = redis.call('INCR', key)
if current == 1 then
  redis.call('EXPIRE', key, window)
  ttl = window
end
return {1, current, math.max(ttl, 1)}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(namespace: str, key: str, tenant_id: str) -> str:
        """Collision-resistant rate keys.

        The subject is hashed so emails or IPs can neither inject delimiters
        nor appear in Redis in clear text.
        """

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{tenant_id}:{namespace}:{digest}"

    async def fixed_window_hit(
        self,
        namespace: str,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        tenant_id: str,
    ) -> Tuple[bool, int, int]:
        """Count one attempt; returns (allowed, count, seconds_until_reset)."""

        safe_key = self._normalize_rate_key(namespace, key, tenant_id)
        allowed, count, ttl = await self._fixed_window(
            keys=[safe_key], args=[limit, window_seconds]
        )
        return bool(int(allowed)), int(count), int(ttl)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client to avoid event loop binding issues in pytest
    while exposing the same awaitable surface as RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self._sync_client.register_script(
            RedisCache._FIXED_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def fixed_window_hit(
        self,
        namespace: str,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        tenant_id: str,
    ) -> Tuple[bool, int, int]:
        safe_key = RedisCache._normalize_rate_key(namespace, key, tenant_id)
        allowed, count, ttl = self._fixed_window(
            keys=[safe_key], args=[limit, window_seconds]
        )
        return bool(int(allowed)), int(count), int(ttl)

    async def close(self) -> None:
        self._sync_client.close()
