from __future__ import annotations

import hashlib
import time
import uuid
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for sliding-window rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0
    # Idle buckets outlive their window by this many seconds
    EXPIRY_BUFFER_SECONDS = 10

    # Evict, add, count and expire in one round trip. Rejected events are
    # removed again so retries while limited do not extend the lockout.
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]
local buffer = tonumber(ARGV[5])

redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. (now - window))
redis.call('ZADD', key, now, member)
local count = redis.call('ZCARD', key)
local allowed = 1
if count > limit then
  redis.call('ZREM', key, member)
  count = count - 1
  allowed = 0
end
redis.call('EXPIRE', key, math.ceil(window + buffer))

local idx = math.max(0, count - limit)
local entry = redis.call('ZRANGE', key, idx, idx, 'WITHSCORES')
local reset_after = window
if entry[2] then
  reset_after = math.max(0, math.ceil(tonumber(entry[2]) + window - now))
end
return {allowed, count, reset_after}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

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
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so identities never appear in key names."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _event_member(now: float) -> str:
        return f"{now:.6f}:{uuid.uuid4().hex}"

    @staticmethod
    def _parse_result(raw) -> Tuple[bool, int, int]:
        allowed, count, reset_after = raw
        return bool(int(allowed)), int(count), int(reset_after)

    async def check_sliding_window(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        now: Optional[float] = None,
    ) -> Tuple[bool, int, int]:
        """Record one event and report ``(allowed, count, reset_after_seconds)``."""

        ts = time.time() if now is None else now
        raw = await self._sliding_window(
            keys=[self._normalize_rate_key(key)],
            args=[
                ts,
                window_seconds,
                limit,
                self._event_member(ts),
                self.EXPIRY_BUFFER_SECONDS,
            ],
        )
        return self._parse_result(raw)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, but exposes async methods so it can be awaited like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self._sync_client.register_script(
            RedisCache._SLIDING_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def check_sliding_window(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        now: Optional[float] = None,
    ) -> Tuple[bool, int, int]:
        ts = time.time() if now is None else now
        raw = self._sliding_window(
            keys=[RedisCache._normalize_rate_key(key)],
            args=[
                ts,
                window_seconds,
                limit,
                RedisCache._event_member(ts),
                RedisCache.EXPIRY_BUFFER_SECONDS,
            ],
        )
        return RedisCache._parse_result(raw)

    async def ping(self) -> bool:
        return bool(self._sync_client.ping())

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
