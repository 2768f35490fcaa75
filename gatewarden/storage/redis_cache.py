from __future__ import annotations

import hashlib
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding shared rate-limit counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window: the first hit creates the key with a PX expiry, later hits
    # INCR until the cap. Denied hits leave the counter untouched.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window_ms = tonumber(ARGV[1])
local max_requests = tonumber(ARGV[2])

local count = tonumber(redis.call('GET', key) or '0')
if count == 0 then
  redis.call('SET', key, 1, 'PX', window_ms)
  return {1, 1, window_ms}
end

local ttl = redis.call('PTTL', key)
if ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end

if count >= max_requests then
  return {0, count, ttl}
end

count = redis.call('INCR', key)
return {1, count, ttl}
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
        """Assert Redis connectivity before enabling shared counters."""
        # A short-lived sync client keeps the async client off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(identifier: str) -> str:
        """Hash identifiers so user-controlled parts cannot collide on delimiters."""
        digest = hashlib.sha256(identifier.encode()).hexdigest()
        return f"rate:{digest}"

    async def hit_fixed_window(
        self, identifier: str, window_ms: int, max_requests: int
    ) -> Tuple[bool, int, int]:
        """Count one request; returns (allowed, count, ms until the window resets)."""
        key = self._normalize_rate_key(identifier)
        allowed, count, ttl_ms = await self._fixed_window(
            keys=[key], args=[int(window_ms), int(max_requests)]
        )
        return bool(int(allowed)), int(count), max(0, int(ttl_ms))

    async def get_counter(self, identifier: str) -> Optional[Tuple[int, int]]:
        """Return (count, ms until reset) for a live window, or None."""
        key = self._normalize_rate_key(identifier)
        pipe = self.client.pipeline()
        pipe.get(key)
        pipe.pttl(key)
        raw_count, ttl_ms = await pipe.execute()
        if raw_count is None or int(ttl_ms) <= 0:
            return None
        return int(raw_count), int(ttl_ms)

    async def reset_counter(self, identifier: str) -> None:
        await self.client.delete(self._normalize_rate_key(identifier))

    async def close(self) -> None:
        await self.client.aclose()
