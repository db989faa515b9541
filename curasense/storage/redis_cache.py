from __future__ import annotations

import hashlib
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis

# Refill-then-spend in one script call. The server clock is used so API
# workers with drifting clocks still share one view of each bucket.
# Returns {allowed, tokens_left, seconds_until_refilled}.
_BUCKET_LUA = """
local bucket = KEYS[1]
local rate = tonumber(ARGV[1])
local burst = tonumber(ARGV[2])
local spend = tonumber(ARGV[3])

local clock = redis.call('TIME')
local now = tonumber(clock[1]) + tonumber(clock[2]) / 1000000

local state = redis.call('HMGET', bucket, 'level', 'seen')
local level = tonumber(state[1]) or burst
local seen = tonumber(state[2]) or now

level = math.min(burst, level + math.max(0, now - seen) * rate)

local granted = 0
local wait = 0
if level >= spend then
  level = level - spend
  granted = 1
else
  wait = math.ceil((spend - level) / rate)
end

redis.call('HSET', bucket, 'level', level, 'seen', now)
redis.call('EXPIRE', bucket, math.max(1, math.ceil(burst / rate)))
return {granted, level, wait}
"""


class RedisCache:
    """Rate-limit buckets kept in Redis so every API worker counts the same attempts."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_BUCKET_LUA)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        # Keys embed emails and client IPs; only a digest is written to Redis
        return "rate:" + hashlib.sha256(key.encode("utf-8")).hexdigest()

    def verify_connection(self) -> None:
        """PING over a short-lived sync client at startup.

        The async client stays untouched until the serving loop owns it.
        """
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Spend ``cost`` from the bucket for ``key``.

        The bucket holds ``limit`` tokens and refills fully over ``window_seconds``.
        Returns ``(allowed, remaining, retry_after_seconds)``.
        """
        granted, level, wait = await self._token_bucket(
            keys=[self._normalize_rate_key(key)],
            args=[limit / window_seconds, limit, max(1, cost)],
        )
        remaining = max(0, int(float(level)))
        return bool(int(granted)), remaining, int(wait or 0)

    async def close(self) -> None:
        await self.client.aclose()
