"""Redis-backed throttles shared by every API worker."""

from __future__ import annotations

import hashlib
import math
import threading
import time
from typing import Dict, NamedTuple, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RateDecision(NamedTuple):
    allowed: bool
    remaining: int
    retry_after: int


# KEYS[1]: bucket hash. ARGV: now (seconds), capacity, window (seconds), cost.
# The hash keeps the fill level and the time it was last topped up.
_BUCKET_LUA = """
local bucket = KEYS[1]
local now = tonumber(ARGV[1])
local capacity = tonumber(ARGV[2])
local window = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local per_second = capacity / window

local state = redis.call('HMGET', bucket, 'level', 'at')
local level = tonumber(state[1]) or capacity
local at = tonumber(state[2]) or now
level = math.min(capacity, level + math.max(0, now - at) * per_second)

local granted = 0
local wait = 0
if level >= cost then
  level = level - cost
  granted = 1
else
  wait = math.ceil((cost - level) / per_second)
end

redis.call('HSET', bucket, 'level', level, 'at', now)
redis.call('EXPIRE', bucket, math.max(math.ceil(window), wait, 1))
return {granted, tostring(level), wait}
"""


def _refill(level: float, elapsed: float, capacity: int, window_seconds: int) -> float:
    return min(float(capacity), level + max(0.0, elapsed) * capacity / window_seconds)


class LocalBuckets:
    """In-process buckets with the same refill rule as the Redis script.

    Only correct for a single worker; used when Redis is not configured.
    """

    def __init__(self) -> None:
        self._levels: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def take(self, key: str, capacity: int, window_seconds: int, cost: int = 1) -> RateDecision:
        now = time.monotonic()
        with self._lock:
            level, at = self._levels.get(key, (float(capacity), now))
            level = _refill(level, now - at, capacity, window_seconds)
            if level >= cost:
                level -= cost
                decision = RateDecision(True, int(level), 0)
            else:
                wait = math.ceil((cost - level) * window_seconds / capacity)
                decision = RateDecision(False, int(level), wait)
            self._levels[key] = (level, now)
        return decision


class RedisCache:
    """Async Redis client holding the login and signup throttles."""

    def __init__(
        self,
        redis_url: str,
        *,
        timeout_seconds: float = 5.0,
        key_prefix: str = "storefront:rl:",
    ) -> None:
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        self._bucket = self.client.register_script(_BUCKET_LUA)

    def verify_connection(self) -> None:
        # blocking probe; the runtime is built before any event loop exists
        probe = Redis.from_url(self.redis_url, socket_connect_timeout=2.0)
        try:
            probe.ping()
        finally:
            probe.close()

    def bucket_key(self, key: str) -> str:
        # account emails and client IPs never appear in key names
        return self.key_prefix + hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]

    async def take(
        self, key: str, capacity: int, window_seconds: int, *, cost: int = 1
    ) -> RateDecision:
        """Remove ``cost`` tokens from the bucket for ``key`` if it holds enough.

        The bucket holds ``capacity`` tokens and refills evenly over
        ``window_seconds``.
        """
        granted, level, wait = await self._bucket(
            keys=[self.bucket_key(key)],
            args=[time.time(), capacity, window_seconds, max(1, cost)],
        )
        return RateDecision(bool(int(granted)), max(0, int(float(level))), int(wait))

    async def close(self) -> None:
        await self.client.aclose()
