from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis-backed expiring-key store and rate limiter.

    Shared by every instance so denylisted tokens, abuse counters and
    pending-MFA markers stay consistent across the fleet.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # KEYS[1] bucket hash; ARGV: now, capacity, window seconds, cost.
    # Replies {allowed, tokens left, seconds until enough tokens}.
    _TOKEN_BUCKET_SCRIPT = """
local now = tonumber(ARGV[1])
local capacity = tonumber(ARGV[2])
local window = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local per_second = capacity / window

local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local available = tonumber(state[1]) or capacity
local stamped = tonumber(state[2]) or now

available = math.min(capacity, available + math.max(0, now - stamped) * per_second)

local granted = 0
local wait = 0
if available >= cost then
  available = available - cost
  granted = 1
else
  wait = math.ceil((cost - available) / per_second)
end

redis.call('HSET', KEYS[1], 'tokens', available, 'ts', now)
redis.call('EXPIRE', KEYS[1], math.max(1, math.ceil(window), wait))
return {granted, tostring(available), wait}
"""

    # Increment and re-arm expiry in one round trip so concurrent hits
    # can never leave a counter without a TTL.
    _INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
redis.call('EXPIRE', KEYS[1], ARGV[1])
return count
"""

    def __init__(
        self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._increment = self.client.register_script(self._INCREMENT_SCRIPT)

    def verify_connection(self) -> None:
        """Ping Redis once with a throwaway client; raises on failure."""
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    async def increment(self, key: str, ttl_seconds: int) -> int:
        count = await self._increment(keys=[key], args=[max(1, int(ttl_seconds))])
        return int(count)

    async def get(self, key: str) -> int:
        value = await self.client.get(key)
        if value is None:
            return 0
        try:
            return int(value)
        except ValueError:
            return 0

    async def clear(self, key: str) -> None:
        await self.client.delete(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(key, value, ex=int(ttl_seconds))

    async def get_value(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def ttl(self, key: str) -> int:
        remaining = await self.client.ttl(key)
        return max(0, int(remaining))

    async def sweep(self) -> int:
        # Redis evicts expired keys itself
        return 0

    @staticmethod
    def _bucket_key(subject: str) -> str:
        return "rate:" + hashlib.sha256(subject.encode("utf-8")).hexdigest()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Consume ``cost`` tokens from the bucket for ``key``.

        The bucket holds ``limit`` tokens and refills completely over
        ``window_seconds``. With ``return_remaining`` the reply also carries
        the whole tokens left and the seconds until the request would fit.
        """
        granted, available, wait = await self._token_bucket(
            keys=[self._bucket_key(key)],
            args=[time.time(), limit, window_seconds, max(1, cost)],
        )
        allowed = int(granted) == 1
        if not return_remaining:
            return allowed
        return allowed, max(0, int(float(available))), int(wait or 0)

    async def close(self) -> None:
        await self.client.aclose()
