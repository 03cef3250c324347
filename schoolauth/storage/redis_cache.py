from __future__ import annotations

import hashlib
import time
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis-backed token buckets shared by every auth-service instance."""

    # Refill and consume in one round trip so concurrent workers cannot
    # both spend the last token.
    _TOKEN_BUCKET_SCRIPT = """
local bucket = KEYS[1]
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local state = redis.call('HMGET', bucket, 'tokens', 'ts')
local tokens = tonumber(state[1])
local stamp = tonumber(state[2])
if tokens == nil or stamp == nil then
  tokens = capacity
  stamp = now
end

tokens = math.min(capacity, tokens + math.max(0, now - stamp) * rate)

if tokens < cost then
  local wait = math.ceil((cost - tokens) / rate)
  redis.call('HSET', bucket, 'tokens', tokens, 'ts', now)
  redis.call('EXPIRE', bucket, math.max(wait, 1))
  return {0, tokens, wait}
end

tokens = tokens - cost
redis.call('HSET', bucket, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', bucket, math.max(math.ceil(capacity / rate), 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Ping with a throwaway sync client so startup does not bind the async pool."""
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        # hashed so client-controlled identities cannot inject delimiters
        return f"auth:rate:{hashlib.sha256(key.encode()).hexdigest()}"

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Consume from the bucket for ``key``.

        Returns ``(allowed, remaining, retry_after_seconds)``.
        """
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, retry_after = await self._token_bucket(
            keys=[self._normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return (bool(int(allowed)), max(0, int(float(tokens))), int(retry_after or 0))

    async def reset_rate_limit(self, key: str) -> None:
        await self.client.delete(self._normalize_rate_key(key))

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()

