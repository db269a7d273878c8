from __future__ import annotations

import hashlib
import json
import time
from typing import List, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

_PERMISSION_EPOCH_KEY = "rbac:epoch"


class RedisCache:
    """Thin Redis wrapper for rate limits and resolved permission sets."""

    # Atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
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
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so caller-supplied parts cannot inject delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _permission_key(epoch: Optional[str], user_id: str) -> str:
        return f"rbac:perms:{epoch or '0'}:{user_id}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        now = time.time()
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[self._normalize_rate_key(key)],
            args=[now, refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(tokens)), int(reset_after or 0))
        return allowed_bool

    async def get_permissions(self, user_id: str) -> Optional[List[str]]:
        epoch = await self.client.get(_PERMISSION_EPOCH_KEY)
        raw = await self.client.get(self._permission_key(epoch, user_id))
        return json.loads(raw) if raw else None

    async def set_permissions(
        self, user_id: str, keys: List[str], ttl_seconds: int
    ) -> None:
        epoch = await self.client.get(_PERMISSION_EPOCH_KEY)
        await self.client.set(
            self._permission_key(epoch, user_id), json.dumps(sorted(keys)), ex=max(1, ttl_seconds)
        )

    async def invalidate_permissions(self) -> None:
        """Bump the epoch so every cached permission set misses."""
        await self.client.incr(_PERMISSION_EPOCH_KEY)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes the same awaitable surface as RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(RedisCache._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        now = time.time()
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[RedisCache._normalize_rate_key(key)],
            args=[now, refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(tokens)), int(reset_after or 0))
        return allowed_bool

    async def get_permissions(self, user_id: str) -> Optional[List[str]]:
        epoch = self.client.get(_PERMISSION_EPOCH_KEY)
        raw = self.client.get(RedisCache._permission_key(epoch, user_id))
        return json.loads(raw) if raw else None

    async def set_permissions(
        self, user_id: str, keys: List[str], ttl_seconds: int
    ) -> None:
        epoch = self.client.get(_PERMISSION_EPOCH_KEY)
        self.client.set(
            RedisCache._permission_key(epoch, user_id),
            json.dumps(sorted(keys)),
            ex=max(1, ttl_seconds),
        )

    async def invalidate_permissions(self) -> None:
        self.client.incr(_PERMISSION_EPOCH_KEY)

    async def close(self) -> None:
        self.client.close()
