from __future__ import annotations

import contextlib
import hashlib
import time
from typing import Iterable, Iterator, Optional, Set, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from gatehouse.storage.errors import CredentialStoreError


def session_key(token: str) -> str:
    return f"sess:{token}"


def user_sessions_key(user_id: str) -> str:
    return f"user:{user_id}:sessions"


class RedisCache:
    """Thin Redis wrapper for session records, session indexes and rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Lua token bucket script: atomic refill + consume
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

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        # One shared client (and connection pool) for every request
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @staticmethod
    @contextlib.contextmanager
    def _unavailable_as(operation: str) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise CredentialStoreError(f"redis {operation} failed: {exc}") from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def save_session(
        self, token: str, user_id: str, payload: str, ttl_seconds: int
    ) -> None:
        """Write a session record and index it under its owner, both with the same TTL."""
        ttl = max(1, int(ttl_seconds))
        index_key = user_sessions_key(user_id)
        with self._unavailable_as("save_session"):
            pipe = self.client.pipeline()
            pipe.set(session_key(token), payload, ex=ttl)
            pipe.sadd(index_key, token)
            pipe.expire(index_key, ttl)
            await pipe.execute()

    async def get_session_payload(self, token: str) -> Optional[str]:
        with self._unavailable_as("get_session"):
            return await self.client.get(session_key(token))

    async def delete_session(self, token: str, user_id: Optional[str] = None) -> None:
        with self._unavailable_as("delete_session"):
            pipe = self.client.pipeline()
            if user_id:
                pipe.srem(user_sessions_key(user_id), token)
            pipe.delete(session_key(token))
            await pipe.execute()

    async def get_user_session_tokens(self, user_id: str) -> Set[str]:
        with self._unavailable_as("get_user_sessions"):
            return set(await self.client.smembers(user_sessions_key(user_id)))

    async def remove_user_session_tokens(self, user_id: str, tokens: Iterable[str]) -> None:
        stale = list(tokens)
        if not stale:
            return
        with self._unavailable_as("prune_user_sessions"):
            await self.client.srem(user_sessions_key(user_id), *stale)

    async def delete_user_sessions(self, user_id: str) -> int:
        """Delete every session indexed under a user plus the index itself.

        Returns:
            Number of tokens that were indexed for the user
        """
        index_key = user_sessions_key(user_id)
        with self._unavailable_as("delete_user_sessions"):
            tokens = await self.client.smembers(index_key)
            if not tokens:
                return 0
            pipe = self.client.pipeline()
            pipe.delete(*[session_key(token) for token in tokens])
            pipe.delete(index_key)
            await pipe.execute()
        return len(tokens)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so caller-supplied components cannot collide on delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check rate limit using a Redis-backed token bucket."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        with self._unavailable_as("check_rate_limit"):
            allowed, tokens, reset_after = await self._token_bucket(
                keys=[safe_key],
                args=[time.time(), refill_rate, limit, max(1, cost)],
            )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
