from __future__ import annotations

import math
import time
from typing import Callable, Dict, Iterable, Optional, Set, Tuple, Union

from gatehouse.storage.redis_cache import session_key, user_sessions_key


def _epoch_seconds() -> float:
    return time.time()


class MemoryCache:
    """In-process stand-in for ``RedisCache`` with the same async surface.

    Keys expire lazily on access using the injected clock, which lets tests
    move time forward without sleeping. Every method runs without awaiting
    anything, so each call is atomic on the event loop.
    """

    def __init__(self, clock: Callable[[], float] = _epoch_seconds) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[str, float]] = {}
        self._sets: Dict[str, Tuple[Set[str], float]] = {}
        self._buckets: Dict[str, Tuple[float, float]] = {}

    def verify_connection(self) -> None:
        return None

    def _alive(self, expires_at: float) -> bool:
        return expires_at > self._clock()

    def _get(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if not self._alive(expires_at):
            self._values.pop(key, None)
            return None
        return value

    def _members(self, key: str) -> Set[str]:
        entry = self._sets.get(key)
        if entry is None:
            return set()
        members, expires_at = entry
        if not self._alive(expires_at) or not members:
            self._sets.pop(key, None)
            return set()
        return members

    def ttl(self, key: str) -> Optional[int]:
        """Remaining lifetime of a string or set key, mirroring Redis TTL."""
        entry = self._values.get(key) or self._sets.get(key)
        if entry is None or not self._alive(entry[1]):
            return None
        return int(entry[1] - self._clock())

    async def save_session(
        self, token: str, user_id: str, payload: str, ttl_seconds: int
    ) -> None:
        ttl = max(1, int(ttl_seconds))
        expires_at = self._clock() + ttl
        self._values[session_key(token)] = (payload, expires_at)
        index_key = user_sessions_key(user_id)
        members = self._members(index_key)
        members.add(token)
        self._sets[index_key] = (members, expires_at)

    async def get_session_payload(self, token: str) -> Optional[str]:
        return self._get(session_key(token))

    async def delete_session(self, token: str, user_id: Optional[str] = None) -> None:
        if user_id:
            self._members(user_sessions_key(user_id)).discard(token)
        self._values.pop(session_key(token), None)

    async def get_user_session_tokens(self, user_id: str) -> Set[str]:
        return set(self._members(user_sessions_key(user_id)))

    async def remove_user_session_tokens(self, user_id: str, tokens: Iterable[str]) -> None:
        members = self._members(user_sessions_key(user_id))
        for token in tokens:
            members.discard(token)

    async def delete_user_sessions(self, user_id: str) -> int:
        index_key = user_sessions_key(user_id)
        tokens = self._members(index_key)
        for token in tokens:
            self._values.pop(session_key(token), None)
        self._sets.pop(index_key, None)
        return len(tokens)

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        now = self._clock()
        refill_rate = float(limit) / float(window_seconds)
        tokens, last_ts = self._buckets.get(key, (float(limit), now))
        elapsed = max(0.0, now - last_ts)
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        self._buckets[key] = (tokens, now)
        reset_seconds = math.ceil((cost - tokens) / refill_rate) if not allowed and refill_rate > 0 else 0
        if return_remaining:
            return (allowed, int(tokens), reset_seconds)
        return allowed

    async def close(self) -> None:
        self.clear()

    def clear(self) -> None:
        self._values.clear()
        self._sets.clear()
        self._buckets.clear()
