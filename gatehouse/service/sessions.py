from __future__ import annotations

import contextlib
import json
import secrets
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Iterator, List, Optional, Protocol, Sequence, Set

from gatehouse.logging import get_logger, token_prefix
from gatehouse.service.errors import StoreUnavailable
from gatehouse.storage.errors import CredentialStoreError
from gatehouse.storage.models import ClientInfo, SessionMetadata, SessionRecord

logger = get_logger(__name__)

SESSION_TOKEN_BYTES = 32


class CredentialStore(Protocol):
    async def save_session(
        self, token: str, user_id: str, payload: str, ttl_seconds: int
    ) -> None: ...

    async def get_session_payload(self, token: str) -> Optional[str]: ...

    async def delete_session(self, token: str, user_id: Optional[str] = None) -> None: ...

    async def get_user_session_tokens(self, user_id: str) -> Set[str]: ...

    async def remove_user_session_tokens(self, user_id: str, tokens: Iterable[str]) -> None: ...

    async def delete_user_sessions(self, user_id: str) -> int: ...


def _epoch_now() -> int:
    return int(time.time())


def _as_datetime(epoch_seconds: int) -> datetime:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)


@contextlib.contextmanager
def store_errors_as_unavailable(operation: str, **context) -> Iterator[None]:
    """Log a credential store outage with detail and surface a generic 500."""
    try:
        yield
    except CredentialStoreError as exc:
        logger.error("credential_store_unavailable", operation=operation, error=str(exc), **context)
        raise StoreUnavailable() from exc


class SessionManager:
    """Server-side sessions with sliding expiration and a per-user index.

    Each session lives under ``sess:{token}`` with a TTL equal to its remaining
    lifetime. Reading a session that has been idle for at least
    ``sliding_extension_seconds`` pushes its expiry out to a full
    ``ttl_seconds`` again; reads inside that window leave the record alone so
    busy sessions are not rewritten on every request.
    """

    def __init__(
        self,
        cache: CredentialStore,
        ttl_seconds: int = 86400,
        sliding_extension_seconds: int = 3600,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        if not 0 < sliding_extension_seconds < ttl_seconds:
            raise ValueError(
                "sliding_extension_seconds must be positive and smaller than ttl_seconds"
            )
        self.cache = cache
        self.ttl_seconds = int(ttl_seconds)
        self.sliding_extension_seconds = int(sliding_extension_seconds)
        self._clock = clock or _epoch_now
        self.logger = logger

    def _now(self) -> int:
        return int(self._clock())

    async def _write(self, token: str, record: SessionRecord) -> None:
        ttl = record.expires_at - self._now()
        await self.cache.save_session(
            token, record.user_id, json.dumps(record.to_dict()), ttl
        )

    def _decode(self, token: str, payload: str) -> Optional[SessionRecord]:
        try:
            return SessionRecord.from_dict(json.loads(payload))
        except (ValueError, KeyError, TypeError) as exc:
            self.logger.warning(
                "session_record_malformed", token_prefix=token_prefix(token), error=str(exc)
            )
            return None

    async def create_session(
        self,
        user_id: str,
        roles: Sequence[str],
        metadata: Optional[ClientInfo] = None,
    ) -> str:
        """Open a session for ``user_id`` and return its token."""
        token = secrets.token_hex(SESSION_TOKEN_BYTES)
        now = self._now()
        client = metadata or ClientInfo()
        record = SessionRecord(
            user_id=user_id,
            roles=list(roles),
            created_at=now,
            last_used_at=now,
            expires_at=now + self.ttl_seconds,
            ip=client.ip,
            user_agent=client.user_agent,
            country=client.country,
        )
        with store_errors_as_unavailable("create_session", user_id=user_id):
            await self.cache.save_session(
                token, user_id, json.dumps(record.to_dict()), self.ttl_seconds
            )
        self.logger.info(
            "session_created", user_id=user_id, token_prefix=token_prefix(token)
        )
        return token

    async def get_session(self, token: str) -> Optional[SessionRecord]:
        """Return the live record for ``token``, renewing it when idle long enough."""
        with store_errors_as_unavailable("get_session", token_prefix=token_prefix(token)):
            payload = await self.cache.get_session_payload(token)
            if payload is None:
                return None
            record = self._decode(token, payload)
            if record is None:
                await self.cache.delete_session(token)
                return None

            now = self._now()
            if record.expires_at <= now:
                await self.cache.delete_session(token, record.user_id)
                self.logger.info(
                    "session_expired",
                    user_id=record.user_id,
                    token_prefix=token_prefix(token),
                )
                return None

            if now - record.last_used_at >= self.sliding_extension_seconds:
                record.last_used_at = now
                record.expires_at = now + self.ttl_seconds
                await self._write(token, record)
                self.logger.debug(
                    "session_renewed",
                    user_id=record.user_id,
                    token_prefix=token_prefix(token),
                    expires_at=record.expires_at,
                )
        return record

    async def delete_session(self, token: str) -> None:
        with store_errors_as_unavailable("delete_session", token_prefix=token_prefix(token)):
            payload = await self.cache.get_session_payload(token)
            if payload is None:
                return
            record = self._decode(token, payload)
            await self.cache.delete_session(token, record.user_id if record else None)
        self.logger.info(
            "session_deleted",
            user_id=record.user_id if record else None,
            token_prefix=token_prefix(token),
        )

    async def delete_all_user_sessions(self, user_id: str) -> int:
        with store_errors_as_unavailable("delete_all_user_sessions", user_id=user_id):
            removed = await self.cache.delete_user_sessions(user_id)
        self.logger.info("user_sessions_deleted", user_id=user_id, removed_count=removed)
        return removed

    async def list_user_sessions(self, user_id: str) -> List[SessionMetadata]:
        """List a user's live sessions, most recently used first.

        Index entries whose record has vanished are pruned from the index.
        Records are read without renewing them.
        """
        sessions: List[SessionMetadata] = []
        stale: List[str] = []
        with store_errors_as_unavailable("list_user_sessions", user_id=user_id):
            tokens = await self.cache.get_user_session_tokens(user_id)
            now = self._now()
            for token in tokens:
                payload = await self.cache.get_session_payload(token)
                record = self._decode(token, payload) if payload is not None else None
                if record is None or record.expires_at <= now or record.user_id != user_id:
                    stale.append(token)
                    continue
                sessions.append(
                    SessionMetadata(
                        token_id=token,
                        token_prefix=f"{token_prefix(token)}...",
                        created_at=_as_datetime(record.created_at),
                        last_used_at=_as_datetime(record.last_used_at),
                        expires_at=_as_datetime(record.expires_at),
                        ip=record.ip,
                        user_agent=record.user_agent,
                        country=record.country,
                    )
                )
            if stale:
                await self.cache.remove_user_session_tokens(user_id, stale)
                self.logger.debug(
                    "session_index_pruned", user_id=user_id, removed_count=len(stale)
                )
        sessions.sort(key=lambda item: item.last_used_at, reverse=True)
        return sessions

    async def user_owns_session(self, user_id: str, token: str) -> bool:
        with store_errors_as_unavailable("user_owns_session", user_id=user_id):
            tokens = await self.cache.get_user_session_tokens(user_id)
            if token not in tokens:
                return False
            payload = await self.cache.get_session_payload(token)
        if payload is None:
            return False
        record = self._decode(token, payload)
        return record is not None and record.user_id == user_id and record.expires_at > self._now()
