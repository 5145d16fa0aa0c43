from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Literal, Optional, Protocol, Set, Union

from gatehouse.logging import get_logger, token_prefix
from gatehouse.service.api_keys import ApiKeyManager
from gatehouse.service.errors import AuthenticationRequired, InvalidToken, UserInactive
from gatehouse.service.sessions import SessionManager
from gatehouse.storage.models import Principal, SessionRecord, User

logger = get_logger(__name__)

BEARER_SCHEME = "Bearer "


class UserLookup(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...


@dataclass(frozen=True)
class ApiKeyCredential:
    token: str


@dataclass(frozen=True)
class SessionCookieCredential:
    token: str


Credential = Union[ApiKeyCredential, SessionCookieCredential, None]


@dataclass(frozen=True)
class AuthResult:
    principal: Principal
    method: Literal["api_key", "session"]
    api_key_id: Optional[str] = None
    session: Optional[SessionRecord] = None
    session_token: Optional[str] = None


def resolve_credential(
    authorization_header: Optional[str], session_cookie: Optional[str]
) -> Credential:
    """Pick the credential a request carries.

    A bearer header wins over the cookie; the scheme match is case-sensitive.
    """
    if authorization_header and authorization_header.startswith(BEARER_SCHEME):
        return ApiKeyCredential(authorization_header[len(BEARER_SCHEME):].strip())
    if session_cookie:
        return SessionCookieCredential(session_cookie)
    return None


class Authenticator:
    """Turns a request credential into a ``Principal``.

    An API key that fails validation is rejected outright; the session cookie
    is never consulted as a fallback.
    """

    def __init__(
        self,
        sessions: SessionManager,
        api_keys: ApiKeyManager,
        users: UserLookup,
    ) -> None:
        self.sessions = sessions
        self.api_keys = api_keys
        self.users = users
        self.logger = logger
        self._background_tasks: Set[asyncio.Task] = set()

    async def authenticate(self, credential: Credential) -> AuthResult:
        if isinstance(credential, ApiKeyCredential):
            return await self._authenticate_api_key(credential)
        if credential is None:
            raise AuthenticationRequired()
        if isinstance(credential, SessionCookieCredential):
            return await self._authenticate_session(credential)
        raise TypeError(f"unsupported credential type: {type(credential).__name__}")

    async def authenticate_session_only(self, credential: Credential) -> AuthResult:
        """Like ``authenticate`` but bearer keys are ignored entirely."""
        if isinstance(credential, SessionCookieCredential):
            return await self._authenticate_session(credential)
        raise AuthenticationRequired()

    async def _authenticate_api_key(self, credential: ApiKeyCredential) -> AuthResult:
        validated = self.api_keys.validate_api_key(credential.token)
        if validated is None:
            self.logger.info("api_key_rejected")
            raise InvalidToken("invalid or expired api key")
        principal, api_key = validated
        self._spawn_last_used_update(api_key.id)
        return AuthResult(principal=principal, method="api_key", api_key_id=api_key.id)

    async def _authenticate_session(
        self, credential: SessionCookieCredential
    ) -> AuthResult:
        token = credential.token
        record = await self.sessions.get_session(token)
        if record is None:
            raise InvalidToken("invalid or expired session", clear_session_cookie=True)

        user = self.users.get_user(record.user_id)
        if user is None:
            self.logger.warning(
                "session_user_missing",
                user_id=record.user_id,
                token_prefix=token_prefix(token),
            )
            await self.sessions.delete_session(token)
            raise AuthenticationRequired()
        if not user.is_active:
            raise UserInactive()
        return AuthResult(
            principal=Principal.from_user(user),
            method="session",
            session=record,
            session_token=token,
        )

    def _spawn_last_used_update(self, key_id: str) -> None:
        task = asyncio.create_task(
            asyncio.to_thread(self.api_keys.update_last_used, key_id)
        )
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.warning("auth_background_task_failed", error=str(exc))

    async def wait_for_background_tasks(self) -> None:
        """Await outstanding bookkeeping tasks; used at shutdown and in tests."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
