from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Path, Request, Response

from gatehouse.api.schemas import (
    ApiKeyCreatedResponse,
    ApiKeyCreateRequest,
    ApiKeyListResponse,
    ApiKeyResponse,
    AuthResponse,
    ChangePasswordRequest,
    CurrentSessionResponse,
    Envelope,
    LoginRequest,
    LogoutAllResponse,
    PrincipalResponse,
    ProvidersResponse,
    RegisterRequest,
    SessionItem,
    SessionListResponse,
    UserResponse,
)
from gatehouse.config import get_settings
from gatehouse.logging import get_logger
from gatehouse.service import rbac
from gatehouse.service.authenticator import AuthResult, resolve_credential
from gatehouse.service.errors import NotFoundError, RateLimitedError, ValidationError
from gatehouse.service.runtime import check_rate_limit, get_runtime
from gatehouse.storage.models import ClientInfo

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one token from ``key``'s bucket or raise ``RateLimitedError``.

    Args:
        runtime: Application runtime context
        key: Rate limit key (e.g., "login:{ip}")
        limit: Maximum requests allowed in window
        window_seconds: Rate limit window in seconds
        response: Optional response to add rate limit headers to
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after_seconds": reset_seconds}
        )
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        country=request.headers.get("cf-ipcountry"),
    )


def _set_session_cookie(response: Response, token: str) -> None:
    settings = get_settings()
    response.set_cookie(
        settings.session_cookie_name,
        token,
        max_age=settings.session_ttl_seconds,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite.value,
        path="/",
    )


def _clear_session_cookie(response: Response) -> None:
    settings = get_settings()
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite=settings.cookie_samesite.value,
    )


def _session_cookie(request: Request) -> Optional[str]:
    return request.cookies.get(get_settings().session_cookie_name)


async def require_auth(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
) -> AuthResult:
    """Authenticate with a bearer API key or, failing its absence, the session cookie."""
    runtime = get_runtime()
    credential = resolve_credential(authorization, _session_cookie(request))
    result = await runtime.authenticator.authenticate(credential)
    if result.method == "api_key":
        await _enforce_rate_limit(
            runtime,
            f"api:{result.principal.id}",
            runtime.settings.api_rate_limit_per_hour,
            3600,
            response=response,
        )
    return result


async def require_session(request: Request) -> AuthResult:
    """Authenticate with the session cookie only; bearer keys are not accepted."""
    runtime = get_runtime()
    credential = resolve_credential(None, _session_cookie(request))
    return await runtime.authenticator.authenticate_session_only(credential)


def require_roles(
    *roles: rbac.RoleLike, hierarchical: bool = True
) -> Callable[..., object]:
    """Build a dependency that authenticates and then checks ``roles``."""

    async def _dependency(auth: AuthResult = Depends(require_auth)) -> AuthResult:
        rbac.require_roles(auth.principal, roles, hierarchical)
        return auth

    return _dependency


def _principal_response(auth: AuthResult) -> PrincipalResponse:
    principal = auth.principal
    return PrincipalResponse(
        id=principal.id,
        email=principal.email,
        name=principal.name,
        roles=list(principal.roles),
        auth_method=auth.method,
        api_key_id=auth.api_key_id,
    )


def _session_expiry() -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=get_settings().session_ttl_seconds)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an email/password account and sign it in.

    Raises:
        403: If email/password authentication is disabled
        409: If the email is already registered
        429: If the client exceeded the login rate limit
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_window,
        runtime.settings.login_rate_limit_window_seconds,
    )
    user, token = await runtime.accounts.register(
        body.email, body.password, body.name, _client_info(request)
    )
    _set_session_cookie(response, token)
    return Envelope(
        status="ok",
        data=AuthResponse(user=UserResponse.from_user(user), session_expires_at=_session_expiry()),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password and open a session.

    Raises:
        401: If credentials are invalid
        403: If the account is disabled
        429: If the client exceeded the login rate limit
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_window,
        runtime.settings.login_rate_limit_window_seconds,
        response=response,
    )
    user, token = await runtime.accounts.login(
        body.email, body.password, _client_info(request)
    )
    _set_session_cookie(response, token)
    return Envelope(
        status="ok",
        data=AuthResponse(user=UserResponse.from_user(user), session_expires_at=_session_expiry()),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, auth: AuthResult = Depends(require_session)):
    runtime = get_runtime()
    await runtime.sessions.delete_session(auth.session_token)
    _clear_session_cookie(response)
    return Envelope(status="ok", data={"logged_out": True})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(response: Response, auth: AuthResult = Depends(require_session)):
    """End every session of the current user, this one included."""
    runtime = get_runtime()
    removed = await runtime.sessions.delete_all_user_sessions(auth.principal.id)
    _clear_session_cookie(response)
    return Envelope(status="ok", data=LogoutAllResponse(sessions_removed=removed))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    auth: AuthResult = Depends(require_session),
):
    """Replace the caller's password. Existing sessions stay valid.

    Raises:
        400: If the new password is weak or equals the current one
        401: If the current password is wrong
        429: If the client exceeded the password change rate limit
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"change-password:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_window,
        runtime.settings.login_rate_limit_window_seconds,
    )
    await asyncio.to_thread(
        runtime.accounts.change_password,
        auth.principal.id,
        body.current_password,
        body.new_password,
    )
    return Envelope(status="ok", data={"password_changed": True})


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(auth: AuthResult = Depends(require_session)):
    record = auth.session
    return Envelope(
        status="ok",
        data=CurrentSessionResponse(
            user=_principal_response(auth),
            created_at=datetime.fromtimestamp(record.created_at, tz=timezone.utc),
            last_used_at=datetime.fromtimestamp(record.last_used_at, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(record.expires_at, tz=timezone.utc),
        ),
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(auth: AuthResult = Depends(require_session)):
    runtime = get_runtime()
    sessions = await runtime.sessions.list_user_sessions(auth.principal.id)
    items = [
        SessionItem.from_metadata(meta, current_token=auth.session_token)
        for meta in sessions
    ]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def delete_session(
    session_id: str = Path(..., max_length=128),
    auth: AuthResult = Depends(require_session),
):
    """Revoke one of the caller's other sessions.

    Raises:
        400: If ``session_id`` is the session making the request
        404: If the session does not belong to the caller
    """
    if session_id == auth.session_token:
        raise ValidationError(
            "cannot delete the current session; use /auth/logout instead"
        )
    runtime = get_runtime()
    if not await runtime.sessions.user_owns_session(auth.principal.id, session_id):
        raise NotFoundError("session not found")
    await runtime.sessions.delete_session(session_id)
    return Envelope(status="ok", data={"deleted": True})


@router.get("/auth/providers", response_model=Envelope, tags=["auth"])
async def list_providers():
    settings = get_settings()
    return Envelope(
        status="ok",
        data=ProvidersResponse(
            providers=[method.value for method in settings.enabled_auth_methods()]
        ),
    )


@router.post("/api-keys", response_model=Envelope, status_code=201, tags=["api-keys"])
async def create_api_key(
    body: ApiKeyCreateRequest, auth: AuthResult = Depends(require_session)
):
    """Mint an API key for the caller. The plaintext key is only ever returned here."""
    runtime = get_runtime()
    api_key, plaintext = runtime.api_keys.create_api_key(
        auth.principal.id, name=body.name, expires_at=body.expires_at
    )
    return Envelope(
        status="ok",
        data=ApiKeyCreatedResponse(
            id=api_key.id,
            name=api_key.name,
            created_at=api_key.created_at,
            last_used_at=api_key.last_used_at,
            expires_at=api_key.expires_at,
            key_fingerprint=api_key.fingerprint,
            key=plaintext,
        ),
    )


@router.get("/api-keys", response_model=Envelope, tags=["api-keys"])
async def list_api_keys(auth: AuthResult = Depends(require_session)):
    runtime = get_runtime()
    items = [
        ApiKeyResponse.from_metadata(meta)
        for meta in runtime.api_keys.list_user_api_keys(auth.principal.id)
    ]
    return Envelope(status="ok", data=ApiKeyListResponse(items=items))


@router.delete("/api-keys/{key_id}", response_model=Envelope, tags=["api-keys"])
async def delete_api_key(
    key_id: str = Path(..., max_length=64),
    auth: AuthResult = Depends(require_session),
):
    runtime = get_runtime()
    runtime.api_keys.delete_api_key(key_id, auth.principal.id)
    return Envelope(status="ok", data={"deleted": True})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(auth: AuthResult = Depends(require_auth)):
    return Envelope(status="ok", data=_principal_response(auth))


@router.get("/admin/ping", response_model=Envelope, tags=["admin"])
async def admin_ping(auth: AuthResult = Depends(require_roles(rbac.Role.ADMIN))):
    return Envelope(status="ok", data={"pong": True, "user_id": auth.principal.id})
