from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from gatehouse.service.passwords import password_strength_error
from gatehouse.storage.models import ApiKeyMetadata, SessionMetadata, User

# Longest user agent shown in session listings
USER_AGENT_DISPLAY_LENGTH = 80


def _normalize_unicode(value: str) -> str:
    """Normalize Unicode string using NFKC.

    Zero-width and bidi override characters are dropped first so that two
    visually identical addresses cannot map to different accounts.
    """
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "authentication_required",
    "invalid_token",
    "invalid_credentials",
    "forbidden",
    "user_inactive",
    "account_disabled",
    "insufficient_permissions",
    "auth_method_disabled",
    "not_found",
    "user_not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope wrapping every response body."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    problem = password_strength_error(value)
    if problem:
        raise ValueError(problem)
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    roles: List[str]
    is_active: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            roles=list(user.roles),
            is_active=user.is_active,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )


class AuthResponse(BaseModel):
    user: UserResponse
    session_expires_at: datetime


class PrincipalResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    roles: List[str]
    auth_method: Literal["api_key", "session"]
    api_key_id: Optional[str] = None


class CurrentSessionResponse(BaseModel):
    user: PrincipalResponse
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime


class SessionItem(BaseModel):
    id: str
    token_prefix: str
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None
    is_current: bool = False

    @classmethod
    def from_metadata(cls, meta: SessionMetadata, *, current_token: Optional[str]) -> "SessionItem":
        user_agent = meta.user_agent
        if user_agent and len(user_agent) > USER_AGENT_DISPLAY_LENGTH:
            user_agent = user_agent[:USER_AGENT_DISPLAY_LENGTH]
        return cls(
            id=meta.token_id,
            token_prefix=meta.token_prefix,
            created_at=meta.created_at,
            last_used_at=meta.last_used_at,
            expires_at=meta.expires_at,
            ip=meta.ip,
            user_agent=user_agent,
            country=meta.country,
            is_current=meta.token_id == current_token,
        )


class SessionListResponse(BaseModel):
    items: List[SessionItem]


class LogoutAllResponse(BaseModel):
    sessions_removed: int


class ProvidersResponse(BaseModel):
    providers: List[str]


class ApiKeyCreateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=128)
    expires_at: Optional[datetime] = None

    @field_validator("expires_at")
    @classmethod
    def _require_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            raise ValueError("expires_at must include a timezone offset")
        return value


class ApiKeyResponse(BaseModel):
    id: str
    name: Optional[str] = None
    created_at: datetime
    last_used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    key_fingerprint: str

    @classmethod
    def from_metadata(cls, meta: ApiKeyMetadata) -> "ApiKeyResponse":
        return cls(
            id=meta.id,
            name=meta.name,
            created_at=meta.created_at,
            last_used_at=meta.last_used_at,
            expires_at=meta.expires_at,
            key_fingerprint=meta.key_fingerprint,
        )


class ApiKeyCreatedResponse(ApiKeyResponse):
    # Returned exactly once, at creation
    key: str


class ApiKeyListResponse(BaseModel):
    items: List[ApiKeyResponse]
