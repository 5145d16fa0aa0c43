from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    roles: List[str] = field(default_factory=lambda: ["GUEST"])
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None


@dataclass
class ApiKey:
    id: str
    user_id: str
    key_hash: str
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        key_hash: str,
        name: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> "ApiKey":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            key_hash=key_hash,
            name=name,
            expires_at=expires_at,
        )

    @property
    def fingerprint(self) -> str:
        """Trailing hash characters shown to humans in place of the key."""
        return self.key_hash[-6:]

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass(frozen=True)
class Principal:
    """Authenticated identity, identical for session and API-key requests."""

    id: str
    email: str
    name: Optional[str]
    roles: Tuple[str, ...]
    is_active: bool

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            roles=tuple(user.roles),
            is_active=user.is_active,
        )


@dataclass(frozen=True)
class ClientInfo:
    """Request details captured when a session is opened."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None


@dataclass
class SessionRecord:
    """Server-side session state stored under the session token.

    Timestamps are integer epoch seconds so they line up with Redis TTLs.
    """

    user_id: str
    roles: List[str]
    created_at: int
    last_used_at: int
    expires_at: int
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        return cls(
            user_id=str(data["user_id"]),
            roles=list(data.get("roles") or []),
            created_at=int(data["created_at"]),
            last_used_at=int(data["last_used_at"]),
            expires_at=int(data["expires_at"]),
            ip=data.get("ip"),
            user_agent=data.get("user_agent"),
            country=data.get("country"),
        )


@dataclass
class SessionMetadata:
    token_id: str
    token_prefix: str
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None


@dataclass
class ApiKeyMetadata:
    id: str
    name: Optional[str]
    created_at: datetime
    last_used_at: Optional[datetime]
    expires_at: Optional[datetime]
    key_fingerprint: str
