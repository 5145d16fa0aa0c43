from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from datetime import datetime
from typing import Callable, List, Optional, Protocol, Tuple

from gatehouse.logging import get_logger
from gatehouse.service.errors import (
    AccountDisabled,
    NotFoundError,
    UserNotFound,
    ValidationError,
)
from gatehouse.storage.models import ApiKey, ApiKeyMetadata, Principal, User, utcnow

logger = get_logger(__name__)

API_KEY_PATTERN = re.compile(r"([a-z]{1,12}_)?[0-9a-f]{128}")
API_KEY_BODY_BYTES = 64
API_KEY_PREFIX_MAX_LENGTH = 12


class KeyStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_api_key(self, api_key: ApiKey) -> ApiKey: ...

    def find_active_api_key_by_hash(
        self, key_hash: str, now: datetime
    ) -> Optional[Tuple[ApiKey, User]]: ...

    def touch_api_key(self, key_id: str, used_at: datetime) -> None: ...

    def list_api_keys(self, user_id: str) -> List[ApiKey]: ...

    def delete_api_key(self, key_id: str, user_id: str) -> bool: ...

    def delete_user_api_keys(self, user_id: str) -> int: ...

    def delete_expired_api_keys(self, now: datetime) -> int: ...


def hash_api_key(plaintext: str) -> str:
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


def api_key_prefix(email: str) -> str:
    """Cosmetic key prefix derived from the owner's email local part."""
    local_part = email.split("@", 1)[0].lower()
    return re.sub(r"[^a-z]", "", local_part)[:API_KEY_PREFIX_MAX_LENGTH]


def is_well_formed_api_key(candidate: str) -> bool:
    return API_KEY_PATTERN.fullmatch(candidate) is not None


class ApiKeyManager:
    """Issues, validates and revokes long-lived bearer keys.

    Only the SHA-256 of a key is stored. The plaintext leaves this class
    exactly once, as the second element of ``create_api_key``'s result.
    """

    def __init__(
        self, store: KeyStore, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.store = store
        self._clock = clock or utcnow
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def create_api_key(
        self,
        user_id: str,
        name: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Tuple[ApiKey, str]:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFound()
        if not user.is_active:
            raise AccountDisabled()
        if expires_at is not None and expires_at.tzinfo is None:
            raise ValidationError(
                "expires_at must include a timezone offset", detail={"field": "expires_at"}
            )
        if expires_at is not None and expires_at <= self._now():
            raise ValidationError(
                "expires_at must be in the future", detail={"field": "expires_at"}
            )

        prefix = api_key_prefix(user.email)
        body = secrets.token_hex(API_KEY_BODY_BYTES)
        plaintext = f"{prefix}_{body}" if prefix else body
        api_key = ApiKey.new(
            user_id=user.id,
            key_hash=hash_api_key(plaintext),
            name=name,
            expires_at=expires_at,
        )
        api_key.created_at = self._now()
        stored = self.store.create_api_key(api_key)
        self.logger.info(
            "api_key_created",
            user_id=user.id,
            key_id=stored.id,
            key_fingerprint=stored.fingerprint,
        )
        return stored, plaintext

    def validate_api_key(self, plaintext: str) -> Optional[Tuple[Principal, ApiKey]]:
        """Resolve a presented key to its owner, or None for any failure.

        Unknown, expired, malformed and disabled-owner keys are indistinguishable
        to the caller.
        """
        if not plaintext or not is_well_formed_api_key(plaintext):
            return None
        presented_hash = hash_api_key(plaintext)
        now = self._now()
        try:
            found = self.store.find_active_api_key_by_hash(presented_hash, now)
        except Exception as exc:
            self.logger.error("api_key_lookup_failed", error=str(exc))
            return None
        if found is None:
            return None
        api_key, owner = found
        if api_key.is_expired(now) or not owner.is_active:
            return None
        if not hmac.compare_digest(
            bytes.fromhex(presented_hash), bytes.fromhex(api_key.key_hash)
        ):
            return None
        return Principal.from_user(owner), api_key

    def update_last_used(self, key_id: str) -> None:
        try:
            self.store.touch_api_key(key_id, self._now())
        except Exception as exc:
            self.logger.warning("api_key_touch_failed", key_id=key_id, error=str(exc))

    def list_user_api_keys(self, user_id: str) -> List[ApiKeyMetadata]:
        return [
            ApiKeyMetadata(
                id=key.id,
                name=key.name,
                created_at=key.created_at,
                last_used_at=key.last_used_at,
                expires_at=key.expires_at,
                key_fingerprint=key.fingerprint,
            )
            for key in self.store.list_api_keys(user_id)
        ]

    def delete_api_key(self, key_id: str, user_id: str) -> None:
        if not self.store.delete_api_key(key_id, user_id):
            raise NotFoundError("api key not found", detail={"key_id": key_id})
        self.logger.info("api_key_deleted", user_id=user_id, key_id=key_id)

    def delete_all_user_api_keys(self, user_id: str) -> int:
        removed = self.store.delete_user_api_keys(user_id)
        self.logger.info("user_api_keys_deleted", user_id=user_id, removed_count=removed)
        return removed

    def cleanup_expired_api_keys(self) -> int:
        try:
            removed = self.store.delete_expired_api_keys(self._now())
        except Exception as exc:
            self.logger.error("api_key_cleanup_failed", error=str(exc))
            return 0
        if removed:
            self.logger.info("expired_api_keys_removed", removed_count=removed)
        return removed
