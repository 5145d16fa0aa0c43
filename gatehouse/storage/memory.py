from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import ApiKey, User, utcnow


class MemoryStore:
    """In-memory user and API-key store used for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.api_keys: Dict[str, ApiKey] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        roles: Optional[Sequence[str]] = None,
        is_active: bool = True,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                roles=list(roles) if roles else ["GUEST"],
                is_active=is_active,
            )
            self.users[user.id] = user
            return replace(user, roles=list(user.roles))

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user, roles=list(user.roles)) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email == normalized:
                    return replace(user, roles=list(user.roles))
        return None

    def update_user_roles(self, user_id: str, roles: Sequence[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.roles = list(roles)
            return replace(user, roles=list(user.roles))

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            return replace(user, roles=list(user.roles))

    def update_last_login(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = utcnow()

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            for key_id in [k.id for k in self.api_keys.values() if k.user_id == user_id]:
                self.api_keys.pop(key_id, None)
            return removed is not None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # api keys
    def create_api_key(self, api_key: ApiKey) -> ApiKey:
        with self._data_lock:
            if api_key.user_id not in self.users:
                raise ConstraintViolation("api key owner missing", {"user_id": api_key.user_id})
            if any(k.key_hash == api_key.key_hash for k in self.api_keys.values()):
                raise ConstraintViolation("api key hash already exists", {"field": "key_hash"})
            self.api_keys[api_key.id] = replace(api_key)
            return replace(api_key)

    def find_active_api_key_by_hash(
        self, key_hash: str, now: datetime
    ) -> Optional[Tuple[ApiKey, User]]:
        """Return the key and its owner when the key is unexpired and the owner active."""
        with self._data_lock:
            for api_key in self.api_keys.values():
                if api_key.key_hash != key_hash or api_key.is_expired(now):
                    continue
                owner = self.users.get(api_key.user_id)
                if owner is None or not owner.is_active:
                    return None
                return replace(api_key), replace(owner, roles=list(owner.roles))
        return None

    def touch_api_key(self, key_id: str, used_at: datetime) -> None:
        with self._data_lock:
            api_key = self.api_keys.get(key_id)
            if api_key:
                api_key.last_used_at = used_at

    def get_api_key(self, key_id: str) -> Optional[ApiKey]:
        with self._data_lock:
            api_key = self.api_keys.get(key_id)
            return replace(api_key) if api_key else None

    def list_api_keys(self, user_id: str) -> List[ApiKey]:
        with self._data_lock:
            keys = [replace(k) for k in self.api_keys.values() if k.user_id == user_id]
        return sorted(keys, key=lambda k: k.created_at, reverse=True)

    def delete_api_key(self, key_id: str, user_id: str) -> bool:
        with self._data_lock:
            api_key = self.api_keys.get(key_id)
            if api_key is None or api_key.user_id != user_id:
                return False
            del self.api_keys[key_id]
            return True

    def delete_user_api_keys(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [k.id for k in self.api_keys.values() if k.user_id == user_id]
            for key_id in doomed:
                del self.api_keys[key_id]
            return len(doomed)

    def delete_expired_api_keys(self, now: datetime) -> int:
        with self._data_lock:
            doomed = [k.id for k in self.api_keys.values() if k.is_expired(now)]
            for key_id in doomed:
                del self.api_keys[key_id]
        if doomed:
            self.logger.debug("memory_expired_api_keys_removed", removed_count=len(doomed))
        return len(doomed)

    def close(self) -> None:
        return None
