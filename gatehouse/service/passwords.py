from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatehouse.logging import get_logger

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


def password_strength_error(password: str) -> Optional[str]:
    """Return why ``password`` is too weak, or None when it is acceptable."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"password must be at least {MIN_PASSWORD_LENGTH} characters"
    if len(password) > MAX_PASSWORD_LENGTH:
        return f"password must be at most {MAX_PASSWORD_LENGTH} characters"
    if not any(c.isascii() and c.isalpha() for c in password):
        return "password must contain at least one letter"
    if not any(c in "0123456789" for c in password):
        return "password must contain at least one number"
    return None


class PasswordStore(Protocol):
    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


class PasswordService:
    """argon2id hashing for email/password accounts."""

    def __init__(self, store: PasswordStore) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = get_logger(__name__)

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.info("password_verification_failed", user_id=user_id)
            return False
