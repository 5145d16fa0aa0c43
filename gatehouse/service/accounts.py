from __future__ import annotations

from typing import Optional, Protocol, Sequence, Tuple

from gatehouse.config import AuthMethod, Settings
from gatehouse.logging import get_logger
from gatehouse.service.errors import (
    AccountDisabled,
    ConflictError,
    ForbiddenError,
    InvalidCredentials,
    ValidationError,
)
from gatehouse.service.passwords import PasswordService, password_strength_error
from gatehouse.service.rbac import Role
from gatehouse.service.sessions import SessionManager
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import ClientInfo, User

logger = get_logger(__name__)


class AccountStore(Protocol):
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        roles: Optional[Sequence[str]] = None,
        is_active: bool = True,
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_last_login(self, user_id: str) -> None: ...


class AccountService:
    """Email/password registration and login, both ending in a new session."""

    def __init__(
        self,
        store: AccountStore,
        sessions: SessionManager,
        passwords: PasswordService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.passwords = passwords
        self.settings = settings
        self.logger = logger

    def _require_email_password(self) -> None:
        if not self.settings.auth_method_enabled(AuthMethod.EMAIL_PASSWORD):
            raise ForbiddenError(
                "email/password authentication is disabled",
                error_code="auth_method_disabled",
            )

    async def register(
        self,
        email: str,
        password: str,
        name: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> Tuple[User, str]:
        self._require_email_password()
        problem = password_strength_error(password)
        if problem:
            raise ValidationError(problem, detail={"field": "password"})
        default_role = Role(self.settings.default_role.upper())
        try:
            user = self.store.create_user(email, name, roles=[default_role.value])
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.passwords.save_password(user.id, password)
        token = await self.sessions.create_session(user.id, user.roles, client)
        self.logger.info("user_registered", user_id=user.id)
        return user, token

    async def login(
        self, email: str, password: str, client: Optional[ClientInfo] = None
    ) -> Tuple[User, str]:
        self._require_email_password()
        user = self.store.get_user_by_email(email)
        if user is None or not self.passwords.verify_password(user.id, password):
            self.logger.info("login_failed", reason="bad_credentials")
            raise InvalidCredentials()
        if not user.is_active:
            raise AccountDisabled()
        token = await self.sessions.create_session(user.id, user.roles, client)
        self.store.update_last_login(user.id)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, token

    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        """Replace a user's password after re-checking the current one.

        Raises:
            ValidationError: If the new password is weak or equals the current one
            InvalidCredentials: If ``current_password`` does not verify
        """
        self._require_email_password()
        problem = password_strength_error(new_password)
        if problem:
            raise ValidationError(problem, detail={"field": "new_password"})
        if new_password == current_password:
            raise ValidationError(
                "new password must differ from the current password",
                detail={"field": "new_password"},
            )
        if not self.passwords.verify_password(user_id, current_password):
            self.logger.warning("password_change_rejected", user_id=user_id)
            raise InvalidCredentials("current password is incorrect")
        self.passwords.save_password(user_id, new_password)
        self.logger.info("password_changed", user_id=user_id)
