from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that ends up in the error envelope:
    - authentication_required / invalid_token / invalid_credentials (401)
    - user_inactive / account_disabled / insufficient_permissions (403)
    - not_found / user_not_found (404)
    - validation_error (400)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class AuthenticationRequired(AuthenticationError):
    """No credential was presented."""
    error_code = "authentication_required"

    def __init__(self, message: str = "authentication required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidToken(AuthenticationError):
    """A credential was presented but is unknown, expired or malformed.

    ``clear_session_cookie`` tells the HTTP layer to expire the session
    cookie on the way out so the browser stops replaying it.
    """
    error_code = "invalid_token"

    def __init__(
        self,
        message: str = "invalid or expired credential",
        *,
        clear_session_cookie: bool = False,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.clear_session_cookie = clear_session_cookie


class InvalidCredentials(AuthenticationError):
    """Email/password pair did not match."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class UserInactive(ForbiddenError):
    error_code = "user_inactive"

    def __init__(self, message: str = "user account is inactive", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountDisabled(ForbiddenError):
    error_code = "account_disabled"

    def __init__(self, message: str = "account disabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InsufficientPermissions(ForbiddenError):
    """Principal lacks every role the operation accepts."""
    error_code = "insufficient_permissions"

    def __init__(self, message: str = "insufficient permissions", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFound(NotFoundError):
    error_code = "user_not_found"

    def __init__(self, message: str = "user not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class StoreUnavailable(ServerError):
    """Backing store could not be reached; details stay in the logs."""

    def __init__(self, message: str = "internal server error", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AuthenticationRequired",
    "InvalidToken",
    "InvalidCredentials",
    "ForbiddenError",
    "UserInactive",
    "AccountDisabled",
    "InsufficientPermissions",
    "NotFoundError",
    "UserNotFound",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "StoreUnavailable",
]
