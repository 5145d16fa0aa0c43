from __future__ import annotations

import os
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gatehouse.logging import get_logger

logger = get_logger(__name__)


class SameSite(str, Enum):
    """Accepted SameSite policies for the session cookie."""

    STRICT = "strict"
    LAX = "lax"
    NONE = "none"


class AuthMethod(str, Enum):
    EMAIL_PASSWORD = "emailPassword"
    GOOGLE = "google"
    SLACK = "slack"
    GITHUB = "github"


OAUTH_PROVIDERS = (AuthMethod.GOOGLE, AuthMethod.SLACK, AuthMethod.GITHUB)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core and its HTTP surface."""

    database_url: str = env_field(
        "postgresql://localhost:5432/gatehouse", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    environment: str = env_field("development", "APP_ENV")

    # Sessions
    session_cookie_name: str = env_field("template_session", "SESSION_COOKIE_NAME")
    session_ttl_seconds: int = env_field(
        86400, "SESSION_TTL_SECONDS", description="Session lifetime after last renewal"
    )
    session_sliding_extension_seconds: int = env_field(
        3600,
        "SESSION_SLIDING_EXTENSION_SECONDS",
        description="Minimum idle time before a read renews the session TTL",
    )
    cookie_secure: bool = env_field(False, "COOKIE_SECURE")
    cookie_samesite: SameSite = env_field(SameSite.LAX, "COOKIE_SAMESITE")

    cors_origin: str = env_field("http://localhost:3000", "CORS_ORIGIN")
    default_role: str = env_field("GUEST", "DEFAULT_ROLE")

    # Authentication providers
    auth_email_password_enabled: bool = env_field(True, "AUTH_EMAIL_PASSWORD_ENABLED")
    auth_google_enabled: bool = env_field(False, "AUTH_GOOGLE_ENABLED")
    auth_slack_enabled: bool = env_field(False, "AUTH_SLACK_ENABLED")
    auth_github_enabled: bool = env_field(False, "AUTH_GITHUB_ENABLED")
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_redirect_uri: str | None = env_field(None, "GOOGLE_REDIRECT_URI")
    slack_client_id: str | None = env_field(None, "SLACK_CLIENT_ID")
    slack_client_secret: str | None = env_field(None, "SLACK_CLIENT_SECRET")
    slack_redirect_uri: str | None = env_field(None, "SLACK_REDIRECT_URI")
    github_client_id: str | None = env_field(None, "GITHUB_CLIENT_ID")
    github_client_secret: str | None = env_field(None, "GITHUB_CLIENT_SECRET")
    github_redirect_uri: str | None = env_field(None, "GITHUB_REDIRECT_URI")

    # Rate limits
    login_rate_limit_per_window: int = env_field(5, "LOGIN_RATE_LIMIT_PER_WINDOW")
    login_rate_limit_window_seconds: int = env_field(
        15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS"
    )
    api_rate_limit_per_hour: int = env_field(1000, "API_RATE_LIMIT_PER_HOUR")

    # Maintenance
    api_key_cleanup_interval_seconds: int = env_field(
        3600, "API_KEY_CLEANUP_INTERVAL_SECONDS"
    )

    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-memory credential store when Redis is unreachable",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cookie_samesite", mode="before")
    @classmethod
    def _validate_samesite(cls, value: Any) -> SameSite:
        if isinstance(value, str):
            value = value.lower()
        return SameSite(value)

    @field_validator("default_role", mode="before")
    @classmethod
    def _validate_default_role(cls, value: Any) -> str:
        role = str(value).strip().upper()
        if role not in {"ADMIN", "USER", "GUEST"}:
            raise ValueError("DEFAULT_ROLE must be one of ADMIN, USER, GUEST")
        return role

    @field_validator("session_ttl_seconds", "session_sliding_extension_seconds")
    @classmethod
    def _positive_seconds(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive number of seconds")
        return value

    @model_validator(mode="after")
    def _sliding_shorter_than_ttl(self) -> "Settings":
        # A renewal interval at or above the TTL lets sessions lapse between renewals
        if self.session_sliding_extension_seconds >= self.session_ttl_seconds:
            raise ValueError(
                "SESSION_SLIDING_EXTENSION_SECONDS must be smaller than SESSION_TTL_SECONDS"
            )
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    def auth_method_enabled(self, method: AuthMethod) -> bool:
        return {
            AuthMethod.EMAIL_PASSWORD: self.auth_email_password_enabled,
            AuthMethod.GOOGLE: self.auth_google_enabled,
            AuthMethod.SLACK: self.auth_slack_enabled,
            AuthMethod.GITHUB: self.auth_github_enabled,
        }[method]

    def enabled_auth_methods(self) -> List[AuthMethod]:
        return [method for method in AuthMethod if self.auth_method_enabled(method)]

    def oauth_credentials(self, provider: AuthMethod) -> dict[str, str | None]:
        prefix = provider.value
        return {
            "client_id": getattr(self, f"{prefix}_client_id"),
            "client_secret": getattr(self, f"{prefix}_client_secret"),
            "redirect_uri": getattr(self, f"{prefix}_redirect_uri"),
        }


def validate_auth_configuration(settings: Settings) -> List[AuthMethod]:
    """Fail fast when no login method is usable or an OAuth provider is half-configured.

    Returns the enabled methods so callers can log them.
    """
    enabled = settings.enabled_auth_methods()
    if not enabled:
        raise RuntimeError(
            "No authentication methods enabled; set at least one of "
            "AUTH_EMAIL_PASSWORD_ENABLED, AUTH_GOOGLE_ENABLED, AUTH_SLACK_ENABLED "
            "or AUTH_GITHUB_ENABLED to true"
        )
    for provider in OAUTH_PROVIDERS:
        if not settings.auth_method_enabled(provider):
            continue
        creds = settings.oauth_credentials(provider)
        missing = [
            f"{provider.value.upper()}_{name.upper()}"
            for name, value in creds.items()
            if not value
        ]
        if missing:
            raise RuntimeError(
                f"{provider.value} OAuth is enabled but missing: {', '.join(missing)}"
            )
    logger.info("auth_methods_enabled", methods=[m.value for m in enabled])
    return enabled


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
