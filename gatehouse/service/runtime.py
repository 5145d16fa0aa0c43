from __future__ import annotations

import threading
from typing import Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from gatehouse.config import get_settings, reset_settings_cache
from gatehouse.logging import get_logger
from gatehouse.service.accounts import AccountService
from gatehouse.service.api_keys import ApiKeyManager
from gatehouse.service.authenticator import Authenticator
from gatehouse.service.passwords import PasswordService
from gatehouse.service.sessions import SessionManager
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.memory_cache import MemoryCache
from gatehouse.storage.postgres import PostgresStore
from gatehouse.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, MemoryCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc

        if self.cache is None:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for sessions and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions and rate "
                    "limits live in process memory and vanish on restart."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        self.sessions = SessionManager(
            self.cache,
            ttl_seconds=self.settings.session_ttl_seconds,
            sliding_extension_seconds=self.settings.session_sliding_extension_seconds,
        )
        self.api_keys = ApiKeyManager(self.store)
        self.authenticator = Authenticator(self.sessions, self.api_keys, self.store)
        self.passwords = PasswordService(self.store)
        self.accounts = AccountService(
            self.store, self.sessions, self.passwords, self.settings
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.cache, RedisCache),
            session_ttl_seconds=self.settings.session_ttl_seconds,
            auth_methods=[m.value for m in self.settings.enabled_auth_methods()],
        )

    async def close(self) -> None:
        """Release the Redis client and the database pool."""
        await self.authenticator.wait_for_background_tasks()
        if self.cache is not None:
            await self.cache.close()
        self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            # Only the in-memory twins are expected here; they hold no sockets
            runtime.store.close()
            if isinstance(runtime.cache, MemoryCache):
                runtime.cache.clear()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit over whichever cache the runtime holds.

    Args:
        runtime: Runtime instance with cache
        key: Rate limit key
        limit: Maximum requests per window
        window_seconds: Window duration in seconds
        return_remaining: If True, return tuple of (allowed, remaining, reset_seconds)

    Returns:
        bool if return_remaining is False, else (bool, int, int) tuple
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    return await runtime.cache.check_rate_limit(
        key, limit, window_seconds, return_remaining=return_remaining, cost=cost
    )
