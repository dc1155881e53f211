from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from taskauth.config import get_settings, reset_settings_cache
from taskauth.logging import get_logger
from taskauth.service.auth import AuthService
from taskauth.service.credentials import CredentialService
from taskauth.service.errors import StoreUnavailableError
from taskauth.service.throttle import LoginThrottle
from taskauth.service.tokens import TokenCodec
from taskauth.storage.memory import MemoryStore
from taskauth.storage.postgres import PostgresStore
from taskauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
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
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            environment=self.settings.environment.value,
            test_mode=self.settings.test_mode,
        )

        self.store = None
        self.store_error: Optional[str] = None
        try:
            self.store = (
                MemoryStore(state_dir=self.settings.memory_store_path)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    connect_timeout=self.settings.db_connect_timeout_seconds,
                    statement_timeout=self.settings.db_statement_timeout_seconds,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            if self.settings.is_production:
                raise
            self.store_error = type(exc).__name__

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.redis_socket_timeout_seconds,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Login throttle counters are process-local only.",
                )

        self.tokens = TokenCodec(self.settings)
        self.throttle = LoginThrottle(self.cache)
        self.credentials: Optional[CredentialService] = None
        self.auth: Optional[AuthService] = None
        if self.store is not None:
            self.credentials = CredentialService(self.store, self.settings)
            self.auth = AuthService(
                self.store, self.credentials, self.tokens, self.settings
            )

        logger.info(
            "runtime_initialized",
            store_ready=self.store is not None,
            redis_enabled=self.cache is not None,
        )

    def require_auth(self) -> AuthService:
        if self.auth is None:
            raise StoreUnavailableError(
                "Authentication store is unavailable", detail={"store": self.store_error}
            )
        return self.auth

    def close(self) -> None:
        """Release the Postgres pool; the async Redis client is closed separately."""
        close = getattr(self.store, "close", None)
        if callable(close):
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
            runtime.close()
            if runtime.cache is not None:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
