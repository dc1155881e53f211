from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from taskauth.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


_DEFAULT_CORS_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment or ``.env``."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/taskauth", "DATABASE_URL"
    )
    db_connect_timeout_seconds: int = env_field(5, "DB_CONNECT_TIMEOUT_SECONDS", gt=0)
    db_statement_timeout_seconds: int = env_field(
        45, "DB_STATEMENT_TIMEOUT_SECONDS", gt=0
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Shared throttle counters; process-local counters are used when unset",
    )
    redis_socket_timeout_seconds: float = env_field(
        5.0, "REDIS_SOCKET_TIMEOUT_SECONDS", gt=0
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="Directory for the in-memory store's JSON snapshot; no snapshot when unset",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables runtime resets between tests",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("task-manager-api", "JWT_ISSUER")
    jwt_audience: str = env_field("task-manager-client", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)
    remember_me_refresh_ttl_days: int = env_field(
        30, "REMEMBER_ME_REFRESH_TTL_DAYS", gt=0
    )

    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", gt=0)
    password_hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", ge=32, description="argon2 memory cost in KiB"
    )

    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", gt=0)
    lock_duration_minutes: int = env_field(30, "LOCK_DURATION_MINUTES", gt=0)
    max_concurrent_sessions: int = env_field(5, "MAX_CONCURRENT_SESSIONS", gt=0)
    session_retention_hours: int = env_field(
        24,
        "SESSION_RETENTION_HOURS",
        gt=0,
        description="How long deactivated sessions are kept before they are purged",
    )
    session_cleanup_interval_seconds: int = env_field(
        3600, "SESSION_CLEANUP_INTERVAL_SECONDS", gt=0
    )

    register_rate_limit: int = env_field(5, "REGISTER_RATE_LIMIT", gt=0)
    register_rate_window_minutes: int = env_field(15, "REGISTER_RATE_WINDOW_MINUTES", gt=0)
    login_rate_limit: int = env_field(10, "LOGIN_RATE_LIMIT", gt=0)
    login_rate_window_minutes: int = env_field(15, "LOGIN_RATE_WINDOW_MINUTES", gt=0)

    cors_allow_origins: List[str] = env_field(
        list(_DEFAULT_CORS_ORIGINS), "CORS_ALLOW_ORIGINS"
    )
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    trusted_proxies: List[str] = env_field(
        [],
        "TRUSTED_PROXIES",
        description="Peer addresses whose X-Forwarded-For header is honoured",
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    host: str = env_field("127.0.0.1", "HOST")
    port: int = env_field(8000, "PORT", gt=0, le=65535)

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

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("cors_allow_origins", "trusted_proxies", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secrets(self) -> "Settings":
        for name in ("jwt_secret", "jwt_refresh_secret"):
            if getattr(self, name):
                continue
            if self.is_production:
                raise ValueError(f"{name.upper()} must be set in production")
            # Tokens signed with a generated secret do not survive a restart
            logger.warning(
                "jwt_secret_generated",
                setting=name.upper(),
                environment=self.environment.value,
            )
            setattr(self, name, secrets.token_urlsafe(64))
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self


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
