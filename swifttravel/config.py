from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from swifttravel.logging import get_logger

logger = get_logger(__name__)


class RateLimitWindowMode(str, Enum):
    """How the magic-link rate limit window is timed.

    - REFRESH: every allowed request restarts the window TTL
    - FIXED: the window is anchored at the first request and expires on schedule
    """

    REFRESH = "refresh"
    FIXED = "fixed"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service."""

    app_env: str = env_field(
        "development",
        "APP_ENV",
        description="development or production; production hides raw error detail",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/swifttravel", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str | None = env_field(
        None,
        "SHARED_FS_ROOT",
        description="Directory for persisting the in-memory user store between restarts",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")
    token_expiration_minutes: int = env_field(
        15,
        "TOKEN_EXPIRATION_MINUTES",
        description="Lifetime of a magic-link token",
    )
    session_expiration_hours: int = env_field(
        24,
        "SESSION_EXPIRATION_HOURS",
        description="Lifetime of a session JWT and its cookie",
    )
    rate_limit_per_window: int = env_field(
        5,
        "RATE_LIMIT_PER_WINDOW",
        description="Magic-link requests allowed per email per window",
    )
    rate_limit_window_minutes: int = env_field(15, "RATE_LIMIT_WINDOW_MINUTES")
    rate_limit_window_mode: RateLimitWindowMode = env_field(
        RateLimitWindowMode.REFRESH, "RATE_LIMIT_WINDOW_MODE"
    )
    rate_limit_fail_open: bool = env_field(
        False,
        "RATE_LIMIT_FAIL_OPEN",
        description="Allow magic-link requests when the rate-limit store is unreachable",
    )
    revocation_fail_open: bool = env_field(
        True,
        "REVOCATION_FAIL_OPEN",
        description="Treat sessions as not revoked when the revocation store is unreachable",
    )
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use synchronous Redis and permit in-process fallbacks for tests",
    )
    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Swift Travel", "EMAIL_FROM_NAME")
    email_retry_attempts: int = env_field(3, "EMAIL_RETRY_ATTEMPTS")
    email_retry_delay_seconds: float = env_field(1.0, "EMAIL_RETRY_DELAY_SECONDS")

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
        return self.app_env.lower() == "production"

    @field_validator(
        "token_expiration_minutes",
        "session_expiration_hours",
        "rate_limit_per_window",
        "rate_limit_window_minutes",
        "email_retry_attempts",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("email_retry_delay_seconds")
    @classmethod
    def _non_negative_delay(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("rate_limit_window_mode")
    @classmethod
    def _validate_window_mode(cls, value: RateLimitWindowMode) -> RateLimitWindowMode:
        return RateLimitWindowMode(value)

    @field_validator("redis_url", "shared_fs_root")
    @classmethod
    def _blank_as_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if self.is_production:
            raise ValueError("JWT_SECRET must be set when APP_ENV=production")
        # Sessions signed with this secret do not survive a restart
        self.jwt_secret = secrets.token_urlsafe(64)
        logger.warning(
            "jwt_secret_generated",
            app_env=self.app_env,
            message="JWT_SECRET not set; generated an ephemeral development secret",
        )
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
