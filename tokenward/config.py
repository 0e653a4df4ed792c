from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tokenward.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token lifecycle service."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(
        5.0,
        "REDIS_SOCKET_TIMEOUT",
        description="Per-command timeout in seconds for credential store calls",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use a synchronous Redis client so tests avoid event loop binding",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("tokenward", "JWT_ISSUER")
    jwt_audience: str = env_field("tokenward-clients", "JWT_AUDIENCE")
    jwt_clock_skew_seconds: int = env_field(120, "JWT_CLOCK_SKEW_SECONDS")

    access_token_ttl_seconds: int = env_field(
        3600,
        "ACCESS_TOKEN_TTL_SECONDS",
        description="Base access token lifetime before any remember-me multiplier",
    )
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 3600,
        "REFRESH_TOKEN_TTL_SECONDS",
        description="Base refresh token lifetime before any remember-me multiplier",
    )
    remember_me_multiplier: int = env_field(14, "REMEMBER_ME_MULTIPLIER")
    remember_me_threshold_seconds: int = env_field(
        24 * 3600,
        "REMEMBER_ME_THRESHOLD_SECONDS",
        description="Refresh TTLs above this are eligible for a remember-me marker",
    )
    max_token_family_lifetime_seconds: int = env_field(
        30 * 24 * 3600,
        "MAX_TOKEN_FAMILY_LIFETIME_SECONDS",
        description="Absolute age bound for a refresh rotation chain",
    )

    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS")
    failed_login_window_seconds: int = env_field(3600, "FAILED_LOGIN_WINDOW_SECONDS")
    lockout_duration_seconds: int = env_field(15 * 60, "LOCKOUT_DURATION_SECONDS")

    rate_limiting_enabled: bool = env_field(True, "RATE_LIMITING_ENABLED")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    ip_rate_limit_per_minute: int = env_field(300, "IP_RATE_LIMIT_PER_MINUTE")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Tokenward", "EMAIL_FROM_NAME")

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

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "remember_me_threshold_seconds",
        "max_token_family_lifetime_seconds",
        "max_failed_login_attempts",
        "failed_login_window_seconds",
        "lockout_duration_seconds",
        "login_rate_limit_per_minute",
        "ip_rate_limit_per_minute",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("remember_me_multiplier")
    @classmethod
    def _ensure_multiplier(cls, value: int) -> int:
        if value < 1:
            raise ValueError("remember_me_multiplier must be at least 1")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Every instance must share the secret; an ephemeral one only suits a single dev process.
        logger.warning(
            "jwt_secret_generated_ephemeral",
            message="JWT_SECRET is not set; tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)


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
