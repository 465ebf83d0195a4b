from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from payauth.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide configuration, read once at startup."""

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("payauth", "JWT_ISSUER")
    jwt_audience: str = env_field("payauth-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS", ge=0)
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(60 * 24 * 7, "REFRESH_TOKEN_TTL_MINUTES")
    reset_token_ttl_minutes: int = env_field(120, "RESET_TOKEN_TTL_MINUTES")
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    revoke_sessions_on_password_change: bool = env_field(
        False,
        "REVOKE_SESSIONS_ON_PASSWORD_CHANGE",
        description="Bump token_version after password reset/change",
    )
    # Storage
    database_url: str = env_field("postgresql://localhost:5432/payauth", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/payauth", "SHARED_FS_ROOT")
    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    # HTTP
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    # Rate limits (fixed windows keyed by client IP)
    auth_rate_limit_max: int = env_field(10, "AUTH_RATE_LIMIT_MAX")
    auth_rate_limit_window_seconds: int = env_field(15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS")
    forgot_password_rate_limit_max: int = env_field(3, "FORGOT_PASSWORD_RATE_LIMIT_MAX")
    forgot_password_rate_limit_window_seconds: int = env_field(
        60 * 60, "FORGOT_PASSWORD_RATE_LIMIT_WINDOW_SECONDS"
    )
    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("PayAuth", "EMAIL_FROM_NAME")

    test_mode: bool = env_field(False, "TEST_MODE")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("frontend_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "reset_token_ttl_minutes",
        "auth_rate_limit_max",
        "auth_rate_limit_window_seconds",
        "forgot_password_rate_limit_max",
        "forgot_password_rate_limit_window_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _require_signing_secrets(self) -> "Settings":
        # No generated fallback: tokens signed with an ephemeral secret would
        # silently stop verifying after a restart.
        for name in ("jwt_secret", "jwt_refresh_secret"):
            value = getattr(self, name)
            if not value or not value.strip():
                raise ValueError(f"{name.upper()} must be set")
            if len(value) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{name.upper()} must be at least {MIN_SECRET_LENGTH} characters"
                )
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            use_memory_store=_settings_cache.use_memory_store,
            redis_configured=bool(_settings_cache.redis_url),
            test_mode=_settings_cache.test_mode,
        )
    return _settings_cache


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
