from __future__ import annotations

import os
import secrets
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from agora.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity service."""

    database_url: str = env_field("postgresql://localhost:5432/agora", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_cache_fallback_dev: bool = env_field(
        False,
        "ALLOW_CACHE_FALLBACK_DEV",
        description="Use the in-process cache when Redis is unreachable (single process only)",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    is_production: bool = env_field(
        False, "IS_PRODUCTION", description="Marks auth cookies as secure"
    )

    # Token lifecycle
    jwt_secret: str | None = env_field(None, "JWT_SECRET_KEY")
    access_token_ttl_minutes: int = env_field(15, "JWT_ACCESS_TOKEN_LIFETIME_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        24 * 60, "JWT_REFRESH_TOKEN_LIFETIME_MINUTES"
    )
    access_token_cookie_key: str = env_field("access_token", "ACCESS_TOKEN_COOKIE_KEY")
    refresh_token_cookie_key: str = env_field(
        "refresh_token", "REFRESH_TOKEN_COOKIE_KEY"
    )
    oauth_state_ttl_minutes: int = env_field(10, "OAUTH_STATE_TTL_MINUTES")
    password_reset_ttl_minutes: int = env_field(30, "PASSWORD_RESET_TTL_MINUTES")

    # Deadlines for blocking collaborators
    cache_operation_timeout_seconds: float = env_field(
        5.0, "CACHE_OPERATION_TIMEOUT_SECONDS"
    )
    directory_timeout_seconds: float = env_field(5.0, "DIRECTORY_TIMEOUT_SECONDS")

    # Google OAuth
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_redirect_uri: str | None = env_field(None, "GOOGLE_CLIENT_REDIRECT_URL")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USERNAME")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Agora", "EMAIL_FROM_NAME")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOWED_ORIGINS")

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
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "oauth_state_ttl_minutes",
        "password_reset_ttl_minutes",
    )
    @classmethod
    def _positive_lifetime(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("lifetimes must be positive")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET_KEY must be set outside of TEST_MODE")
        # Tokens signed with this secret do not survive a restart
        logger.warning("jwt_secret_generated_ephemeral")
        self.jwt_secret = secrets.token_urlsafe(64)
        return self

    @property
    def access_token_lifetime(self) -> timedelta:
        return timedelta(minutes=self.access_token_ttl_minutes)

    @property
    def refresh_token_lifetime(self) -> timedelta:
        return timedelta(minutes=self.refresh_token_ttl_minutes)

    @property
    def oauth_state_lifetime(self) -> timedelta:
        return timedelta(minutes=self.oauth_state_ttl_minutes)

    @property
    def password_reset_lifetime(self) -> timedelta:
        return timedelta(minutes=self.password_reset_ttl_minutes)

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_minutes * 60


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
