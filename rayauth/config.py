from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from rayauth.logging import get_logger

logger = get_logger(__name__)

DEV_ACCESS_SECRET = "dev-only-secret-do-not-use-in-prod"
DEV_REFRESH_SECRET = "dev-only-refresh-secret"
MIN_SECRET_LENGTH = 16


class Environment(str, Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field("postgresql://localhost:5432/raya", "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/rayauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviours: memory store, sync redis client, no background sweep.",
    )

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    access_token_ttl_seconds: int = env_field(3600, "JWT_EXPIRES_IN", gt=0)
    refresh_token_ttl_seconds: int = env_field(7 * 24 * 3600, "JWT_REFRESH_EXPIRES_IN", gt=0)

    # Sessions and lockout
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS", gt=0)
    max_sessions_per_user: int = env_field(5, "MAX_SESSIONS_PER_USER", ge=1)
    session_cleanup_interval_seconds: int = env_field(
        3600, "SESSION_CLEANUP_INTERVAL_SECONDS", ge=0,
        description="Expired-session sweep period; 0 disables the sweep.",
    )
    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS", ge=1)
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES", ge=1)
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", gt=0)

    # Tenancy
    activation_code: str = env_field("RAYA2026", "APP_ACTIVATION_CODE")
    default_tenant_id: str = env_field("default", "DEFAULT_TENANT_ID")

    # Rate limits (requests per window)
    rate_limit_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_WINDOW_SECONDS", gt=0)
    login_rate_limit: int = env_field(20, "LOGIN_RATE_LIMIT", ge=0)
    register_rate_limit: int = env_field(10, "REGISTER_RATE_LIMIT", ge=0)
    forgot_password_rate_limit: int = env_field(3, "FORGOT_PASSWORD_RATE_LIMIT", ge=0)
    otp_rate_limit: int = env_field(10, "OTP_RATE_LIMIT", ge=0)

    # OAuth
    oauth_google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "GITHUB_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASS")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    smtp_from: str | None = env_field(None, "SMTP_FROM")
    app_name: str = env_field("Raya", "APP_NAME")
    frontend_url: str = env_field("http://localhost:4200", "FRONTEND_URL")

    cors_allow_origins: str = env_field(
        "http://localhost:4200", "CORS_ALLOW_ORIGINS",
        description="Comma-separated list of allowed origins.",
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

    @field_validator("frontend_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _ensure_signing_secrets(self) -> "Settings":
        if self.is_production:
            missing = [
                env
                for env, value in (
                    ("JWT_SECRET", self.jwt_secret),
                    ("JWT_REFRESH_SECRET", self.jwt_refresh_secret),
                )
                if not value
            ]
            if missing:
                raise ValueError(f"{', '.join(missing)} must be set in production")
            if min(len(self.jwt_secret), len(self.jwt_refresh_secret)) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"JWT secrets must be at least {MIN_SECRET_LENGTH} characters in production"
                )
            if self.jwt_secret == self.jwt_refresh_secret:
                raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
            return self

        if not self.jwt_secret:
            logger.warning("jwt_secret_dev_fallback", env="JWT_SECRET")
            self.jwt_secret = DEV_ACCESS_SECRET
        if not self.jwt_refresh_secret:
            logger.warning("jwt_secret_dev_fallback", env="JWT_REFRESH_SECRET")
            self.jwt_refresh_secret = DEV_REFRESH_SECRET
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


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
