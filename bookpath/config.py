from __future__ import annotations

import base64
import hashlib
import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from bookpath.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 12
MIN_JWT_SECRET_LENGTH = 32


class LockoutPolicy(BaseModel):
    """Failed-login accounting and account lock window."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    attempt_limit: int = Field(5, gt=0)
    attempt_window_seconds: int = Field(86400, gt=0)
    lock_minutes: int = Field(2, gt=0)


class TokenPolicy(BaseModel):
    """Signing keys, claim constants and lifetimes for issued JWTs."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    secret: str = Field(..., min_length=MIN_JWT_SECRET_LENGTH)
    refresh_secret: str = Field(..., min_length=MIN_JWT_SECRET_LENGTH)
    issuer: str = Field("bookpath", min_length=1)
    audience: str = Field("bookpath-clients", min_length=1)
    access_ttl_minutes: int = Field(15, gt=0)
    refresh_ttl_minutes: int = Field(7 * 24 * 60, gt=0)
    clock_skew_seconds: int = Field(30, ge=0, le=300)

    @model_validator(mode="after")
    def _refresh_outlives_access(self) -> "TokenPolicy":
        if self.refresh_ttl_minutes < self.access_ttl_minutes:
            raise ValueError("refresh token TTL must not be shorter than access token TTL")
        return self


class PasswordPolicyConfig(BaseModel):
    """Complexity floor, reuse window and argon2id cost parameters."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    min_length: int = Field(MIN_PASSWORD_LENGTH, ge=MIN_PASSWORD_LENGTH, le=128)
    history_size: int = Field(5, ge=1, le=24)
    time_cost: int = Field(3, ge=1)
    memory_cost: int = Field(65536, ge=8)
    parallelism: int = Field(4, ge=1)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings read from the environment and an optional .env file."""

    database_url: str = env_field(
        "postgresql://localhost:5432/bookpath", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-memory fallbacks and cheap hashing parameters for CI.",
    )
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS", gt=0)
    store_read_retries: int = env_field(2, "STORE_READ_RETRIES", ge=0, le=10)
    store_retry_backoff_ms: int = env_field(50, "STORE_RETRY_BACKOFF_MS", ge=0)

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("bookpath", "JWT_ISSUER")
    jwt_audience: str = env_field("bookpath-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    token_clock_skew_seconds: int = env_field(30, "TOKEN_CLOCK_SKEW_SECONDS")

    login_attempt_limit: int = env_field(5, "LOGIN_ATTEMPT_LIMIT")
    login_attempt_window_seconds: int = env_field(86400, "LOGIN_ATTEMPT_WINDOW_SECONDS")
    account_lock_minutes: int = env_field(2, "ACCOUNT_LOCK_MINUTES")

    password_min_length: int = env_field(MIN_PASSWORD_LENGTH, "PASSWORD_MIN_LENGTH")
    password_history_size: int = env_field(5, "PASSWORD_HISTORY_SIZE")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", gt=0)
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS", gt=0)
    email_request_cooldown_seconds: int = env_field(
        900, "EMAIL_REQUEST_COOLDOWN_SECONDS", ge=0
    )

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from: str | None = env_field(None, "EMAIL_FROM")
    app_base_url: str = env_field("http://localhost:5173", "APP_BASE_URL")

    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Tokens signed with a generated secret do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; issued tokens will be invalid after restart",
        )
        return secrets.token_urlsafe(64)

    def lockout_policy(self) -> LockoutPolicy:
        return LockoutPolicy(
            attempt_limit=self.login_attempt_limit,
            attempt_window_seconds=self.login_attempt_window_seconds,
            lock_minutes=self.account_lock_minutes,
        )

    def token_policy(self) -> TokenPolicy:
        return TokenPolicy(
            secret=self.jwt_secret,
            refresh_secret=self.jwt_refresh_secret or self.jwt_secret,
            issuer=self.jwt_issuer,
            audience=self.jwt_audience,
            access_ttl_minutes=self.access_token_ttl_minutes,
            refresh_ttl_minutes=self.refresh_token_ttl_minutes,
            clock_skew_seconds=self.token_clock_skew_seconds,
        )

    def password_policy(self) -> PasswordPolicyConfig:
        return PasswordPolicyConfig(
            min_length=self.password_min_length,
            history_size=self.password_history_size,
            time_cost=self.argon2_time_cost,
            memory_cost=self.argon2_memory_cost,
            parallelism=self.argon2_parallelism,
        )

    def fernet_key(self) -> bytes:
        """Key used to encrypt two-factor secrets at rest."""
        if self.mfa_encryption_key:
            return self.mfa_encryption_key.encode()
        digest = hashlib.sha256(f"bookpath-mfa:{self.jwt_secret}".encode()).digest()
        return base64.urlsafe_b64encode(digest)


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
