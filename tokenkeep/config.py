from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tokenkeep.logging import get_logger
from tokenkeep.service.security import PasswordPolicy

logger = get_logger(__name__)

# Only symmetric HMAC-SHA256 signing is supported
SUPPORTED_ALGORITHMS = frozenset({"HS256"})
MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class TokenConfig(BaseModel):
    """Immutable configuration handed to every token-engine component."""

    model_config = ConfigDict(frozen=True)

    secret: str = Field(..., min_length=MIN_SECRET_LENGTH)
    algorithm: str = "HS256"
    issuer: str = "tokenkeep"
    access_ttl_seconds: int = Field(3600, gt=0)
    refresh_ttl_seconds: int = Field(7 * 24 * 3600, gt=0)
    revocation_cache_ttl_seconds: int = Field(300, gt=0)
    revocation_cache_write_through: bool = False
    password_reset_window_minutes: int = Field(60, gt=0)
    email_verification_window_minutes: int = Field(24 * 60, gt=0)
    password_min_length: int = Field(8, gt=0)
    password_max_length: int = Field(128, gt=0)

    @field_validator("algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        if value not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"unsupported signing algorithm: {value}")
        return value

    @model_validator(mode="after")
    def _validate_password_bounds(self) -> "TokenConfig":
        if self.password_min_length > self.password_max_length:
            raise ValueError("password_min_length must not exceed password_max_length")
        return self

    def password_policy(self) -> PasswordPolicy:
        return PasswordPolicy(
            min_length=self.password_min_length,
            max_length=self.password_max_length,
        )


class Settings(BaseModel):
    """Runtime settings read from the environment and an optional .env file."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tokenkeep", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (ephemeral secret, sync Redis client)",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("tokenkeep", "JWT_ISSUER")
    access_token_ttl_seconds: int = env_field(
        3600, "ACCESS_TOKEN_TTL_SECONDS", description="Access token lifetime"
    )
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS", description="Refresh token lifetime"
    )
    revocation_cache_ttl_seconds: int = env_field(
        300,
        "REVOCATION_CACHE_TTL_SECONDS",
        description="How long a cached revocation lookup (positive or negative) is trusted",
    )
    revocation_cache_write_through: bool = env_field(
        False,
        "REVOCATION_CACHE_WRITE_THROUGH",
        description="Write revocations into the cache immediately instead of waiting for TTL expiry",
    )
    password_reset_window_minutes: int = env_field(60, "PASSWORD_RESET_WINDOW_MINUTES")
    email_verification_window_minutes: int = env_field(
        24 * 60, "EMAIL_VERIFICATION_WINDOW_MINUTES"
    )
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")

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

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET must be set outside of TEST_MODE")
        # Tokens signed with an ephemeral secret do not survive a restart
        self.jwt_secret = secrets.token_urlsafe(48)
        logger.warning("jwt_secret_generated", reason="missing_in_test_mode")
        return self

    def token_config(self) -> TokenConfig:
        return TokenConfig(
            secret=self.jwt_secret,
            issuer=self.jwt_issuer,
            access_ttl_seconds=self.access_token_ttl_seconds,
            refresh_ttl_seconds=self.refresh_token_ttl_seconds,
            revocation_cache_ttl_seconds=self.revocation_cache_ttl_seconds,
            revocation_cache_write_through=self.revocation_cache_write_through,
            password_reset_window_minutes=self.password_reset_window_minutes,
            email_verification_window_minutes=self.email_verification_window_minutes,
            password_min_length=self.password_min_length,
            password_max_length=self.password_max_length,
        )
