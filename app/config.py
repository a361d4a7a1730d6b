"""Application settings and logging configuration."""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Annotated, Any, Literal

import structlog
from pydantic import AfterValidator, BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_HEX_KEY_PATTERN = re.compile(r"[0-9a-fA-F]{64}")


def _scheme_check(setting: str, *schemes: str) -> AfterValidator:
    """Reject URLs whose scheme the configured client cannot speak."""

    def check(value: str) -> str:
        if not value.startswith(schemes):
            raise ValueError(f"{setting} must start with one of: {', '.join(schemes)}.")
        return value

    return AfterValidator(check)


class AppSettings(BaseModel):
    """Application identity and runtime settings."""

    environment: Literal["development", "staging", "production"]
    service: str = "notes-service"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    frontend_origin: str = "http://localhost:3000"


class DatabaseSettings(BaseModel):
    """Database connection settings."""

    url: Annotated[str, _scheme_check("database.url", "postgresql+asyncpg://")] = Field(
        description="Async SQLAlchemy URL using asyncpg driver."
    )
    request_pool_size: int = Field(default=10, ge=1)
    system_pool_size: int = Field(default=5, ge=1)


class RedisSettings(BaseModel):
    """Redis connection settings."""

    url: Annotated[str, _scheme_check("redis.url", "redis://", "rediss://")]


class JWTSettings(BaseModel):
    """JWT signing secrets and lifetime settings."""

    access_secret: SecretStr
    refresh_secret: SecretStr
    access_token_ttl_seconds: int = Field(default=10800, ge=1)
    refresh_token_ttl_seconds: int = Field(default=604800, ge=1)

    @field_validator("access_secret", "refresh_secret")
    @classmethod
    def validate_secret_length(cls, value: SecretStr) -> SecretStr:
        """Require signing secrets long enough for HS256."""
        if len(value.get_secret_value()) < 32:
            raise ValueError("jwt secrets must be at least 32 characters.")
        return value

    @model_validator(mode="after")
    def validate_distinct_secrets(self) -> JWTSettings:
        """Access and refresh tokens must be signed with different keys."""
        if self.access_secret.get_secret_value() == self.refresh_secret.get_secret_value():
            raise ValueError("jwt.access_secret and jwt.refresh_secret must differ.")
        return self


class EncryptionSettings(BaseModel):
    """Note encryption and integrity key material."""

    key: SecretStr
    hmac_key: SecretStr

    @field_validator("key", "hmac_key")
    @classmethod
    def validate_hex_key(cls, value: SecretStr) -> SecretStr:
        """Require 32-byte keys encoded as 64 hex characters."""
        if not _HEX_KEY_PATTERN.fullmatch(value.get_secret_value()):
            raise ValueError("encryption keys must be 64 hex characters (32 bytes).")
        return value

    @model_validator(mode="after")
    def validate_key_separation(self) -> EncryptionSettings:
        """Confidentiality and integrity keys must differ."""
        if self.key.get_secret_value().lower() == self.hmac_key.get_secret_value().lower():
            raise ValueError("encryption.key and encryption.hmac_key must differ.")
        return self


class RateLimitSettings(BaseModel):
    """Rate limiting thresholds."""

    default_requests_per_minute: int = Field(default=120, ge=1)
    auth_requests_per_minute: int = Field(default=5, ge=1)


class LockoutSettings(BaseModel):
    """Failed login lockout thresholds."""

    max_attempts: int = Field(default=5, ge=1)
    lockout_seconds: int = Field(default=900, ge=1)


class Settings(BaseSettings):
    """Root application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app: AppSettings
    database: DatabaseSettings
    redis: RedisSettings
    jwt: JWTSettings
    encryption: EncryptionSettings
    rate_limit: RateLimitSettings = RateLimitSettings()
    lockout: LockoutSettings = LockoutSettings()


class _ServiceFields:
    """Processor stamping every event with service identity and correlation id."""

    def __init__(self, environment: str, service: str) -> None:
        self._static = {"environment": environment, "service": service}

    def __call__(self, _: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("correlation_id", "unknown")
        for key, value in self._static.items():
            event_dict.setdefault(key, value)
        return event_dict


def configure_structlog(settings: Settings) -> None:
    """JSON logs on stdout, filtered at the configured level."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
            _ServiceFields(settings.app.environment, settings.app.service),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping()[settings.app.log_level]
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@lru_cache
def get_settings() -> Settings:
    """Load and cache application settings from environment variables."""
    return Settings()
