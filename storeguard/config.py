from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from storeguard.logging import get_logger

logger = get_logger(__name__)


class RateLimitBackend(str, Enum):
    """Where rate-limit buckets live."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session security service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/storeguard", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Keep identities, credentials and audit events in process memory",
    )
    rate_limit_backend: RateLimitBackend = env_field(
        RateLimitBackend.MEMORY,
        "RATE_LIMIT_BACKEND",
        description="memory (single process) or redis (shared between instances)",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # Access grants
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("storeguard", "JWT_ISSUER")
    jwt_audience: str = env_field("storeguard-api", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)

    # Refresh credentials
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 7, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )
    max_active_refresh_tokens: int = env_field(
        5,
        "MAX_ACTIVE_REFRESH_TOKENS",
        ge=1,
        description="Active refresh credentials allowed per identity before eviction",
    )
    refresh_token_retention_days: int = env_field(
        30, "REFRESH_TOKEN_RETENTION_DAYS", ge=1
    )

    # Audit trail
    audit_retention_days: int = env_field(90, "AUDIT_RETENTION_DAYS", ge=1)
    audit_queue_size: int = env_field(
        1000,
        "AUDIT_QUEUE_SIZE",
        ge=1,
        description="Pending audit events kept before the oldest is dropped",
    )
    audit_writer_threads: int = env_field(1, "AUDIT_WRITER_THREADS", ge=1, le=8)
    failed_login_threshold: int = env_field(5, "FAILED_LOGIN_THRESHOLD", ge=1)
    failed_login_window_minutes: int = env_field(15, "FAILED_LOGIN_WINDOW_MINUTES", ge=1)

    # Rate limiting
    rate_limit_auth: int = env_field(10, "RATE_LIMIT_AUTH", ge=1)
    rate_limit_admin: int = env_field(50, "RATE_LIMIT_ADMIN", ge=1)
    rate_limit_general: int = env_field(100, "RATE_LIMIT_GENERAL", ge=1)
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS", ge=1)
    rate_limit_max_buckets: int = env_field(
        10_000,
        "RATE_LIMIT_MAX_BUCKETS",
        ge=1,
        description="Tracked clients per endpoint class before that class is cleared",
    )
    trust_forwarded_headers: bool = env_field(
        True,
        "TRUST_FORWARDED_HEADERS",
        description="Derive the client IP from X-Forwarded-For / X-Real-IP",
    )

    # Scheduled maintenance
    maintenance_enabled: bool = env_field(True, "MAINTENANCE_ENABLED")
    bucket_cleanup_interval_seconds: int = env_field(
        3600, "BUCKET_CLEANUP_INTERVAL_SECONDS", ge=1
    )
    credential_cleanup_interval_seconds: int = env_field(
        86400, "CREDENTIAL_CLEANUP_INTERVAL_SECONDS", ge=1
    )
    audit_purge_interval_seconds: int = env_field(
        86400, "AUDIT_PURGE_INTERVAL_SECONDS", ge=1
    )
    security_report_interval_seconds: int = env_field(
        86400, "SECURITY_REPORT_INTERVAL_SECONDS", ge=1
    )
    security_report_window_hours: int = env_field(24, "SECURITY_REPORT_WINDOW_HOURS", ge=1)

    # Logging
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(
        True, "LOG_JSON", description="JSON lines instead of key/value text"
    )
    log_dev_mode: bool = env_field(
        False, "LOG_DEV_MODE", description="Coloured console output"
    )

    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")

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
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {value}")
        return level

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < 32 and not self.test_mode:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return self
        if not self.test_mode and not self.use_memory_store:
            raise ValueError("JWT_SECRET must be set when a persistent store is used")
        # Ephemeral secret: issued grants stop verifying after a restart
        logger.warning("jwt_secret_generated", reason="JWT_SECRET not set")
        self.jwt_secret = secrets.token_urlsafe(64)
        return self

    @model_validator(mode="after")
    def _check_backends(self) -> "Settings":
        if self.rate_limit_backend == RateLimitBackend.REDIS and not self.redis_url:
            raise ValueError("RATE_LIMIT_BACKEND=redis requires REDIS_URL")
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
