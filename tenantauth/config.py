from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings, built once at startup and handed to each component."""

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("tenantauth", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantauth-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of signed access tokens",
        gt=0,
    )
    refresh_token_ttl_days: int = env_field(
        7,
        "REFRESH_TOKEN_TTL_DAYS",
        description="Absolute lifetime of each refresh token in a rotation chain",
        gt=0,
    )
    refresh_token_bytes: int = env_field(64, "REFRESH_TOKEN_BYTES", ge=32)
    clock_skew_seconds: int = env_field(
        0,
        "CLOCK_SKEW_SECONDS",
        description="Leeway applied when checking access token expiry",
        ge=0,
    )

    redis_url: str | None = env_field(None, "REDIS_URL")
    cache_bus_channel: str = env_field("cache:invalidate", "CACHE_BUS_CHANNEL")
    bus_publish_timeout_seconds: float = env_field(
        2.0, "BUS_PUBLISH_TIMEOUT_SECONDS", gt=0
    )

    permission_cache_enabled: bool = env_field(
        True,
        "PERMISSION_CACHE_ENABLED",
        description="Disable to resolve every permission check against the store",
    )
    permission_cache_ttl_minutes: int = env_field(
        15, "PERMISSION_CACHE_TTL_MINUTES", gt=0
    )
    tenant_cache_ttl_minutes: int = env_field(30, "TENANT_CACHE_TTL_MINUTES", gt=0)

    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS", gt=0)
    store_retry_attempts: int = env_field(
        2,
        "STORE_RETRY_ATTEMPTS",
        description="Extra attempts after a store timeout during permission recomputation",
        ge=0,
    )

    refresh_cookie_name: str = env_field("refreshToken", "REFRESH_COOKIE_NAME")
    refresh_cookie_secure: bool = env_field(True, "REFRESH_COOKIE_SECURE")

    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    shared_fs_root: str | None = env_field(
        None,
        "SHARED_FS_ROOT",
        description="Directory the memory store persists its state under; unset keeps it in-process only",
    )
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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("redis_url", "shared_fs_root")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value
