from __future__ import annotations

import os
import re
import secrets
from datetime import timedelta
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessionvault.logging import get_logger

logger = get_logger(__name__)


class AppEnv(str, Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


# Placeholder secrets shipped in sample .env files; refused in production
_DEV_SECRET_MARKERS = (
    "dev-jwt-secret",
    "dev-jwt-refresh-secret",
    "change-this",
    "changeme",
)

_MIN_PRODUCTION_SECRET_LENGTH = 32

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$")
_DURATION_UNITS = {
    "": "seconds",
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
}


def parse_duration(value: Any) -> timedelta:
    """Convert a configured duration into a positive ``timedelta``.

    Accepts a ``timedelta``, a number of seconds, or a compact string such as
    ``"45s"``, ``"15m"``, ``"12h"`` or ``"7d"``. Parsing happens once when the
    settings are built; invalid values fail startup instead of individual calls.
    """

    if isinstance(value, timedelta):
        duration = value
    elif isinstance(value, bool):
        raise ValueError("duration must not be a boolean")
    elif isinstance(value, (int, float)):
        duration = timedelta(seconds=value)
    elif isinstance(value, str):
        match = _DURATION_RE.match(value)
        if not match:
            raise ValueError(f"invalid duration {value!r}; expected e.g. '15m' or '7d'")
        amount, unit = match.groups()
        duration = timedelta(**{_DURATION_UNITS[unit]: int(amount)})
    else:
        raise ValueError(f"unsupported duration type {type(value).__name__}")
    if duration <= timedelta(0):
        raise ValueError("duration must be positive")
    return duration


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token issuance, rotation and the session store."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(
        5.0, "REDIS_SOCKET_TIMEOUT", description="Socket connect/read timeout in seconds"
    )
    store_operation_timeout: float = env_field(
        5.0,
        "STORE_OPERATION_TIMEOUT",
        description="Upper bound in seconds for a single key-value store command",
    )
    store_retry_attempts: int = env_field(
        3,
        "STORE_RETRY_ATTEMPTS",
        description="Attempts per idempotent store command before giving up",
    )
    store_retry_backoff_ms: int = env_field(
        50,
        "STORE_RETRY_BACKOFF_MS",
        description="Initial backoff between store retries; quadruples each attempt",
    )
    scan_batch_size: int = env_field(100, "SCAN_BATCH_SIZE")
    jwt_access_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("sessionvault", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionvault-clients", "JWT_AUDIENCE")
    access_token_ttl: timedelta = env_field(
        timedelta(minutes=15), "JWT_EXPIRES_IN", description="Access token lifetime"
    )
    refresh_token_ttl: timedelta = env_field(
        timedelta(days=7), "JWT_REFRESH_EXPIRES_IN", description="Refresh token lifetime"
    )
    session_timeout: timedelta = env_field(
        timedelta(days=7),
        "SESSION_TIMEOUT",
        description="Sliding session expiry; conventionally equal to the refresh lifetime",
    )
    token_leeway_seconds: int = env_field(
        0, "TOKEN_LEEWAY_SECONDS", description="Clock skew tolerated when checking exp"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_memory_fallback_dev: bool = env_field(False, "ALLOW_MEMORY_FALLBACK_DEV")
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

    @field_validator("access_token_ttl", "refresh_token_ttl", "session_timeout", mode="before")
    @classmethod
    def _parse_duration(cls, value: Any) -> timedelta:
        return parse_duration(value)

    @field_validator("store_retry_attempts", "scan_batch_size")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("store_operation_timeout", "redis_socket_timeout")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @model_validator(mode="after")
    def _validate_secrets(self) -> "Settings":
        production = self.app_env == AppEnv.PRODUCTION
        for name in ("jwt_access_secret", "jwt_refresh_secret"):
            value = getattr(self, name)
            if not value:
                if production:
                    raise ValueError(f"{name} must be set in production")
                # Tokens signed with an ephemeral secret die with the process
                logger.warning("jwt_secret_generated_ephemeral", setting=name)
                setattr(self, name, secrets.token_urlsafe(64))
                continue
            if production:
                if len(value) < _MIN_PRODUCTION_SECRET_LENGTH:
                    raise ValueError(
                        f"{name} must be at least {_MIN_PRODUCTION_SECRET_LENGTH} characters in production"
                    )
                lowered = value.lower()
                if any(marker in lowered for marker in _DEV_SECRET_MARKERS):
                    raise ValueError(f"{name} uses a development placeholder in production")
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh token secrets must differ")
        return self

    @property
    def access_token_ttl_seconds(self) -> int:
        return int(self.access_token_ttl.total_seconds())

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return int(self.refresh_token_ttl.total_seconds())

    @property
    def session_timeout_seconds(self) -> int:
        return int(self.session_timeout.total_seconds())


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
