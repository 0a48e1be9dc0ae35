from __future__ import annotations

import os
import re
from datetime import timedelta
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from wordnest.logging import get_logger

logger = get_logger(__name__)

# Development-only fallbacks; refused when ENVIRONMENT=production
DEV_ACCESS_SECRET = "wordnest-dev-access-secret"
DEV_REFRESH_SECRET = "wordnest-dev-refresh-secret"
DEV_OAUTH_SESSION_SECRET = "wordnest-dev-oauth-session-secret"

DEFAULT_ACCESS_LIFETIME = timedelta(minutes=15)
DEFAULT_REFRESH_LIFETIME = timedelta(days=30)

_DURATION_RE = re.compile(r"(\d+)([dhms])")
_DURATION_UNITS = {"d": "days", "h": "hours", "m": "minutes", "s": "seconds"}


class Environment(str, Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def parse_duration(value: str | None, default: timedelta) -> timedelta:
    """Parse lifetimes such as ``15m`` or ``30d``.

    Values that do not contain a ``<number><d|h|m|s>`` pair fall back to
    ``default``.
    """
    if not value:
        return default
    match = _DURATION_RE.search(value.strip())
    if not match:
        return default
    amount, unit = match.groups()
    return timedelta(**{_DURATION_UNITS[unit]: int(amount)})


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the wordnest auth core."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    database_url: str = env_field(
        "postgresql://localhost:5432/wordnest", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str | None = env_field(
        None,
        "SHARED_FS_ROOT",
        description="Directory for the memory store snapshot; unset disables persistence",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets.",
    )

    jwt_secret: str = env_field(DEV_ACCESS_SECRET, "JWT_SECRET")
    jwt_refresh_secret: str = env_field(DEV_REFRESH_SECRET, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("wordnest", "JWT_ISSUER")
    jwt_audience: str = env_field("wordnest-clients", "JWT_AUDIENCE")
    jwt_expire: str = env_field(
        "15m", "JWT_EXPIRE", description="Access token lifetime, e.g. 15m"
    )
    jwt_refresh_expire: str = env_field(
        "30d", "JWT_REFRESH_EXPIRE", description="Refresh token lifetime, e.g. 30d"
    )
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS", ge=0)

    auth_throttle_window_minutes: int = env_field(
        15, "AUTH_THROTTLE_WINDOW_MINUTES", ge=1
    )
    auth_throttle_max_attempts: int = env_field(
        15, "AUTH_THROTTLE_MAX_ATTEMPTS", ge=1
    )

    oauth_session_secret: str = env_field(
        DEV_OAUTH_SESSION_SECRET, "OAUTH_SESSION_SECRET"
    )
    oauth_session_cookie: str = env_field(
        "wordnest.session-token", "OAUTH_SESSION_COOKIE"
    )
    oauth_session_max_age_days: int = env_field(30, "OAUTH_SESSION_MAX_AGE_DAYS", ge=1)
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(
        None, "OAUTH_GOOGLE_CLIENT_SECRET"
    )
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    login_path: str = env_field("/login", "LOGIN_PATH")
    client_timeout_seconds: float = env_field(5.0, "CLIENT_TIMEOUT_SECONDS", gt=0)

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

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", "jwt_refresh_secret", "oauth_session_secret")
    @classmethod
    def _require_secret(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("signing secrets must be non-empty")
        return value

    @model_validator(mode="after")
    def _check_secrets(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            if self.is_production:
                raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
            logger.warning("jwt_secrets_shared", environment=self.environment.value)
        if self.is_production:
            defaults = {DEV_ACCESS_SECRET, DEV_REFRESH_SECRET, DEV_OAUTH_SESSION_SECRET}
            for name in ("jwt_secret", "jwt_refresh_secret", "oauth_session_secret"):
                if getattr(self, name) in defaults:
                    raise ValueError(f"{name.upper()} must be set in production")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def access_token_lifetime(self) -> timedelta:
        return parse_duration(self.jwt_expire, DEFAULT_ACCESS_LIFETIME)

    @property
    def refresh_token_lifetime(self) -> timedelta:
        return parse_duration(self.jwt_refresh_expire, DEFAULT_REFRESH_LIFETIME)

    @property
    def throttle_window(self) -> timedelta:
        return timedelta(minutes=self.auth_throttle_window_minutes)


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
