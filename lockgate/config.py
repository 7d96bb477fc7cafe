from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from lockgate.logging import get_logger

logger = get_logger(__name__)

DEFAULT_AUTHORIZE_URL = (
    "https://sso.chaster.app/auth/realms/app/protocol/openid-connect/auth"
)
DEFAULT_TOKEN_URL = (
    "https://sso.chaster.app/auth/realms/app/protocol/openid-connect/token"
)

# Lower bound for the background sweep period
MIN_SWEEP_INTERVAL_SECONDS = 60


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the login gateway."""

    database_url: str = env_field(
        "postgresql://localhost:5432/lockgate", "DATABASE_URL"
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE", ge=0)
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE", ge=1)
    db_pool_timeout_seconds: float = env_field(
        30.0,
        "DB_POOL_TIMEOUT_SECONDS",
        gt=0,
        description="Seconds to wait for a pooled connection before failing",
    )
    db_auto_migrate: bool = env_field(
        False,
        "DB_AUTO_MIGRATE",
        description="Create the sessions/users tables on startup when missing",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(8080, "PORT", ge=1, le=65535)
    log_level: str = env_field("INFO", "LOG_LEVEL")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (generated session secret)",
    )
    # Session cookie and record lifetime
    session_secret: str | None = env_field(None, "SESSION_SECRET")
    session_cookie_name: str = env_field("lockgate.sid", "SESSION_COOKIE_NAME")
    session_cookie_secure: bool = env_field(
        False,
        "SESSION_COOKIE_SECURE",
        description="Mark the session cookie Secure (enable behind TLS)",
    )
    session_max_age_seconds: int = env_field(
        24 * 60 * 60,
        "SESSION_MAX_AGE_SECONDS",
        gt=0,
        description="Rolling cookie lifetime; also the stored record lifetime",
    )
    session_default_ttl_seconds: int = env_field(
        60 * 60 * 60,
        "SESSION_DEFAULT_TTL_SECONDS",
        gt=0,
        description="Record lifetime when the cookie carries no max-age",
    )
    session_sweep_interval_seconds: int = env_field(
        60 * 60,
        "SESSION_SWEEP_INTERVAL_SECONDS",
        description="Period of the background expired-session sweep",
    )
    # OIDC provider
    oidc_client_id: str | None = env_field(None, "OIDC_CLIENT_ID")
    oidc_client_secret: str | None = env_field(None, "OIDC_CLIENT_SECRET")
    oidc_redirect_uri: str | None = env_field(None, "OIDC_REDIRECT_URI")
    oidc_authorize_url: str = env_field(DEFAULT_AUTHORIZE_URL, "OIDC_AUTHORIZE_URL")
    oidc_token_url: str = env_field(DEFAULT_TOKEN_URL, "OIDC_TOKEN_URL")
    oidc_scope: str = env_field("locks", "OIDC_SCOPE")
    oidc_jwks_url: str | None = env_field(
        None,
        "OIDC_JWKS_URL",
        description="When set, access token signatures are verified against this key set",
    )
    oidc_http_timeout_seconds: float = env_field(
        10.0, "OIDC_HTTP_TIMEOUT_SECONDS", gt=0
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

    @field_validator("session_sweep_interval_seconds")
    @classmethod
    def _validate_sweep_interval(cls, value: int) -> int:
        if value < MIN_SWEEP_INTERVAL_SECONDS:
            raise ValueError(
                f"SESSION_SWEEP_INTERVAL_SECONDS must be at least {MIN_SWEEP_INTERVAL_SECONDS}"
            )
        return value

    @model_validator(mode="after")
    def _ensure_session_secret(self) -> "Settings":
        if self.session_secret:
            return self
        if not self.test_mode:
            raise ValueError("SESSION_SECRET must be set outside of TEST_MODE")
        # Cookies signed with a throwaway secret do not survive a restart
        logger.warning("session_secret_generated", test_mode=True)
        self.session_secret = secrets.token_urlsafe(32)
        return self

    @property
    def oidc_configured(self) -> bool:
        return bool(
            self.oidc_client_id and self.oidc_client_secret and self.oidc_redirect_uri
        )


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
