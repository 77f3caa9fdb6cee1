from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from warden.logging import get_logger
from warden.service.errors import ConfigurationError

logger = get_logger(__name__)

# Shortest signing secret accepted for HS256
MIN_SECRET_LENGTH = 32


class AuthMode(str, Enum):
    """Global authentication policy applied by the auth gate.

    - DISABLED: no lookup, every caller is anonymous
    - OPTIONAL: verify when a token is presented, otherwise anonymous
    - REQUIRED: a missing or invalid token rejects the request
    """

    DISABLED = "disabled"
    OPTIONAL = "optional"
    REQUIRED = "required"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and session core."""

    environment: str = env_field("development", "APP_ENV")
    auth_mode: AuthMode = env_field(
        AuthMode.DISABLED,
        "AUTH_MODE",
        description="disabled, optional or required",
    )
    database_url: str = env_field("postgresql://localhost:5432/warden", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables runtime reset hooks used by the test suite",
    )
    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("warden", "JWT_ISSUER")
    jwt_audience: str = env_field("warden-clients", "JWT_AUDIENCE")
    token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "TOKEN_TTL_MINUTES",
        description="Lifetime of issued session tokens and their session rows",
    )
    # Password hashing (argon2id cost factors)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    # Brute-force lockout
    lockout_max_attempts: int = env_field(5, "LOCKOUT_MAX_ATTEMPTS")
    lockout_window_minutes: int = env_field(15, "LOCKOUT_WINDOW_MINUTES")
    lockout_duration_minutes: int = env_field(30, "LOCKOUT_DURATION_MINUTES")
    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    oauth_redirect_uri: str = env_field(
        "http://localhost:8000/v1/auth/google/callback", "GOOGLE_REDIRECT_URI"
    )
    oauth_state_ttl_minutes: int = env_field(10, "OAUTH_STATE_TTL_MINUTES")
    oauth_max_pending: int = env_field(10000, "OAUTH_MAX_PENDING")
    oauth_http_timeout_seconds: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT_SECONDS")
    oauth_success_redirect: str = env_field("/", "OAUTH_SUCCESS_REDIRECT")
    oauth_failure_redirect: str = env_field("/login", "OAUTH_FAILURE_REDIRECT")
    token_encryption_key: str | None = env_field(
        None,
        "TOKEN_ENCRYPTION_KEY",
        description="Key material for provider tokens at rest; falls back to JWT_SECRET",
    )
    # Transport
    cookie_name: str = env_field("auth_token", "AUTH_COOKIE_NAME")
    allow_socket_query_token: bool = env_field(
        True,
        "ALLOW_SOCKET_QUERY_TOKEN",
        description="Accept ?token= on socket connections (debug use)",
    )
    # Periodic sweeps
    session_sweep_interval_seconds: int = env_field(3600, "SESSION_SWEEP_INTERVAL_SECONDS")
    attempt_purge_interval_seconds: int = env_field(3600, "ATTEMPT_PURGE_INTERVAL_SECONDS")
    oauth_sweep_interval_seconds: int = env_field(300, "OAUTH_SWEEP_INTERVAL_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field_info in cls.model_fields.items():
            extra = field_info.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("auth_mode", mode="before")
    @classmethod
    def _validate_auth_mode(cls, value: Any) -> AuthMode:
        if isinstance(value, str):
            value = value.strip().lower()
        return AuthMode(value)

    @field_validator("jwt_secret")
    @classmethod
    def _blank_secret_is_missing(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @field_validator(
        "lockout_max_attempts",
        "lockout_window_minutes",
        "lockout_duration_minutes",
        "token_ttl_minutes",
        "oauth_state_ttl_minutes",
        "oauth_max_pending",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @property
    def secret_usable(self) -> bool:
        return bool(self.jwt_secret) and len(self.jwt_secret) >= MIN_SECRET_LENGTH

    @property
    def google_configured(self) -> bool:
        return bool(self.oauth_google_client_id and self.oauth_google_client_secret)

    def cookie_options(self) -> dict[str, Any]:
        """Keyword arguments for ``Response.set_cookie`` on the session cookie."""
        return {
            "key": self.cookie_name,
            "httponly": True,
            "samesite": "strict",
            "secure": self.is_production,
            "max_age": self.token_ttl_minutes * 60,
            "path": "/",
        }


@dataclass
class StartupCheck:
    """Outcome of validating settings before the process starts serving."""

    fatal: ConfigurationError | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.fatal is None


def check_startup(settings: Settings) -> StartupCheck:
    """Validate the signing secret against the configured auth mode.

    ``required`` mode refuses to serve without a usable secret. ``optional``
    mode logs a warning and every token operation then fails closed.
    """
    result = StartupCheck()
    if settings.auth_mode is AuthMode.DISABLED:
        return result
    if not settings.secret_usable:
        problem = (
            "JWT_SECRET is not set"
            if not settings.jwt_secret
            else f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters"
        )
        if settings.auth_mode is AuthMode.REQUIRED:
            result.fatal = ConfigurationError(f"{problem}; refusing to start in required auth mode")
        else:
            result.warnings.append(f"{problem}; authentication will always fail")
    if settings.is_production and settings.allow_socket_query_token:
        result.warnings.append("socket query-parameter tokens are enabled in production")
    for message in result.warnings:
        logger.warning("startup_config_warning", message=message, auth_mode=settings.auth_mode.value)
    if result.fatal is not None:
        logger.error("startup_config_fatal", message=str(result.fatal), auth_mode=settings.auth_mode.value)
    return result


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
