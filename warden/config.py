from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from warden.logging import get_logger

logger = get_logger(__name__)

# Asymmetric only: verifiers must never be able to sign.
SUPPORTED_SIGNING_ALGORITHMS = frozenset({"RS256", "RS384", "RS512", "ES256", "EdDSA"})


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication engine."""

    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: ephemeral signing key, sync redis client.",
    )
    # Token signing
    jwt_issuer: str = env_field("warden", "JWT_ISSUER")
    jwt_audience: str = env_field("warden-clients", "JWT_AUDIENCE")
    jwt_algorithm: str = env_field("RS256", "JWT_ALGORITHM")
    jwt_private_key_path: str | None = env_field(None, "JWT_PRIVATE_KEY_PATH")
    jwt_public_key_path: str | None = env_field(None, "JWT_PUBLIC_KEY_PATH")
    jwt_key_id: str | None = env_field(None, "JWT_KEY_ID")
    allow_ephemeral_signing_key: bool = env_field(False, "ALLOW_EPHEMERAL_SIGNING_KEY")
    access_token_ttl_minutes: int = env_field(
        120,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token lifetime in minutes",
    )
    refresh_token_ttl_minutes: int = env_field(
        30 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token lifetime in minutes",
    )
    clock_skew_leeway_seconds: int = env_field(30, "CLOCK_SKEW_LEEWAY_SECONDS")
    # Password reset / OAuth state lifetimes
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")
    oauth_state_ttl_seconds: int = env_field(300, "OAUTH_STATE_TTL_SECONDS")
    # Rate limits, one namespace per caller class
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(60, "LOGIN_RATE_WINDOW_SECONDS")
    oauth_rate_limit: int = env_field(10, "OAUTH_RATE_LIMIT")
    oauth_rate_window_seconds: int = env_field(60, "OAUTH_RATE_WINDOW_SECONDS")
    reset_rate_limit: int = env_field(3, "RESET_RATE_LIMIT")
    reset_rate_window_seconds: int = env_field(900, "RESET_RATE_WINDOW_SECONDS")
    # Password hashing (argon2id)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")
    store_read_retries: int = env_field(1, "STORE_READ_RETRIES")
    audit_pending_limit: int = env_field(1000, "AUDIT_PENDING_LIMIT")
    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_microsoft_client_id: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_ID")
    oauth_microsoft_client_secret: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_SECRET")
    oauth_apple_client_id: str | None = env_field(None, "OAUTH_APPLE_CLIENT_ID")
    oauth_apple_team_id: str | None = env_field(None, "OAUTH_APPLE_TEAM_ID")
    oauth_apple_key_id: str | None = env_field(None, "OAUTH_APPLE_KEY_ID")
    oauth_apple_private_key_path: str | None = env_field(None, "OAUTH_APPLE_PRIVATE_KEY_PATH")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    oauth_http_timeout_seconds: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT_SECONDS")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Warden", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

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

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        if value not in SUPPORTED_SIGNING_ALGORITHMS:
            raise ValueError(
                f"jwt_algorithm must be one of {sorted(SUPPORTED_SIGNING_ALGORITHMS)}"
            )
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "reset_token_ttl_minutes",
        "oauth_state_ttl_seconds",
        "login_rate_limit",
        "login_rate_window_seconds",
        "oauth_rate_limit",
        "oauth_rate_window_seconds",
        "reset_rate_limit",
        "reset_rate_window_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("clock_skew_leeway_seconds", "store_read_retries")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @model_validator(mode="after")
    def _check_key_paths(self) -> "Settings":
        for attr in ("jwt_private_key_path", "jwt_public_key_path"):
            value = getattr(self, attr)
            if value and not Path(value).is_file():
                logger.warning("signing_key_path_missing", setting=attr, path=value)
        if self.password_min_length > self.password_max_length:
            raise ValueError("password_min_length must not exceed password_max_length")
        return self

    @property
    def ephemeral_signing_allowed(self) -> bool:
        return self.test_mode or self.allow_ephemeral_signing_key


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
