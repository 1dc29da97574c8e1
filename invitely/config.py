from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, Field, field_validator, model_validator


@dataclass(frozen=True)
class RateLimitPolicy:
    """Failures allowed per client address within a sliding window."""

    window_seconds: int
    threshold: int


@dataclass(frozen=True)
class RateLimitSettings:
    login: RateLimitPolicy
    reset: RateLimitPolicy
    register: RateLimitPolicy


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core and its HTTP surface."""

    test_mode: bool = env_field(False, "TEST_MODE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT", gt=0)

    # Credential lifetimes, in seconds
    access_lifetime_seconds: int = env_field(15 * 60, "ACCESS_LIFETIME_SECONDS", gt=0)
    refresh_lifetime_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_LIFETIME_SECONDS", gt=0
    )
    password_reset_lifetime_seconds: int = env_field(
        60 * 60, "PASSWORD_RESET_LIFETIME_SECONDS", gt=0
    )
    verification_lifetime_seconds: int = env_field(
        24 * 60 * 60, "VERIFICATION_LIFETIME_SECONDS", gt=0
    )
    # TTL re-applied to the whole refresh denylist set on every add
    refresh_denylist_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_DENYLIST_TTL_SECONDS", gt=0
    )

    # argon2id cost parameters; hash_work_factor is the time cost
    hash_work_factor: int = env_field(3, "HASH_WORK_FACTOR", ge=1)
    hash_memory_cost: int = env_field(64 * 1024, "HASH_MEMORY_COST", ge=8)
    hash_parallelism: int = env_field(4, "HASH_PARALLELISM", ge=1)

    jwt_issuer: str = env_field("invitely", "JWT_ISSUER")
    jwt_audience: str = env_field("invitely-web", "JWT_AUDIENCE")
    jwt_algorithm: str = env_field("RS256", "JWT_ALGORITHM")
    signing_private_key: str | None = env_field(None, "SIGNING_PRIVATE_KEY")
    signing_public_key: str | None = env_field(None, "SIGNING_PUBLIC_KEY")

    login_rate_limit_window_seconds: int = env_field(
        15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS", gt=0
    )
    login_rate_limit_threshold: int = env_field(5, "LOGIN_RATE_LIMIT_THRESHOLD", gt=0)
    reset_rate_limit_window_seconds: int = env_field(
        60 * 60, "RESET_RATE_LIMIT_WINDOW_SECONDS", gt=0
    )
    reset_rate_limit_threshold: int = env_field(3, "RESET_RATE_LIMIT_THRESHOLD", gt=0)
    register_rate_limit_window_seconds: int = env_field(
        60 * 60, "REGISTER_RATE_LIMIT_WINDOW_SECONDS", gt=0
    )
    register_rate_limit_threshold: int = env_field(
        10, "REGISTER_RATE_LIMIT_THRESHOLD", gt=0
    )

    refresh_cookie_path: str = env_field("/v1/auth/refresh", "REFRESH_COOKIE_PATH")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from: str | None = env_field(None, "EMAIL_FROM")
    email_from_name: str = env_field("Invitely", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    mail_workers: int = env_field(4, "MAIL_WORKERS", ge=1)
    mail_queue_limit: int = env_field(100, "MAIL_QUEUE_LIMIT", ge=1)

    audit_queue_limit: int = env_field(1000, "AUDIT_QUEUE_LIMIT", ge=1)
    request_deadline_seconds: float = env_field(10.0, "REQUEST_DEADLINE_SECONDS", gt=0)
    cors_allowed_origins: str = env_field("", "CORS_ALLOWED_ORIGINS")

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

    @field_validator("signing_private_key", "signing_public_key")
    @classmethod
    def _normalize_pem(cls, value: str | None) -> str | None:
        if not value:
            return None
        # Single-line env values carry escaped newlines
        return value.replace("\\n", "\n").strip() + "\n"

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        normalized = value.upper()
        if normalized not in {"RS256", "RS384", "RS512", "ES256", "ES384"}:
            raise ValueError("jwt_algorithm must be an asymmetric RS* or ES* algorithm")
        return normalized

    @field_validator("refresh_cookie_path")
    @classmethod
    def _validate_cookie_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("refresh_cookie_path must be an absolute path")
        return value

    @model_validator(mode="after")
    def _validate_lifetimes(self) -> "Settings":
        if self.access_lifetime_seconds >= self.refresh_lifetime_seconds:
            raise ValueError("access lifetime must be shorter than refresh lifetime")
        # The denylist set expires as a whole; a shorter TTL would forget
        # rotated credentials that are still within their signed lifetime.
        if self.refresh_denylist_ttl_seconds < self.refresh_lifetime_seconds:
            raise ValueError(
                "refresh_denylist_ttl_seconds must be at least refresh_lifetime_seconds"
            )
        if bool(self.signing_private_key) != bool(self.signing_public_key):
            raise ValueError(
                "signing_private_key and signing_public_key must be configured together"
            )
        return self

    @property
    def rate_limit(self) -> RateLimitSettings:
        return RateLimitSettings(
            login=RateLimitPolicy(
                self.login_rate_limit_window_seconds, self.login_rate_limit_threshold
            ),
            reset=RateLimitPolicy(
                self.reset_rate_limit_window_seconds, self.reset_rate_limit_threshold
            ),
            register=RateLimitPolicy(
                self.register_rate_limit_window_seconds,
                self.register_rate_limit_threshold,
            ),
        )

    @property
    def signing_keys_configured(self) -> bool:
        return bool(self.signing_private_key and self.signing_public_key)


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
