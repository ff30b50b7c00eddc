from __future__ import annotations

import json
import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from wedding_admin.logging import get_logger

logger = get_logger(__name__)


class IdentityBackend(str, Enum):
    """Where credentials are verified."""

    LOCAL = "local"
    HTTP = "http"


class RateLimitStrategy(str, Enum):
    """Rate limiting algorithms selectable per route class."""

    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW = "sliding_window"
    TOKEN_BUCKET = "token_bucket"


class RateLimitRule(BaseModel):
    """One row of the per-route-class quota table."""

    strategy: RateLimitStrategy = RateLimitStrategy.FIXED_WINDOW
    max_requests: int = Field(..., ge=1)
    window_seconds: int = Field(..., ge=1)

    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def refill_per_second(self) -> float:
        return self.max_requests / self.window_seconds


DEFAULT_RATE_LIMITS: dict[str, RateLimitRule] = {
    # 5 attempts per 15 minutes, matching the lockout policy
    "login": RateLimitRule(
        strategy=RateLimitStrategy.SLIDING_WINDOW, max_requests=5, window_seconds=900
    ),
    "general_api": RateLimitRule(
        strategy=RateLimitStrategy.FIXED_WINDOW, max_requests=100, window_seconds=60
    ),
    "admin_api": RateLimitRule(
        strategy=RateLimitStrategy.FIXED_WINDOW, max_requests=200, window_seconds=60
    ),
}

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the admin access-control service.

    Every field maps to one environment variable (see ``env_field``). Values
    from the process environment win over values from a local ``.env`` file.
    """

    # Secrets
    session_secret: str | None = env_field(None, "SESSION_SECRET")
    csrf_secret: str | None = env_field(None, "CSRF_SECRET")
    # Storage
    redis_url: str | None = env_field(None, "REDIS_URL")
    redis_socket_timeout: float = env_field(2.0, "REDIS_SOCKET_TIMEOUT", gt=0)
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")
    state_path: str | None = env_field(
        None, "STATE_PATH", description="JSON file persisting the admin user directory"
    )
    # Sessions
    session_ttl_minutes: int = env_field(60 * 24, "SESSION_TTL_MINUTES", ge=1)
    remember_me_ttl_minutes: int = env_field(60 * 24 * 7, "REMEMBER_ME_TTL_MINUTES", ge=1)
    inactivity_timeout_minutes: int = env_field(
        60 * 24, "INACTIVITY_TIMEOUT_MINUTES", ge=1
    )
    session_cookie_name: str = env_field("wedding-admin-session", "SESSION_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    # CSRF
    csrf_token_ttl_minutes: int = env_field(60 * 24, "CSRF_TOKEN_TTL_MINUTES", ge=1)
    csrf_cookie_name: str = env_field("__Host-csrf-token", "CSRF_COOKIE_NAME")
    csrf_header_name: str = env_field("X-CSRF-Token", "CSRF_HEADER_NAME")
    # Lockout
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", ge=1)
    lockout_window_seconds: int = env_field(15 * 60, "LOCKOUT_WINDOW_SECONDS", ge=1)
    lockout_duration_seconds: int = env_field(15 * 60, "LOCKOUT_DURATION_SECONDS", ge=1)
    lockout_key_by_ip: bool = env_field(
        False,
        "LOCKOUT_KEY_BY_IP",
        description="Track failed logins per email+client IP instead of per email",
    )
    # Rate limiting
    rate_limits: dict[str, RateLimitRule] = env_field(
        DEFAULT_RATE_LIMITS,
        "RATE_LIMITS",
        description="JSON object of route class -> {strategy, max_requests, window_seconds}",
    )
    rate_limit_bypass_token: str | None = env_field(None, "RATE_LIMIT_BYPASS_TOKEN")
    # Audit and housekeeping
    audit_buffer_size: int = env_field(1000, "AUDIT_BUFFER_SIZE", ge=1)
    reclaim_interval_seconds: int = env_field(
        300, "RECLAIM_INTERVAL_SECONDS", ge=0, description="0 disables the reclaim task"
    )
    # Identity provider
    identity_provider: IdentityBackend = env_field(IdentityBackend.LOCAL, "IDENTITY_PROVIDER")
    identity_verify_url: str | None = env_field(None, "IDENTITY_VERIFY_URL")
    identity_api_key: str | None = env_field(None, "IDENTITY_API_KEY")
    identity_timeout_seconds: float = env_field(5.0, "IDENTITY_TIMEOUT_SECONDS", gt=0)
    # Bootstrap admin seeded at startup
    bootstrap_admin_email: str | None = env_field(None, "ADMIN_EMAIL")
    bootstrap_admin_password: str | None = env_field(None, "ADMIN_PASSWORD")
    bootstrap_admin_role: str = env_field("super_admin", "ADMIN_ROLE")
    # HTTP surface
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Take the client IP from CF-Connecting-IP / X-Real-IP / X-Forwarded-For",
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

    @field_validator("rate_limits", mode="before")
    @classmethod
    def _parse_rate_limits(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError(f"RATE_LIMITS must be a JSON object: {exc.msg}") from exc
        if not isinstance(value, dict):
            raise ValueError("RATE_LIMITS must be a JSON object")
        # Route classes not overridden keep their defaults
        return {**DEFAULT_RATE_LIMITS, **value}

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("bootstrap_admin_role")
    @classmethod
    def _validate_bootstrap_role(cls, value: str) -> str:
        from wedding_admin.service.rbac import Role

        return Role(value.strip().lower()).value

    @model_validator(mode="after")
    def _ensure_secrets(self) -> "Settings":
        for name in ("session_secret", "csrf_secret"):
            value = getattr(self, name)
            if value:
                if len(value) < _MIN_SECRET_LENGTH:
                    raise ValueError(
                        f"{name.upper()} must be at least {_MIN_SECRET_LENGTH} characters"
                    )
                continue
            if not self.test_mode:
                raise ValueError(f"{name.upper()} is required outside TEST_MODE")
            # Ephemeral secrets only live as long as this process
            setattr(self, name, secrets.token_urlsafe(48))
            logger.warning("ephemeral_secret_generated", setting=name)
        if self.identity_provider == IdentityBackend.HTTP and not self.identity_verify_url:
            raise ValueError("IDENTITY_VERIFY_URL is required when IDENTITY_PROVIDER=http")
        return self

    def rate_limit_rule(self, route_class: str) -> RateLimitRule | None:
        return self.rate_limits.get(route_class)


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
