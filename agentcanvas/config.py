from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

MIN_SESSION_SECRET_LENGTH = 32


class Environment(str, Enum):
    """Deployment environments recognised by the cookie and KV policies."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_email_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = list(value)
    normalized = []
    for item in items:
        email = str(item).strip().lower()
        if email and email not in normalized:
            normalized.append(email)
    return normalized


class Settings(BaseModel):
    """Runtime settings for the session and credential service."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    app_name: str = env_field("AgentCanvas", "APP_NAME")
    app_base_url: str = env_field("http://localhost:3000", "BASE_URL")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use the in-process KV store and relax Redis requirements for tests.",
    )

    # Key-value store
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_kv: bool = env_field(False, "USE_MEMORY_KV")
    require_atomic_kv: bool | None = env_field(
        None,
        "REQUIRE_ATOMIC_KV",
        description="Refuse to start without atomic KV primitives (defaults to on in production).",
    )
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")

    # Session cookie
    session_secret: str | None = env_field(None, "SESSION_SECRET")
    session_max_age_seconds: int = env_field(7 * 24 * 60 * 60, "SESSION_MAX_AGE_SECONDS")

    # Identity provider (OAuth authorization-code flow)
    oauth_client_id: str | None = env_field(None, "OAUTH_CLIENT_ID")
    oauth_client_secret: str | None = env_field(None, "OAUTH_CLIENT_SECRET")
    oauth_api_base_url: str = env_field("https://api.workos.com", "OAUTH_API_BASE_URL")
    oauth_provider: str = env_field("authkit", "OAUTH_PROVIDER")
    oauth_http_timeout_seconds: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT_SECONDS")
    oauth_state_max_age_seconds: int = env_field(600, "OAUTH_STATE_MAX_AGE_SECONDS")
    token_refresh_margin_seconds: int = env_field(10 * 60, "TOKEN_REFRESH_MARGIN_SECONDS")
    default_token_expires_in_seconds: int = env_field(
        50 * 60,
        "DEFAULT_TOKEN_EXPIRES_IN_SECONDS",
        description="Assumed id token lifetime when the provider omits expires_in.",
    )

    # Custom id tokens
    jwt_private_key: str | None = env_field(
        None, "JWT_PRIVATE_KEY", description="RSA private key as a JWK JSON document."
    )
    jwt_key_id: str = env_field("agentcanvas-static-1", "JWT_KEY_ID")
    jwt_audience: str = env_field("convex", "JWT_AUDIENCE")
    jwt_ttl_seconds: int = env_field(60 * 60, "JWT_TTL_SECONDS")
    jwt_retired_public_keys: str | None = env_field(
        None,
        "JWT_RETIRED_PUBLIC_KEYS",
        description="JSON list of public JWKs still published after a key rotation.",
    )

    # Allowlists
    allowed_emails: list[str] = env_field([], "ALLOWED_EMAILS")
    super_admin_emails: list[str] = env_field([], "SUPER_ADMIN_EMAILS")

    # Magic links and rate limits
    magic_link_ttl_seconds: int = env_field(15 * 60, "MAGIC_LINK_TTL_SECONDS")
    rate_limit_ip_max_requests: int = env_field(10, "RATE_LIMIT_IP_MAX_REQUESTS")
    rate_limit_ip_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_IP_WINDOW_SECONDS")
    rate_limit_email_max_requests: int = env_field(5, "RATE_LIMIT_EMAIL_MAX_REQUESTS")
    rate_limit_email_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_EMAIL_WINDOW_SECONDS")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")

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

    @field_validator("environment")
    @classmethod
    def _validate_environment(cls, value: Environment) -> Environment:
        return Environment(value)

    @field_validator("allowed_emails", "super_admin_emails", mode="before")
    @classmethod
    def _normalize_email_list(cls, value: Any) -> list[str]:
        return _split_email_list(value)

    @field_validator("app_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("session_secret")
    @classmethod
    def _check_session_secret(cls, value: str | None) -> str | None:
        if value is not None and len(value) < MIN_SESSION_SECRET_LENGTH:
            raise ValueError(
                f"SESSION_SECRET must be at least {MIN_SESSION_SECRET_LENGTH} characters"
            )
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def secure_cookies(self) -> bool:
        """Secure flag whenever the deployment is served over HTTPS or is production."""
        return self.app_base_url.startswith("https://") or self.is_production

    @property
    def strict_atomic_kv(self) -> bool:
        if self.require_atomic_kv is not None:
            return self.require_atomic_kv
        return self.is_production

    @property
    def memory_kv_enabled(self) -> bool:
        return self.use_memory_kv or self.test_mode

    @property
    def callback_url(self) -> str:
        return f"{self.app_base_url}/auth/callback"


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
