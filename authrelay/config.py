from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authrelay.logging import get_logger

logger = get_logger(__name__)


class AppEnv(str, Enum):
    """Deployment environments; cookies are only marked secure in production."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


@dataclass(frozen=True)
class CookiePolicy:
    """Attributes applied to every auth cookie the server variant writes."""

    access_max_age: int
    refresh_max_age: int
    secure: bool
    samesite: str = "lax"
    path: str = "/"
    httponly: bool = True


@dataclass(frozen=True)
class AuthEndpoints:
    """Paths of the identity endpoints, relative to a client's base URL."""

    login: str
    logout: str
    refresh: str
    me: str

    @classmethod
    def with_prefix(cls, prefix: str) -> "AuthEndpoints":
        prefix = "/" + prefix.strip("/") if prefix.strip("/") else ""
        return cls(
            login=f"{prefix}/auth/login",
            logout=f"{prefix}/auth/logout",
            refresh=f"{prefix}/auth/refresh",
            me=f"{prefix}/auth/me",
        )


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the request coordination layer and the BFF app."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    backend_base_url: str | None = env_field(
        None,
        "FASTAPI_BASE_URL",
        description="Base URL of the backend identity/API service",
    )
    app_base_url: str = env_field(
        "http://localhost:3000",
        "APP_BASE_URL",
        description="Origin of the same-origin auth endpoints used by browser-style clients",
    )
    backend_api_prefix: str = env_field("/api/v1", "BACKEND_API_PREFIX")
    same_origin_api_prefix: str = env_field("/api", "SAME_ORIGIN_API_PREFIX")
    access_cookie_name: str = env_field("auth_token", "ACCESS_COOKIE_NAME")
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    access_token_max_age_seconds: int = env_field(
        60 * 60,
        "ACCESS_TOKEN_MAX_AGE_SECONDS",
        description="Access-token cookie lifetime; mirrors the session policy",
    )
    refresh_token_max_age_seconds: int = env_field(
        30 * 24 * 60 * 60,
        "REFRESH_TOKEN_MAX_AGE_SECONDS",
        description="Refresh-token cookie lifetime",
    )
    refresh_skew_seconds: int = env_field(
        5 * 60,
        "REFRESH_SKEW_SECONDS",
        description="How long before expiry the proactive refresh fires",
    )
    refresh_timeout_seconds: float = env_field(
        10.0,
        "REFRESH_TIMEOUT_SECONDS",
        description="Upper bound on one refresh call; exceeding it is a recoverable failure",
    )
    near_expiry_seconds: int = env_field(
        60,
        "NEAR_EXPIRY_SECONDS",
        description="get_access_token refreshes first when the token expires within this window",
    )
    default_session_ttl_seconds: int = env_field(
        60 * 60,
        "DEFAULT_SESSION_TTL_SECONDS",
        description="Assumed lifetime when the backend reports no expiry",
    )
    refresh_grace_seconds: float = env_field(
        10.0,
        "REFRESH_GRACE_SECONDS",
        description="How long the server keeps a rotated pair for requests still holding the old refresh cookie",
    )
    request_timeout_seconds: float = env_field(30.0, "REQUEST_TIMEOUT_SECONDS")
    forward_refresh_header: bool = env_field(
        False,
        "FORWARD_REFRESH_HEADER",
        description="Also send the refresh token to the backend as X-Refresh-Token",
    )
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

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

    @field_validator("app_env", mode="before")
    @classmethod
    def _validate_app_env(cls, value: Any) -> AppEnv:
        if isinstance(value, str):
            value = value.strip().lower()
        return AppEnv(value)

    @field_validator("backend_base_url")
    @classmethod
    def _strip_backend_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip().rstrip("/")
        return value or None

    @field_validator("app_base_url")
    @classmethod
    def _strip_app_url(cls, value: str) -> str:
        return value.strip().rstrip("/")

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("refresh_skew_seconds", "near_expiry_seconds")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    @field_validator("refresh_timeout_seconds", "request_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be > 0")
        return value

    @property
    def is_production(self) -> bool:
        return self.app_env == AppEnv.PRODUCTION

    def cookie_policy(self) -> CookiePolicy:
        return CookiePolicy(
            access_max_age=self.access_token_max_age_seconds,
            refresh_max_age=self.refresh_token_max_age_seconds,
            secure=self.is_production,
        )

    def backend_endpoints(self) -> AuthEndpoints:
        return AuthEndpoints.with_prefix(self.backend_api_prefix)

    def same_origin_endpoints(self) -> AuthEndpoints:
        return AuthEndpoints.with_prefix(self.same_origin_api_prefix)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            app_env=_settings_cache.app_env.value,
            backend_configured=_settings_cache.backend_base_url is not None,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
