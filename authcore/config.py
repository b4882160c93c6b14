from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_logger
from authcore.service.tokens import generate_secret

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token service, broker and connection pool."""

    # Database / pool
    database_url: str = env_field(
        "postgresql://localhost:5432/chatbot", "DATABASE_URL"
    )
    database_user: str | None = env_field(None, "DATABASE_USER")
    database_password: str | None = env_field(None, "DATABASE_PASSWORD")
    database_pool_size: int = env_field(10, "DATABASE_POOL_SIZE")
    database_pool_timeout_seconds: float = env_field(
        5.0,
        "DATABASE_POOL_TIMEOUT_SECONDS",
        description="How long borrow() waits for a free connection",
    )
    database_connect_timeout_seconds: int = env_field(
        5, "DATABASE_CONNECT_TIMEOUT_SECONDS"
    )
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Keep identities in process memory instead of PostgreSQL",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS"
    )

    # Google OAuth
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_redirect_uri: str = env_field(
        "http://localhost:8080/auth/google/callback", "GOOGLE_REDIRECT_URI"
    )
    oauth_state_ttl_seconds: int = env_field(10 * 60, "OAUTH_STATE_TTL_SECONDS")
    oauth_http_timeout_seconds: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT_SECONDS")
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Shared OAuth state store for multi-process deployments",
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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Lives for this process only; a restart invalidates every issued token
        logger.warning("jwt_secret_generated", reason="JWT_SECRET not set")
        return generate_secret()

    @field_validator(
        "database_pool_size",
        "database_connect_timeout_seconds",
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "oauth_state_ttl_seconds",
    )
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("database_pool_timeout_seconds", "oauth_http_timeout_seconds")
    @classmethod
    def _positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value
