from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from jwtsessions.logging import get_logger

logger = get_logger(__name__)

# HMAC digests the codec knows how to sign with
SUPPORTED_ALGORITHMS = ("HS256", "HS384", "HS512")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Immutable runtime settings for token signing, TTLs and the token store."""

    jwt_secret: str | None = env_field(
        None,
        "JWT_SECRET",
        validate_default=True,
        description="Signing key material shared by every process issuing tokens",
    )
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")
    jwt_issuer: str | None = env_field(
        None, "JWT_ISSUER", description="Embedded as the iss claim and enforced on decode"
    )
    jwt_leeway_seconds: int = env_field(
        0, "JWT_LEEWAY_SECONDS", description="Clock skew tolerance on expiration checks"
    )
    access_token_ttl_seconds: int = env_field(3600, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS"
    )
    persist_access_tokens: bool = env_field(
        False,
        "PERSIST_ACCESS_TOKENS",
        description="Mirror access tokens into the store so they can be revoked one by one",
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    token_prefix: str = env_field("jwt", "TOKEN_PREFIX")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows the runtime singleton to be rebuilt between tests.",
    )

    model_config = ConfigDict(extra="ignore", frozen=True)

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
        normalized = (value or "").upper()
        if normalized not in SUPPORTED_ALGORITHMS:
            raise ValueError(
                f"unsupported signing algorithm {value!r}; expected one of {', '.join(SUPPORTED_ALGORITHMS)}"
            )
        return normalized

    @field_validator(
        "jwt_leeway_seconds", "access_token_ttl_seconds", "refresh_token_ttl_seconds"
    )
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be zero or positive")
        return value

    @field_validator("jwt_issuer")
    @classmethod
    def _blank_issuer_is_none(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Tokens signed with a generated key do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET is not set; using a random per-process signing key",
        )
        return secrets.token_urlsafe(64)


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
