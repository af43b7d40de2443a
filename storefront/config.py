from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from storefront.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs: Any):
    """Declare a settings field together with the environment variable that feeds it."""
    schema_extra = dict(kwargs.pop("json_schema_extra", None) or {})
    schema_extra["env"] = env
    return Field(default, json_schema_extra=schema_extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the storefront API."""

    database_url: str = env_field("mongodb://localhost:27017", "DATABASE_URL")
    database_name: str = env_field("storefront", "DATABASE_NAME")
    redis_url: str | None = env_field(None, "REDIS_URL")
    data_root: str | None = env_field(
        None,
        "DATA_ROOT",
        description="Directory for the memory store snapshot; unset keeps state in-process only",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relax secrets and external services for local runs and CI",
    )
    # test_mode must stay declared before jwt_secret; the secret validator reads it
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")
    login_token_ttl_days: int = env_field(
        14, "LOGIN_TOKEN_TTL_DAYS", description="Lifetime of tokens minted at login"
    )
    extend_token_ttl_days: int = env_field(
        7, "EXTEND_TOKEN_TTL_DAYS", description="Lifetime of tokens minted by /users/extend"
    )
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")

    cloudinary_name: str | None = env_field(None, "CLOUDINARY_NAME")
    cloudinary_key: str | None = env_field(None, "CLOUDINARY_KEY")
    cloudinary_secret: str | None = env_field(None, "CLOUDINARY_SECRET")
    cloudinary_folder: str = env_field("storefront", "CLOUDINARY_FOLDER")
    max_upload_bytes: int = env_field(1024 * 1024, "MAX_UPLOAD_BYTES")

    default_page_size: int = env_field(20, "DEFAULT_PAGE_SIZE")
    max_page_size: int = env_field(200, "MAX_PAGE_SIZE")

    cors_allow_origin_regex: str = env_field(
        r"^https?://(localhost(:\d+)?|([\w-]+\.)*github\.io)$",
        "CORS_ALLOW_ORIGIN_REGEX",
    )
    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(4000, "PORT")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def env_names(cls) -> dict[str, str]:
        names = {}
        for field_name, info in cls.model_fields.items():
            extra = info.json_schema_extra if isinstance(info.json_schema_extra, dict) else {}
            names[field_name] = str(extra.get("env") or field_name.upper())
        return names

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        """Build settings from the process environment, falling back to ``env_file``."""
        file_values = {k: v for k, v in dotenv_values(env_file).items() if v is not None}
        sources = [os.environ, file_values]
        values = {}
        for field_name, env_name in cls.env_names().items():
            for source in sources:
                if env_name in source:
                    values[field_name] = source[env_name]
                    break
        return cls(**values)

    @field_validator("redis_url", "data_root", "cloudinary_name", "cloudinary_key", "cloudinary_secret")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if isinstance(value, str):
            value = value.strip()
        return value or None

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        if value not in {"HS256", "HS384", "HS512"}:
            raise ValueError("JWT_ALGORITHM must be one of HS256, HS384, HS512")
        return value

    @field_validator("login_token_ttl_days", "extend_token_ttl_days")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTL must be positive")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < 16 and not info.data.get("test_mode"):
                raise ValueError("JWT_SECRET must be at least 16 characters")
            return value
        if info.data.get("test_mode"):
            generated = secrets.token_urlsafe(48)
            logger.warning("jwt_secret_generated", reason="JWT_SECRET unset in test mode")
            return generated
        raise ValueError("JWT_SECRET must be set outside TEST_MODE")

    @property
    def cloudinary_configured(self) -> bool:
        return bool(self.cloudinary_name and self.cloudinary_key and self.cloudinary_secret)


_cached: Settings | None = None


def get_settings() -> Settings:
    """Process-wide settings, read from the environment on first use."""
    global _cached
    if _cached is None:
        _cached = Settings.from_env()
    return _cached


def reset_settings_cache() -> None:
    global _cached
    _cached = None
