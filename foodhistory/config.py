from __future__ import annotations

import os
from typing import Any, Literal

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from foodhistory.logging import get_logger

logger = get_logger(__name__)

# Thirty days, matching the remember-me cookie lifetime
DEFAULT_REMEMBER_ME_MAX_AGE = 2_592_000


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the food history service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/foodhistory", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/foodhistory", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and offline OAuth code registration.",
    )
    # Single administrator designation; compared case-insensitively
    admin_email: str | None = env_field(None, "ADMIN_EMAIL")
    # Remember-me cookie
    remember_me_cookie_name: str = env_field(
        "food-history-remember-me", "REMEMBER_ME_COOKIE_NAME"
    )
    remember_me_max_age_seconds: int = env_field(
        DEFAULT_REMEMBER_ME_MAX_AGE, "REMEMBER_ME_MAX_AGE_SECONDS"
    )
    remember_me_cookie_secure: bool = env_field(True, "REMEMBER_ME_COOKIE_SECURE")
    remember_me_cookie_samesite: Literal["lax", "strict", "none"] = env_field(
        "lax", "REMEMBER_ME_COOKIE_SAMESITE"
    )
    remember_me_on_local_login: bool = env_field(
        True,
        "REMEMBER_ME_ON_LOCAL_LOGIN",
        description="Mint remember-me tokens for password logins as well as federated ones.",
    )
    remember_me_max_idle_days: int | None = env_field(
        None,
        "REMEMBER_ME_MAX_IDLE_DAYS",
        description="Reject remember-me tokens unused for longer than this; unset disables the check.",
    )
    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    oauth_post_login_redirect: str = env_field("/foods", "OAUTH_POST_LOGIN_REDIRECT")

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

    @field_validator("admin_email")
    @classmethod
    def _normalize_admin_email(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("remember_me_max_age_seconds")
    @classmethod
    def _validate_max_age(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("remember-me max age must be positive")
        return value

    @field_validator("remember_me_max_idle_days", mode="before")
    @classmethod
    def _blank_idle_days(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("remember_me_cookie_samesite", mode="before")
    @classmethod
    def _lower_samesite(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            use_memory_store=_settings_cache.use_memory_store,
            admin_configured=_settings_cache.admin_email is not None,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
