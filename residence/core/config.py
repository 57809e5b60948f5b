"""
Configuration management for the Residence Manager.

Provides centralized, validated configuration from environment variables
with proper type checking and defaults.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from residence.core.models import UserRole


def _parse_bool(v) -> bool:
    if isinstance(v, str):
        return v.lower() in ("1", "true", "yes", "y")
    return bool(v)


class ApiConfig(BaseSettings):
    """Building management REST API configuration."""

    base_url: str = Field(default="http://127.0.0.1:8000", alias="RESIDENCE_API_URL")
    token: Optional[str] = Field(default=None, alias="RESIDENCE_API_TOKEN")
    request_timeout: float = Field(default=30.0, alias="REQUEST_TIMEOUT")

    # 1 means a single attempt, i.e. no automatic retries
    retry_attempts: int = Field(default=1, ge=1, le=10, alias="API_RETRY_ATTEMPTS")

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")


class ViewConfig(BaseSettings):
    """Defaults shared by every list view."""

    page_size: int = Field(default=5, gt=0, alias="PAGE_SIZE")
    max_concurrency: int = Field(default=6, gt=0, alias="MAX_CONCURRENCY")
    fallback_label: str = Field(default="unknown", alias="FALLBACK_LABEL")

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")


class SessionConfig(BaseSettings):
    """Identity of the signed-in user, used to build a Session."""

    user_id: Optional[int] = Field(default=None, alias="USER_ID")
    resident_id: Optional[int] = Field(default=None, alias="RESIDENT_ID")
    username: Optional[str] = Field(default=None, alias="RESIDENCE_USERNAME")
    role: str = Field(default="resident", alias="USER_ROLE")

    @field_validator("role")
    @classmethod
    def normalize_role(cls, v: str) -> str:
        role = v.strip().lower()
        allowed = [r.value for r in UserRole]
        if role not in allowed:
            raise ValueError(f"USER_ROLE must be one of: {', '.join(allowed)} (got '{v}')")
        return role

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")


class Settings(BaseSettings):
    """Main application settings."""

    environment: str = Field(default="production", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    api: ApiConfig = Field(default_factory=ApiConfig)
    views: ViewConfig = Field(default_factory=ViewConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)

    @field_validator("debug", mode="before")
    @classmethod
    def parse_debug(cls, v):
        return _parse_bool(v)

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global settings
    if settings is None:
        settings = Settings()
    return settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global settings
    settings = None


def validate_required_settings(for_role: Optional[str] = None) -> List[str]:
    """
    Validate that required settings are present.

    Args:
        for_role: "admin" or "resident"; defaults to the configured role

    Returns:
        List of missing required settings
    """
    missing = []
    config = get_settings()

    if not config.api.base_url:
        missing.append("RESIDENCE_API_URL")
    if not config.api.token:
        missing.append("RESIDENCE_API_TOKEN")

    role = (for_role or config.session.role).lower()
    if role == "resident" and config.session.resident_id is None:
        missing.append("RESIDENT_ID")

    return missing


def print_configuration_summary() -> None:
    """Print a summary of the current configuration for debugging."""
    config = get_settings()
    print("=== Residence Manager Configuration ===")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"API URL: {config.api.base_url}")
    print(f"API Token: {'✓' if config.api.token else '✗'}")
    print(f"Request Timeout: {config.api.request_timeout}s")
    print(f"Retry Attempts: {config.api.retry_attempts}")
    print()
    print(f"Role: {config.session.role}")
    print(f"Resident ID: {config.session.resident_id if config.session.resident_id is not None else '✗'}")
    print(f"Page Size: {config.views.page_size}")
    print(f"Max Concurrency: {config.views.max_concurrency}")

    missing = validate_required_settings()
    if missing:
        print(f"Missing: {', '.join(missing)}")
    print("=" * 39)
