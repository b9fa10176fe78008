"""Typed settings configuration - single source of truth."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Document store (unset = in-memory store)
    database_url: str | None = None

    # Tenancy
    tenant_header: str = "x-customer-slug"

    # Advanced results
    default_page_limit: int = 20
    max_populate_depth: int = 5

    # Ownership
    admin_role_title: str = "admin"

    # Logging
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
