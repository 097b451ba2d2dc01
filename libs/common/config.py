from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings."""

    # Application
    ENVIRONMENT: Literal["local", "development", "production"] = "local"
    LOG_LEVEL: str = "INFO"
    SERVICE_NAME: str = "members-admin"

    # Supabase
    # Default placeholder values keep local/test runs from failing when Supabase
    # credentials are not required. Real deployments should override via env.
    SUPABASE_URL: str = "http://localhost:54321"
    SUPABASE_SERVICE_ROLE_KEY: str = "test-service-role-key"
    SUPABASE_JWT_SECRET: str = "test-jwt-secret"

    # Members backend
    MEMBERS_TABLE: str = "members"
    MEMBERS_DETAILS_RPC: str = "get_members_with_details"
    BACKEND_TIMEOUT_SECONDS: float = 10.0

    # Admin core
    BULK_CONCURRENCY: int = 50  # Matches the batch size admins are used to
    DEFAULT_PAGE_SIZE: int = 20
    CACHE_STALE_SECONDS: float = 300.0  # 5 minutes for lists and details
    ADMIN_ROLES: list[str] = ["admin", "service_role"]

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("SUPABASE_URL")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("BULK_CONCURRENCY", "DEFAULT_PAGE_SIZE")
    @classmethod
    def require_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Return the global settings instance, cached.
    """
    return Settings()
