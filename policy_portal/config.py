"""
Configuration and settings for the policy portal backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")

    # Hosted Postgres connection string (DATABASE_URL)
    database_url: Optional[str] = Field(default=None)

    # Hosted auth + edge functions (SUPABASE_URL, SUPABASE_*_KEY)
    supabase_url: Optional[str] = Field(default=None)
    supabase_service_role_key: Optional[str] = Field(default=None)
    supabase_anon_key: Optional[str] = Field(default=None)
    welcome_email_function: str = Field(default="send-welcome-email")
    request_timeout_seconds: int = Field(default=30)

    # S3-compatible storage endpoint of the hosted bucket
    storage_s3_endpoint: Optional[str] = Field(default=None)
    storage_region: str = Field(default="us-east-1")
    storage_access_key_id: Optional[str] = Field(default=None)
    storage_secret_access_key: Optional[str] = Field(default=None)
    storage_bucket: str = Field(default="policy-documents")

    # Orphan reconciliation
    auth_users_page_size: int = Field(default=50)

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "PORTAL_USE_IN_MEMORY_BACKENDS", "use_in_memory_backends"
        ),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
