"""
Configuration and settings for the KV service.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service and scripts."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    cors_allow_origins: list[str] = Field(default=["*"])

    # Backend selection flag; true routes KV calls to Postgres/Supabase.
    use_supabase_kv: bool = Field(default=True)

    # Database (Supabase Postgres expected)
    database_url: Optional[str] = Field(default=None)

    # Legacy S3-compatible blob store
    blob_bucket: Optional[str] = Field(default=None)
    blob_endpoint: Optional[str] = Field(default=None)
    blob_region: Optional[str] = Field(default=None)
    blob_index_prefix: str = Field(default="_kv_indexes/")
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)

    # Development toggles
    kv_use_in_memory_backends: bool = Field(default=False)

    # Migration tuning
    migration_batch_size: int = Field(default=100, ge=1)
    migration_checkpoint_path: str = Field(default=".migration-progress.json")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
