"""
Configuration and settings for the blog backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

MIB = 1024 * 1024


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    app_name: str = Field(default="Blog Backend")
    api_prefix: str = Field(default="/api")
    log_level: str = Field(default="INFO")
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    # Database (any SQLAlchemy URL; Postgres in production)
    database_url: Optional[str] = Field(default=None)

    # S3-compatible asset storage
    s3_endpoint: Optional[str] = Field(default=None)
    s3_region: Optional[str] = Field(default=None)
    s3_bucket: Optional[str] = Field(default=None)
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)
    asset_public_base_url: Optional[str] = Field(default=None)

    # Upload limits
    post_image_max_bytes: int = Field(default=10 * MIB)
    profile_image_max_bytes: int = Field(default=5 * MIB)
    generic_image_max_bytes: int = Field(default=100 * MIB)

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, validation_alias="BLOG_USE_IN_MEMORY_BACKENDS"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
