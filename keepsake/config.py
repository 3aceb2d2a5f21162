"""
Configuration and settings for the Keepsake backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# GridFS-compatible default: 255 KiB per chunk.
DEFAULT_CHUNK_SIZE = 255 * 1024


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    api_prefix: str = Field(default="")

    # Database (Postgres expected; any SQLAlchemy URL works)
    database_url: Optional[str] = Field(default=None, validation_alias="DATABASE_URL")

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, validation_alias="KEEPSAKE_USE_IN_MEMORY_BACKENDS"
    )

    # Blob storage
    blob_chunk_size: int = Field(
        default=DEFAULT_CHUNK_SIZE, gt=0, validation_alias="KEEPSAKE_BLOB_CHUNK_SIZE"
    )
    blob_read_batch: int = Field(
        default=4, gt=0, validation_alias="KEEPSAKE_BLOB_READ_BATCH"
    )

    # Listing
    default_page_size: int = Field(default=12, gt=0)
    max_page_size: int = Field(default=100, gt=0)

    # Dashboard counts: gallery image used as the home page hero.
    hero_gallery_title: str = Field(
        default="mj_smile", validation_alias="KEEPSAKE_HERO_GALLERY_TITLE"
    )

    cors_origins: list[str] = Field(
        default_factory=lambda: ["https://mranalini.in"],
        validation_alias="KEEPSAKE_CORS_ORIGINS",
    )
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
