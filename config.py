"""
Configuration settings for the Live Aid stitch scheduler.

Uses Pydantic Settings for environment variable management with .env file support.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_STATE_DIR = Path.home() / ".liveaid"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="LIVEAID_",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Database
    # ========================================
    database_url: str = Field(
        default=f"sqlite:///{DEFAULT_STATE_DIR / 'scheduler.db'}",
        description="SQLAlchemy connection string for scheduler state",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging verbosity level",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (None for stderr only)",
    )

    # ========================================
    # Session & Progression
    # ========================================
    canonical_session_size: int = Field(
        default=20,
        ge=1,
        description="Questions per stitch session (content layer size)",
    )

    # ========================================
    # Concurrency
    # ========================================
    lock_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Max wait for a tube writer lock before REPOSITIONING_FAILED",
    )

    # ========================================
    # Compression
    # ========================================
    compression_gap_threshold: int = Field(
        default=10,
        ge=0,
        description="Compress a tube once it holds more gaps than this",
    )

    # ========================================
    # Content Preparation
    # ========================================
    preparation_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for a background preparation",
    )
    emergency_timeout_seconds: float = Field(
        default=3.0,
        gt=0,
        description="Hard limit for blocking emergency preparation",
    )
    process_retention_seconds: float = Field(
        default=300.0,
        ge=0,
        description="How long finished preparation records are kept",
    )
    min_facts_per_stitch: int = Field(
        default=20,
        ge=1,
        description="Minimum facts a concept needs before a stitch can be prepared",
    )

    # ========================================
    # Ready Cache
    # ========================================
    cache_max_age_seconds: float = Field(
        default=24 * 60 * 60,
        gt=0,
        description="Ready content older than this is treated as expired",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
