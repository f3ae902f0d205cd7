"""
Configuration management for Contract Hub.

This module uses pydantic-settings to manage environment variables with type validation.

Usage:
    from contract_hub.config import get_settings

    # Access configuration values
    settings = get_settings()
    base_url = settings.analysis_base_url
    db_url = settings.database_url
"""

from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Get the project root directory (parent of contract_hub/)
PROJECT_ROOT = Path(__file__).parent.parent
ENV_FILE = PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./contract_hub.db",
        description="SQLAlchemy async connection string (sqlite+aiosqlite or postgresql+asyncpg)"
    )

    # Analysis Service Configuration
    analysis_base_url: str = Field(
        default="http://127.0.0.1:8000",
        description="Base URL of the external contract details / risk analysis service"
    )

    analysis_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Per-request timeout for calls to the analysis service"
    )

    # Document Storage Configuration
    storage_root: str = Field(
        default="./storage",
        description="Root directory for the local document store"
    )

    storage_bucket: str = Field(
        default="pdf_storage",
        description="Bucket name documents are written to"
    )

    storage_public_base_url: str = Field(
        default="http://127.0.0.1:8080/storage",
        description="Public base URL under which stored documents are served"
    )

    storage_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for a single document write"
    )

    max_upload_bytes: int = Field(
        default=20 * 1024 * 1024,
        gt=0,
        description="Largest accepted document upload in bytes"
    )

    allowed_content_types: List[str] = Field(
        default=[
            "application/pdf",
            "application/msword",
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            "text/plain",
        ],
        description="Document content types accepted by the document store"
    )

    # Application Configuration
    environment: str = Field(
        default="development",
        description="Application environment (development/staging/production)"
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG/INFO/WARNING/ERROR/CRITICAL)"
    )

    app_name: str = Field(
        default="Contract Hub",
        description="Application name for FastAPI"
    )

    app_version: str = Field(
        default="0.1.0",
        description="Application version"
    )

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"  # Ignore extra fields in .env
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached Settings instance.

    Uses lru_cache to ensure Settings is instantiated only once,
    preventing import-time failures and improving performance.

    Returns:
        Settings: Cached application settings instance
    """
    return Settings()
