"""
Configuration management for stream-loader.

This module provides environment-based configuration using Pydantic BaseSettings,
so loader defaults (thresholds, worker counts, retry budgets, stage location)
can be tuned per deployment without code changes.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger(__name__)

# Determine project root for resolving .env by default
PROJECT_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_ENV_FILE = PROJECT_ROOT / ".env"
ENV_FILE_OVERRIDE = os.getenv("SL_ENV_FILE")
if ENV_FILE_OVERRIDE:
    env_file_candidate = Path(ENV_FILE_OVERRIDE).expanduser()
    if not env_file_candidate.is_absolute():
        env_file_candidate = PROJECT_ROOT / env_file_candidate
    SETTINGS_ENV_FILE = env_file_candidate
else:
    SETTINGS_ENV_FILE = DEFAULT_ENV_FILE


class Settings(BaseSettings):
    """
    Application settings with environment variable support.

    Field names are uppercase and read without prefix, e.g. ``LOG_LEVEL`` or
    ``LOADER_MAX_WORKERS``. Values from the process environment win over the
    ``.env`` file.

    - DATABASE_URL: PostgreSQL DSN used when no connection is injected
    - STAGE_DIR: Directory backing the local staging area
    - LOADER_*: Defaults for batch thresholds, concurrency and upload retries
    """

    ENVIRONMENT: Literal["dev", "staging", "prod"] = Field(
        default="dev",
        validation_alias="ENVIRONMENT",
        description="Deployment environment",
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Logging level (uppercase)",
    )
    DATABASE_URL: Optional[str] = Field(
        default=None,
        validation_alias="DATABASE_URL",
        description="Target database connection string",
    )
    STAGE_DIR: str = Field(
        default="./stage",
        validation_alias="STAGE_DIR",
        description="Directory used by the local staging area",
    )
    LOADER_MAX_WORKERS: int = Field(
        default=4,
        validation_alias="LOADER_MAX_WORKERS",
        description="Background workers encoding and uploading batches",
    )
    LOADER_MAX_PENDING_BATCHES: int = Field(
        default=8,
        validation_alias="LOADER_MAX_PENDING_BATCHES",
        description="Sealed batches allowed in flight before submit_row blocks",
    )
    LOADER_CSV_ROW_COUNT_BOUND: int = Field(
        default=50_000,
        validation_alias="LOADER_CSV_ROW_COUNT_BOUND",
        description="Rows per staged file",
    )
    LOADER_CSV_FILE_SIZE_BOUND: int = Field(
        default=50 * 1024 * 1024,
        validation_alias="LOADER_CSV_FILE_SIZE_BOUND",
        description="Approximate bytes per staged file",
    )
    LOADER_UPLOAD_RETRY_MAX: int = Field(
        default=5,
        validation_alias="LOADER_UPLOAD_RETRY_MAX",
        description="Upload attempts before the load is declared failed",
    )
    LOADER_UPLOAD_BACKOFF_MS: int = Field(
        default=500,
        validation_alias="LOADER_UPLOAD_BACKOFF_MS",
        description="Initial upload backoff, doubled on every retry",
    )
    LOADER_CONNECT_TIMEOUT: int = Field(
        default=5,
        validation_alias="LOADER_CONNECT_TIMEOUT",
        description="Connection timeout in seconds",
    )

    model_config = SettingsConfigDict(
        env_file=str(SETTINGS_ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    def get_database_connection_string(self) -> Optional[str]:
        """Return the configured DSN, normalising the legacy ``postgres://`` scheme."""
        if self.DATABASE_URL and self.DATABASE_URL.startswith("postgres://"):
            return self.DATABASE_URL.replace("postgres://", "postgresql://", 1)
        return self.DATABASE_URL

    @model_validator(mode="after")
    def validate_production_database_url(self) -> "Settings":
        """Validate that production environment uses PostgreSQL.

        Raises:
            ValueError: If ENVIRONMENT is 'prod' and database URL is not PostgreSQL
        """
        db_url = self.get_database_connection_string()

        if (
            self.ENVIRONMENT == "prod"
            and db_url
            and not db_url.startswith("postgresql://")
        ):
            raise ValueError(
                "Production environment requires PostgreSQL database. "
                f"Database URL must start with 'postgresql://', got: {db_url[:20]}..."
            )
        return self

    @model_validator(mode="after")
    def validate_loader_limits(self) -> "Settings":
        """Reject non-positive loader limits at startup."""
        for name in (
            "LOADER_MAX_WORKERS",
            "LOADER_MAX_PENDING_BATCHES",
            "LOADER_CSV_ROW_COUNT_BOUND",
            "LOADER_CSV_FILE_SIZE_BOUND",
            "LOADER_UPLOAD_RETRY_MAX",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be a positive integer")
        if self.LOADER_UPLOAD_BACKOFF_MS < 0:
            raise ValueError("LOADER_UPLOAD_BACKOFF_MS must not be negative")
        return self


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings instance.

    Uses LRU cache to ensure settings are loaded once and reused across
    the application lifecycle. Tests call ``get_settings.cache_clear()``
    after patching the environment.
    """
    settings = Settings()
    logger.debug(
        "configuration.loaded",
        environment=settings.ENVIRONMENT,
        stage_dir=settings.STAGE_DIR,
        max_workers=settings.LOADER_MAX_WORKERS,
    )
    return settings
