"""
Application configuration management using Pydantic Settings.
"""
from typing import Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Storage
    BACKUP_BASE_PATH: str = "/backups"  # default root of the local backend

    # Cleanup defaults (explicit arguments always win)
    CLEANUP_REPAIR: bool = False
    CLEANUP_MERGE: bool = False
    CLEANUP_FIX_METADATA_SIZES: bool = False

    # Merge
    MERGE_CONCURRENCY: int = 1
    MERGE_PROGRESS_INTERVAL: float = 10.0  # seconds

    # Aliases
    ALIAS_MAX_SIZE: int = 1024  # bytes

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"  # json or text
    LOG_FILE: Optional[str] = None
    LOG_MAX_BYTES: int = 100 * 1024 * 1024  # 100 MB
    LOG_BACKUP_COUNT: int = 10
    LOG_MEMORY_RECORDS: int = 1000  # 0 disables the in-memory buffer

    @field_validator("MERGE_CONCURRENCY")
    @classmethod
    def check_merge_concurrency(cls, v):
        if v < 1:
            raise ValueError("MERGE_CONCURRENCY must be at least 1")
        return v

    @field_validator("MERGE_PROGRESS_INTERVAL")
    @classmethod
    def check_progress_interval(cls, v):
        if v <= 0:
            raise ValueError("MERGE_PROGRESS_INTERVAL must be positive")
        return v

    @field_validator("LOG_FORMAT")
    @classmethod
    def check_log_format(cls, v):
        v = v.lower()
        if v not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")
        return v


# Global settings instance
settings = Settings()
