"""Application configuration using Pydantic Settings."""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "Notification Delivery"
    debug: bool = False
    environment: str = "development"

    # Logging
    log_level: str = "INFO"

    # Metrics
    metrics_enabled: bool = True

    # Storage - "memory" keeps everything in-process, "sql" uses database_url
    storage_backend: str = "memory"
    database_url: str = "sqlite+aiosqlite:///./deliveries.db"

    @field_validator("database_url", mode="before")
    @classmethod
    def assemble_db_url(cls, v: str) -> str:
        """Convert standard postgres:// URL to asyncpg format."""
        if v.startswith("postgres://"):
            v = v.replace("postgres://", "postgresql+asyncpg://", 1)
        elif v.startswith("postgresql://") and "+asyncpg" not in v:
            v = v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    @field_validator("storage_backend")
    @classmethod
    def check_storage_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("memory", "sql"):
            raise ValueError("storage_backend must be 'memory' or 'sql'")
        return v

    # Delivery statistics
    stats_cache_ttl_seconds: float = 300    # Cached stats considered fresh
    stats_cache_sweep_seconds: float = 300  # Housekeeping clears the cache

    # Circuit breaker
    breaker_window_minutes: int = 60        # Trailing window for failure rate

    # Retention
    retention_days: int = 30

    # Rule intervals and breaker durations are expressed in minutes
    retry_interval_unit_seconds: float = 60.0


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
