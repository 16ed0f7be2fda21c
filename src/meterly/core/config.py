"""
Configuration management for meterly.

Supports environment variables, .env files, and YAML configuration.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MeterlySettings(BaseSettings):
    """Core settings."""

    model_config = SettingsConfigDict(
        env_prefix="METERLY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # Restrict the currency table (empty means all known currencies)
    supported_currencies: list[str] = Field(default_factory=list)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v


class RedisSettings(BaseSettings):
    """Redis configuration for the ledger, catalogs and job queue."""

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    url: str | None = Field(default=None, alias="REDIS_URL")
    host: str = "localhost"
    port: int = 6379
    password: SecretStr | None = None
    db: int = 0
    ssl: bool = False

    # Connection pool settings
    max_connections: int = 10
    socket_timeout: float = 5.0

    @property
    def is_configured(self) -> bool:
        """Check if Redis is configured."""
        return self.url is not None or self.host != "localhost"


class IngestionSettings(BaseSettings):
    """Event ingestion and query limits."""

    model_config = SettingsConfigDict(
        env_prefix="METERLY_INGESTION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    max_batch_size: int = Field(default=100, gt=0)
    default_per_page: int = Field(default=50, gt=0)
    max_per_page: int = Field(default=100, gt=0)


class SchedulerSettings(BaseSettings):
    """Progressive billing scheduler and job worker settings."""

    model_config = SettingsConfigDict(
        env_prefix="METERLY_SCHEDULER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    progressive_delay_seconds: float = 60.0
    poll_interval_seconds: float = 1.0
    claim_batch_size: int = 50
    # A claimed job not acknowledged within this many seconds is redelivered
    visibility_timeout_seconds: float = 300.0

    # Redelivery of failed jobs
    max_attempts: int = 5
    retry_base_delay: float = 5.0
    retry_max_delay: float = 300.0

    # Run the job worker inside the API process
    embedded_worker: bool = False


class ServerSettings(BaseSettings):
    """API server settings."""

    model_config = SettingsConfigDict(
        env_prefix="METERLY_SERVER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 8000
    reload: bool = False
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    tenant_header: str = "X-Tenant-ID"


class Settings(BaseSettings):
    """Combined application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    meterly: MeterlySettings = Field(default_factory=MeterlySettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    ingestion: IngestionSettings = Field(default_factory=IngestionSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        import yaml

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()


def reload_settings() -> Settings:
    """Reload settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
