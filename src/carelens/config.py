"""Configuration management for CareLens."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", env_prefix="CARELENS_", extra="ignore"
    )

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./carelens.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20
    store_timeout_seconds: float = 5.0

    # Evaluation pipeline
    snapshot_timeout_seconds: float = 10.0
    evaluation_workers: int = 4
    recent_window_days: int = 7

    # Escalation analysis
    escalation_min_points: int = 3
    escalation_min_increase: int = 20

    # Retention
    retention_days: int = 365
    retention_interval_seconds: int = 24 * 60 * 60

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
