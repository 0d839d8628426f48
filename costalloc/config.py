"""Configuration management for costalloc."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="COSTALLOC_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Metrics backend
    prometheus_url: str = "http://localhost:9090"
    query_timeout: float = 10.0

    # Database settings
    database_url: str = "sqlite:///./costalloc.db"
    sql_echo: bool = False

    # Merge and insert policies
    strict_aggregation: bool = False
    atomic_resource_inserts: bool = False

    # Logging
    log_level: str = "INFO"
    log_json: bool = True


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
