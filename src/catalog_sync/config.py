"""Configuration management using pydantic-settings."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _get_default_catalog_db_path() -> Path:
    """Get default path to the live catalog database."""
    return Path.home() / ".catalog-sync" / "catalog.sqlite"


def _get_default_shadow_db_path() -> Path:
    """Get default path to the shadow catalog database."""
    return Path.home() / ".catalog-sync" / "catalog_shadow.sqlite"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CATALOG_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database paths
    catalog_db_path: Path = Field(
        default_factory=_get_default_catalog_db_path,
        description="Path to the live catalog database",
    )
    shadow_db_path: Path = Field(
        default_factory=_get_default_shadow_db_path,
        description="Path to the shadow catalog database (mode=shadow)",
    )

    # Provider
    provider_name: str = Field(
        default="justtcg",
        description="Provider namespace stored with every record and checkpoint",
    )
    provider_base_url: str = Field(
        default="https://api.justtcg.com/v1",
        description="Base URL of the provider REST API",
    )
    provider_api_key: str | None = Field(
        default=None,
        description="API key sent as X-API-Key",
    )
    provider_page_size: int = Field(
        default=100,
        ge=1,
        le=500,
        description="Records requested per provider page",
    )
    provider_timeout_seconds: float = Field(
        default=30.0,
        description="HTTP timeout for provider requests",
    )
    provider_min_request_interval_ms: int = Field(
        default=100,
        ge=0,
        description="Minimum delay between two provider requests",
    )
    supported_games: list[str] = Field(
        default_factory=lambda: ["pokemon", "pokemon-japan", "mtg"],
        description="Game slugs accepted by the sync endpoint",
    )

    # Writes
    upsert_chunk_size: int = Field(
        default=200,
        ge=1,
        le=1000,
        description="Maximum rows per upsert transaction",
    )

    # Retry policy
    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per provider call (including the first)",
    )
    retry_base_delay_seconds: float = Field(
        default=0.5,
        ge=0.0,
        description="Base delay, doubled after each failed attempt",
    )
    retry_max_delay_seconds: float = Field(
        default=30.0,
        ge=0.0,
        description="Upper bound for a single backoff delay",
    )
    retry_jitter: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Fractional random jitter applied to backoff delays",
    )

    # Orchestration
    fanout_concurrency: int = Field(
        default=1,
        ge=1,
        le=8,
        description="Child streams (cards per set, variants per card) synced concurrently",
    )
    guardrail_cards: bool = Field(
        default=False,
        description="Also run the guardrail on each fully observed card stream",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    # Query performance logging
    log_slow_queries: bool = Field(
        default=False,
        description="Enable logging of slow database queries",
    )
    slow_query_threshold_ms: int = Field(
        default=100,
        description="Threshold in milliseconds for slow query warnings",
    )

    # Connection pooling
    db_max_connections: int = Field(
        default=5,
        description="Maximum concurrent database operations (semaphore limit)",
    )

    # HTTP server
    api_host: str = Field(default="127.0.0.1", description="Host for the sync API")
    api_port: int = Field(default=8766, description="Port for the sync API")


# Singleton instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get application settings (cached singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
