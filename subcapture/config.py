"""
Configuration module for subcapture.

Uses pydantic-settings to load configuration from environment variables.
This allows runtime tuning of cache lifetimes, history size and classifier
thresholds without code changes.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings with environment variable support.

    Note: The env_prefix is set to "SUBCAPTURE_" but populate_by_name=True allows
    using field names directly. All settings can be set via either:
    - Prefixed: SUBCAPTURE_<SETTING_NAME> (e.g., SUBCAPTURE_HISTORY_MAX_SIZE)
    - Unprefixed aliases: HOST, PORT, LOG_LEVEL
    - In .env file

    Environment Variables:
        HOST: Server host (default: 0.0.0.0)
        PORT: Server port (default: 8000)
        LOG_LEVEL: Logging level (default: info)
        SUBTITLE_TTL_DAYS: Age after which a durable subtitle entry is dropped (default: 7)
        MEMORY_CACHE_MAXSIZE: Maximum number of tabs kept in memory (default: 1000)
        HISTORY_MAX_SIZE: Default bound of the capture history (default: 10)
        STORAGE_BACKEND: Durable store, one of sqlite, redis, memory (default: sqlite)
        DATABASE_PATH: SQLite file used by the sqlite backend (default: subcapture.db)
        REDIS_URL: Redis URL used by the redis backend
        RATE_LIMIT_ENABLED: Rate limit capture ingestion (default: true)
        RATE_LIMIT_PER_MINUTE: Capture requests per minute per IP (default: 120)
    """

    # ========== Server Configuration ==========

    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    log_level: str = Field(default="info", alias="LOG_LEVEL")

    # ========== Cache Settings ==========

    subtitle_ttl_days: int = 7
    memory_cache_maxsize: int = 1000

    # Seconds between background sweeps of expired durable entries
    cache_poll_interval: float = 3600.0

    # ========== History Settings ==========

    history_max_size: int = 10
    history_title_words: int = 25

    # ========== Capture Settings ==========

    # Request header marking the interceptor's own requests
    skip_header: str = "x-vtt-interceptor-skip"

    # Classifier sampling window and sprite threshold
    thumbnail_sample_lines: int = 100
    thumbnail_min_sprite_lines: int = 5

    # Upper bound on canonical text accepted from a page
    max_content_chars: int = 1_000_000

    # ========== Storage Settings ==========

    storage_backend: Literal["sqlite", "redis", "memory"] = "sqlite"
    database_path: str = "subcapture.db"
    redis_url: str | None = None

    # ========== Security Settings ==========

    rate_limit_enabled: bool = True
    rate_limit_per_minute: int = 120

    model_config = SettingsConfigDict(
        env_prefix="SUBCAPTURE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,  # Allow using field names or aliases
    )

    @property
    def subtitle_ttl_ms(self) -> int:
        """TTL of durable subtitle entries in milliseconds."""
        return self.subtitle_ttl_days * 24 * 60 * 60 * 1000


# Global settings instance - loaded at startup with environment variables
settings = Settings()
