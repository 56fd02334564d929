"""Configuration management using pydantic-settings."""
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Sleeper API configuration
    sleeper_api_base_url: str = "https://api.sleeper.app/v1"
    sleeper_api_timeout: float = 30.0

    # Cache settings
    cache_enabled: bool = True
    cache_default_ttl: int = 300
    cache_memory_limit_mb: int = 100

    # Distributed tier (Redis). Unset means local tier only.
    redis_url: Optional[str] = None
    redis_socket_timeout: float = 2.0

    # Compression
    compression_enabled: bool = True
    compression_threshold: int = 1024
    compression_level: int = 6

    # League calendar
    league_timezone: str = "America/New_York"
    league_state_refresh_seconds: int = 300

    # Background maintenance (seconds)
    invalidation_check_interval: int = 300
    invalidation_check_timeout: float = 10.0
    scheduled_invalidation_delay: float = 1.0
    warming_check_interval: int = 600
    warming_check_timeout: float = 15.0
    warming_interval_active: int = 1800
    warming_interval_inactive: int = 7200
    warming_stale_after: int = 14400
    health_check_interval: int = 300
    health_check_timeout: float = 5.0

    # Warming
    warming_concurrency: int = 3
    warming_task_timeout: float = 15.0
    warm_league_ids: List[str] = []

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
