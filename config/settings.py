"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Durable tier for the server-side cache
    database_url: str = "sqlite:///./crm_cache.db"

    # Tiered cache
    cache_default_ttl: int = 300
    cache_sweep_interval: float = 60.0
    cache_store_timeout: float = 2.0
    cache_single_flight: bool = False

    # Offline call-history cache (client side)
    offline_db_path: Path = Path("./data/offline_cache.db")
    offline_ttl_seconds: int = 24 * 60 * 60
    offline_max_owners: int = 20
    offline_max_bytes: Optional[int] = 5 * 1024 * 1024
    offline_reconnect_debounce: float = 2.0
    offline_key_prefix: str = "call-history:"

    # Post-call watchdog
    watchdog_poll_interval: float = 10.0
    watchdog_analysis_delay: float = 8.0
    watchdog_failure_threshold: int = 3
    watchdog_cooldown: float = 5 * 60.0
    # None keeps processed ids for the lifetime of the poller
    watchdog_processed_ttl: Optional[float] = None

    # Self-hosted call-log API
    call_logs_base_url: str = "http://localhost:54321/functions/v1"
    call_logs_api_key: Optional[str] = None
    call_logs_timeout: float = 10.0
    call_min_duration: int = 10
    connectivity_check_url: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
