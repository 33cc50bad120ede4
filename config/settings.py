"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings


# Relay URL templates. {url} is the raw resource, {encoded} is percent-encoded.
DEFAULT_RELAY_TEMPLATES = [
    "https://corsproxy.io/?{url}",
    "https://api.codetabs.com/v1/proxy?quest={encoded}",
    "https://api.allorigins.win/raw?url={encoded}",
    "https://thingproxy.freeboard.io/fetch/{url}",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Cache settings
    cache_enabled: bool = True
    cache_directory: Path = Path("./cache")
    cache_db_name: str = "sitefetch_cache.db"
    max_cache_size_bytes: int = 50 * 1024 * 1024  # 50MB
    durable_ttl_seconds: float = 3600.0
    ephemeral_ttl_seconds: float = 300.0
    ephemeral_sweep_threshold: int = 500

    # Network
    request_timeout_seconds: float = 15.0
    user_agent: str = "sitefetch/0.1"
    relay_templates: List[str] = DEFAULT_RELAY_TEMPLATES

    # Retry and concurrency
    retry_max_attempts: int = 3
    retry_initial_delay_seconds: float = 1.0
    fetch_concurrency: int = 8
    # None: wait as long as a fully retried race can take
    coalesce_timeout_seconds: Optional[float] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def cache_db_path(self) -> Path:
        return self.cache_directory / self.cache_db_name


settings = Settings()
