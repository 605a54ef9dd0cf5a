"""Configuration management using pydantic-settings."""
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Namespace prepended to every logical cache key
    cache_key_prefix: str = "epms_cache_"

    # Entry lifetime defaults (seconds)
    cache_default_ttl_seconds: float = 300.0

    # Size limits (bytes)
    cache_max_entry_bytes: int = 2 * 1024 * 1024    # per entry
    cache_max_total_bytes: int = 8 * 1024 * 1024    # all entries under a prefix
    cache_cleanup_target_ratio: float = 0.95        # cleanup target = total * ratio

    # Eviction tuning
    cache_recent_access_seconds: float = 120.0      # never evict entries touched this recently
    cache_eviction_fraction: float = 0.2            # oldest share evicted per pass

    # Persistent store
    cache_backend: str = "sqlite"                   # "sqlite" or "memory"
    cache_directory: Path = Path("./cache")
    cache_db_filename: str = "epms_cache.db"
    cache_quota_bytes: int = 10 * 1024 * 1024       # store capacity, shared with other data

    # Background refresh pool size for prefetch_with_cache
    cache_revalidation_workers: int = 4

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def cache_db_path(self) -> Path:
        return self.cache_directory / self.cache_db_filename


settings = Settings()
