"""Configuration management using pydantic-settings."""
from typing import Optional

from pydantic_settings import BaseSettings


def _default_cache_prefix(app_env: str) -> str:
    """
    Derive the cache key namespace from the deployment environment.

    Keeping environments in separate namespaces means a prefix-scoped clear
    on staging can never touch production keys sharing the same Redis.
    """
    env = (app_env or "").lower()
    if env == "production":
        return "prod:"
    if env in ("staging", "preview"):
        return "staging:"
    if env == "development":
        return "dev:"
    return "local:"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_env: str = "production"

    # Cache backend
    cache_backend: str = "memory"  # "memory" or "redis"
    redis_url: Optional[str] = None
    cache_prefix: Optional[str] = None

    # Freshness and refresh coordination (seconds)
    staleness_threshold_seconds: int = 6 * 60 * 60
    refresh_lock_ttl_seconds: int = 600
    refresh_status_ttl_seconds: int = 180
    cache_ttl_seconds: int = 43200
    degraded_cache_ttl_seconds: int = 300
    retry_after_seconds: int = 10
    refresh_workers: int = 2
    allow_local_background_refresh: bool = False

    # Admin / cron secrets
    cache_clear_token: Optional[str] = None
    cron_secret: Optional[str] = None

    # "package.module:callable" returning a GenerationPipeline
    pipeline_factory: Optional[str] = None

    # Client retry policy (milliseconds)
    refreshing_retry_interval_ms: int = 10000
    refreshing_max_attempts: int = 5
    retry_base_ms: int = 1000
    retry_max_ms: int = 30000
    retry_max_attempts: int = 3
    jitter_variance: float = 0.1
    jitter_floor_ms: int = 1000

    # Idle polling tier boundaries (minutes of cache age)
    idle_min_age_minutes: int = 5
    idle_aging_minutes: int = 300
    idle_late_minutes: int = 330
    idle_stale_minutes: int = 360

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def effective_cache_prefix(self) -> str:
        """Explicit CACHE_PREFIX wins; otherwise derived from APP_ENV."""
        if self.cache_prefix:
            return self.cache_prefix
        return _default_cache_prefix(self.app_env)


settings = Settings()
