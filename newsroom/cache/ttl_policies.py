"""
TTL configuration for every cache key written by the refresh coordinator.
"""
from typing import Dict

from config.settings import Settings, settings as default_settings

from .core import CacheKeys, HomepageData


def build_ttl_config(settings: Settings = default_settings) -> Dict[str, int]:
    """
    TTLs by logical key (in seconds).

    The lock TTL bounds how long a crashed run can block new refreshes.
    Terminal progress records live just long enough for polling clients
    to notice completion or failure.
    """
    return {
        CacheKeys.HOMEPAGE: settings.cache_ttl_seconds,          # 12 hours
        CacheKeys.LAST_UPDATE: settings.cache_ttl_seconds,
        CacheKeys.REFRESH_LOCK: settings.refresh_lock_ttl_seconds,  # 10 minutes
        CacheKeys.REFRESH_PROGRESS: settings.refresh_lock_ttl_seconds,
        f"{CacheKeys.REFRESH_PROGRESS}:terminal": settings.refresh_status_ttl_seconds,  # 3 minutes
    }


def get_homepage_ttl(data: HomepageData, settings: Settings = default_settings) -> int:
    """
    TTL for a freshly generated homepage.

    Degraded (rate-limited) results expire after a few minutes so the next
    reader regenerates soon; complete results keep the normal TTL.
    """
    if data.is_degraded:
        return settings.degraded_cache_ttl_seconds
    return settings.cache_ttl_seconds


def get_progress_ttl(terminal: bool, settings: Settings = default_settings) -> int:
    """TTL for a progress record; in-flight records share the lock lifetime."""
    if terminal:
        return settings.refresh_status_ttl_seconds
    return settings.refresh_lock_ttl_seconds
