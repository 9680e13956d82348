"""
Administrative helpers: secret checks, cache clearing and read-only diagnostics.
"""
import hmac
import logging
import math
import time
from enum import Enum
from typing import Any, Dict, Optional

from config.settings import Settings

from .cache.core import CacheKeys
from .cache.refresh import RefreshCoordinator
from .cache.store import CacheStore

logger = logging.getLogger("homepage.admin")


class TokenCheck(Enum):
    """Outcome of comparing a presented token with the configured secret."""
    NOT_CONFIGURED = "not_configured"
    MISSING = "missing"
    INVALID = "invalid"
    VALID = "valid"


def check_token(presented: Optional[str], configured: Optional[str]) -> TokenCheck:
    """
    Validate a token against a server secret.

    An unset or blank secret disables the feature entirely rather than
    accepting any token.
    """
    if not configured or not configured.strip():
        return TokenCheck.NOT_CONFIGURED
    if not presented or not isinstance(presented, str) or not presented.strip():
        return TokenCheck.MISSING
    if hmac.compare_digest(presented.encode(), configured.encode()):
        return TokenCheck.VALID
    return TokenCheck.INVALID


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an 'Authorization: Bearer <token>' header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def clear_cache(store: CacheStore, pattern: Optional[str] = None) -> Dict[str, Any]:
    """Clear the namespace, or only keys containing pattern."""
    cleared = store.clear(pattern)
    if pattern:
        message = f"Cleared {cleared} cache entries matching pattern: {pattern}"
    else:
        message = f"Cleared {cleared} cache entries"
    logger.info(message)
    return {"success": True, "cleared": cleared, "message": message}


def debug_snapshot(
    coordinator: RefreshCoordinator,
    settings: Settings,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Read-only view of cache health. Must not trigger refreshes or writes.
    """
    started = time.perf_counter()
    now = time.time() if now is None else now

    homepage = coordinator.get_cached_homepage()
    lock = coordinator.store.get(CacheKeys.REFRESH_LOCK)

    age_minutes = None
    if homepage is not None:
        age = homepage.age_seconds(now)
        if math.isfinite(age):
            age_minutes = math.floor(age / 60)

    return {
        "environment": {
            "APP_ENV": settings.app_env,
            "CACHE_BACKEND": settings.cache_backend,
            "CACHE_PREFIX": settings.cache_prefix or "not set (auto-detected)",
        },
        "detectedCachePrefix": settings.effective_cache_prefix,
        "cache": {
            "homepageExists": homepage is not None,
            "homepageAge": f"{age_minutes} minutes" if age_minutes is not None else "N/A",
            "clusterCount": len(homepage.story_clusters) if homepage else 0,
            "refreshInProgress": bool(lock),
        },
        "performance": {
            "checkLatency": f"{(time.perf_counter() - started) * 1000:.1f}ms",
        },
        "status": "Cache OK" if homepage is not None else "No cache found",
    }
