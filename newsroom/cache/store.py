"""
Key/value stores with per-entry TTL.

The refresh coordinator only relies on get / set-with-TTL / delete. There is
no compare-and-swap, so anything built on top must tolerate racing writers.
"""
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import redis

from config.settings import Settings, settings as default_settings

from .core import CacheEntry

logger = logging.getLogger("cache.store")


class CacheStore:
    """
    Contract shared by all backends.

    get() returns None for a miss (absent or expired). Values must be
    JSON-serializable so every backend can hold them.
    """

    def __init__(self, prefix: str = ""):
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError

    def clear(self, pattern: Optional[str] = None) -> int:
        """Remove every key in this namespace, or only keys containing pattern."""
        raise NotImplementedError

    def keys(self) -> List[str]:
        """Logical (unprefixed) keys currently stored and unexpired."""
        raise NotImplementedError

    def get_stats(self) -> Dict[str, Any]:
        return {"backend": type(self).__name__, "prefix": self.prefix}


class MemoryCacheStore(CacheStore):
    """
    Per-process dictionary store.

    Thread-safe; expired entries are dropped lazily on access.
    """

    def __init__(self, prefix: str = "", clock: Callable[[], float] = time.time):
        super().__init__(prefix)
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._clock = clock

    def get(self, key: str) -> Optional[Any]:
        full_key = self._key(key)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(full_key)
            if entry is None:
                return None
            if entry.is_expired(now):
                del self._entries[full_key]
                logger.debug(f"Expired on read: {full_key}")
                return None
            return entry.value

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Entry with timestamps, for diagnostics."""
        with self._lock:
            entry = self._entries.get(self._key(key))
        if entry is None or entry.is_expired(self._clock()):
            return None
        return entry

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        now = self._clock()
        entry = CacheEntry(value=value, stored_at=now, expires_at=now + ttl_seconds)
        with self._lock:
            self._entries[self._key(key)] = entry

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(self._key(key), None) is not None

    def clear(self, pattern: Optional[str] = None) -> int:
        with self._lock:
            to_delete = [
                k for k in self._entries
                if k.startswith(self.prefix) and (pattern is None or pattern in k)
            ]
            for full_key in to_delete:
                del self._entries[full_key]
        if pattern:
            logger.info(f"Cleared {len(to_delete)} entries matching '{pattern}'")
        else:
            logger.info(f"Cleared {len(to_delete)} cache entries")
        return len(to_delete)

    def keys(self) -> List[str]:
        now = self._clock()
        with self._lock:
            return [
                k[len(self.prefix):] for k, entry in self._entries.items()
                if k.startswith(self.prefix) and not entry.is_expired(now)
            ]

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats["entries"] = len(self.keys())
        return stats


class RedisCacheStore(CacheStore):
    """
    Redis-backed store shared by every server process.

    Redis errors never escape: reads and writes fall back to a per-process
    memory store, which keeps the service answering while Redis is down.
    """

    def __init__(
        self,
        client: "redis.Redis",
        prefix: str = "",
        fallback: Optional[MemoryCacheStore] = None,
    ):
        super().__init__(prefix)
        self._redis = client
        self._fallback = fallback or MemoryCacheStore(prefix=prefix)

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self._redis.get(self._key(key))
        except redis.RedisError as e:
            logger.warning(f"Redis get failed for {key}, using memory fallback: {e}")
            return self._fallback.get(key)
        if raw is None:
            return self._fallback.get(key)
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Discarding undecodable value for {key}: {e}")
            return None

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        payload = json.dumps(value, default=str)
        try:
            # Redis rejects a zero or negative expiry
            self._redis.set(self._key(key), payload, ex=max(1, int(ttl_seconds)))
        except redis.RedisError as e:
            logger.warning(f"Redis set failed for {key}, using memory fallback: {e}")
            self._fallback.set(key, value, ttl_seconds)

    def delete(self, key: str) -> bool:
        removed = self._fallback.delete(key)
        try:
            return bool(self._redis.delete(self._key(key))) or removed
        except redis.RedisError as e:
            logger.warning(f"Redis delete failed for {key}: {e}")
            return removed

    def clear(self, pattern: Optional[str] = None) -> int:
        memory = self._fallback.clear(pattern)
        if not self.prefix:
            logger.warning("Refusing to clear Redis without a key prefix")
            return memory

        match = f"{self.prefix}*{pattern}*" if pattern else f"{self.prefix}*"
        deleted = 0
        try:
            batch = []
            for full_key in self._redis.scan_iter(match=match, count=100):
                batch.append(full_key)
                if len(batch) >= 100:
                    deleted += self._redis.delete(*batch)
                    batch = []
            if batch:
                deleted += self._redis.delete(*batch)
        except redis.RedisError as e:
            logger.error(f"Failed to clear Redis keys matching {match}: {e}")
        logger.info(f"Cleared {deleted} Redis keys matching {match}")
        return memory + deleted

    def keys(self) -> List[str]:
        try:
            found = {
                (k.decode() if isinstance(k, bytes) else k)[len(self.prefix):]
                for k in self._redis.scan_iter(match=f"{self.prefix}*", count=100)
            }
        except redis.RedisError as e:
            logger.warning(f"Redis scan failed: {e}")
            found = set()
        return sorted(found | set(self._fallback.keys()))

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats["fallback_entries"] = len(self._fallback.keys())
        return stats


def build_cache_store(settings: Settings = default_settings) -> CacheStore:
    """
    Create the configured backend.

    A Redis backend that cannot be reached at startup degrades to a memory
    store with a warning instead of failing the process.
    """
    prefix = settings.effective_cache_prefix
    if settings.cache_backend == "redis":
        if not settings.redis_url:
            logger.warning("CACHE_BACKEND=redis but REDIS_URL is not set. Using in-memory cache.")
            return MemoryCacheStore(prefix=prefix)
        try:
            client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
            client.ping()
        except redis.RedisError as e:
            logger.warning(f"Redis initialization failed. Falling back to in-memory cache: {e}")
            return MemoryCacheStore(prefix=prefix)
        logger.info(f"Using Redis cache store with prefix '{prefix}'")
        return RedisCacheStore(client, prefix=prefix)

    return MemoryCacheStore(prefix=prefix)


# Global cache store instance
_cache_store: Optional[CacheStore] = None


def get_cache_store() -> CacheStore:
    """Get or create the global cache store."""
    global _cache_store
    if _cache_store is None:
        _cache_store = build_cache_store()
    return _cache_store
