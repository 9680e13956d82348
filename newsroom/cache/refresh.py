"""
Background refresh coordination over a plain TTL key/value store.

Single-flight here is advisory: the store has no compare-and-swap, so two
processes that both see an empty lock can both regenerate. That costs
duplicate work, not inconsistency, because the pipeline is idempotent and
the final homepage write is last-writer-wins. The lock TTL bounds how long
a crashed run can keep others from refreshing.
"""
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Any, Callable, Dict, Optional

from config.settings import Settings, settings as default_settings

from ..exceptions import ConfigurationError, GenerationFailure
from .core import (
    STAGE_COMPLETE,
    STAGE_ERROR,
    STAGE_IDLE,
    STAGE_STARTING,
    CacheKeys,
    HomepageData,
    RefreshProgress,
    epoch_to_iso,
    parse_iso_timestamp,
)
from .store import CacheStore
from .ttl_policies import get_homepage_ttl, get_progress_ttl

logger = logging.getLogger("cache.refresh")


class RefreshCoordinator:
    """
    Owns the refresh lock and is the only writer of the homepage entry
    and the refresh progress record.
    """

    def __init__(
        self,
        store: CacheStore,
        pipeline: Optional[Any] = None,
        settings: Settings = default_settings,
        clock: Callable[[], float] = time.time,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        """
        Args:
            store: Shared cache store
            pipeline: Object with generate(on_progress) -> HomepageData
            settings: TTLs and environment flags
            clock: Epoch-seconds time source
            executor: Pool for detached refreshes (created if omitted)
        """
        self.store = store
        self.pipeline = pipeline
        self.settings = settings
        self._clock = clock
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.refresh_workers,
            thread_name_prefix="homepage-refresh",
        )

        # Keeps one process from queueing a second run behind its own
        self._scheduled = False
        self._scheduled_lock = threading.Lock()

        self._stats = {
            "triggered": 0,
            "skipped_locked": 0,
            "succeeded": 0,
            "failed": 0,
        }

    # ----- lock -----

    def lock_holder(self) -> Optional[Dict[str, Any]]:
        """
        Current lock value, or None when no live lock exists.

        A lock whose startTime is older than the lock TTL counts as absent
        even if the backend still returns it.
        """
        lock = self.store.get(CacheKeys.REFRESH_LOCK)
        if not lock:
            return None
        started = lock.get("startTime") if isinstance(lock, dict) else None
        if started is not None and self._clock() - started >= self.settings.refresh_lock_ttl_seconds:
            logger.warning(
                f"Ignoring stale refresh lock from run {lock.get('runId')} "
                f"({self._clock() - started:.0f}s old)"
            )
            return None
        return lock

    def is_refreshing(self) -> bool:
        return self.lock_holder() is not None

    def _acquire_lock(self, run_id: str, started: float) -> None:
        self.store.set(
            CacheKeys.REFRESH_LOCK,
            {"runId": run_id, "startTime": started},
            self.settings.refresh_lock_ttl_seconds,
        )

    def _release_lock(self, run_id: str) -> None:
        """Delete the lock unless another run has since taken it over."""
        try:
            lock = self.store.get(CacheKeys.REFRESH_LOCK)
            if lock and isinstance(lock, dict) and lock.get("runId") not in (None, run_id):
                logger.info(f"Refresh lock now held by run {lock.get('runId')}, leaving it")
                return
            self.store.delete(CacheKeys.REFRESH_LOCK)
        except Exception as e:
            # The lock TTL releases it eventually
            logger.warning(f"Failed to release refresh lock for run {run_id}: {e}")

    # ----- progress -----

    def _write_progress(
        self,
        run_id: str,
        stage: str,
        progress: int,
        start_time: float,
        error: Optional[str] = None,
        terminal: bool = False,
    ) -> None:
        record = RefreshProgress(
            stage=stage,
            progress=progress,
            timestamp=self._clock(),
            start_time=start_time,
            error=error,
            run_id=run_id,
        )
        try:
            self.store.set(
                CacheKeys.REFRESH_PROGRESS,
                record.to_dict(),
                get_progress_ttl(terminal, self.settings),
            )
        except Exception as e:
            logger.error(f"Failed to update refresh status: {e}")

    def get_refresh_progress(self) -> RefreshProgress:
        """
        The active or most recent progress record.

        With no record, reports idle with startTime set to the last
        successful update so clients can derive the cache age.
        """
        raw = self.store.get(CacheKeys.REFRESH_PROGRESS)
        if raw and isinstance(raw, dict) and raw.get("stage"):
            return RefreshProgress.from_dict(raw)

        last_update = parse_iso_timestamp(self.store.get(CacheKeys.LAST_UPDATE))
        return RefreshProgress(
            stage=STAGE_IDLE,
            progress=100,
            timestamp=self._clock(),
            start_time=last_update,
        )

    # ----- homepage -----

    def get_cached_homepage(self) -> Optional[HomepageData]:
        raw = self.store.get(CacheKeys.HOMEPAGE)
        if not raw or not isinstance(raw, dict):
            return None
        return HomepageData.from_dict(raw)

    def store_homepage(self, data: HomepageData) -> int:
        """Write the homepage and its update marker; returns the TTL used."""
        ttl = get_homepage_ttl(data, self.settings)
        self.store.set(CacheKeys.HOMEPAGE, data.to_dict(), ttl)
        self.store.set(CacheKeys.LAST_UPDATE, data.last_updated, ttl)
        if data.is_degraded:
            logger.warning(f"Cached degraded homepage for {ttl}s: {data.rate_limit_message}")
        return ttl

    # ----- generation -----

    def generate(self) -> HomepageData:
        """
        Run the pipeline under the refresh lock and persist the result.

        Blocks until the pipeline finishes. Used directly by the cold-start
        path and by run_refresh() for background work.

        Raises:
            ConfigurationError: If no pipeline is configured
            GenerationFailure: If the pipeline or a cache write fails
        """
        if self.pipeline is None:
            raise ConfigurationError("No generation pipeline configured")

        run_id = uuid.uuid4().hex
        started = self._clock()
        last = {"stage": STAGE_STARTING, "progress": 0}

        def on_progress(stage: str, progress: int) -> None:
            # Progress never goes backwards within one run
            pct = max(last["progress"], min(100, int(progress)))
            last["stage"], last["progress"] = stage, pct
            self._write_progress(run_id, stage, pct, started)

        try:
            try:
                self._acquire_lock(run_id, started)
                self._write_progress(run_id, STAGE_STARTING, 0, started)
                logger.info(f"Refresh {run_id} starting")

                data = self.pipeline.generate(on_progress)

                finished = self._clock()
                data = replace(data, last_updated=epoch_to_iso(finished))
                ttl = self.store_homepage(data)
            except Exception as e:
                logger.error(f"Refresh {run_id} failed during '{last['stage']}': {e}")
                self._write_progress(
                    run_id, STAGE_ERROR, last["progress"], started,
                    error=str(e) or type(e).__name__, terminal=True,
                )
                self._stats["failed"] += 1
                raise GenerationFailure(str(e) or type(e).__name__) from e

            # startTime of the completion record marks when the data became fresh
            self._write_progress(run_id, STAGE_COMPLETE, 100, finished, terminal=True)
            self._stats["succeeded"] += 1
            logger.info(
                f"Refresh {run_id} complete in {finished - started:.1f}s "
                f"({len(data.story_clusters)} clusters, ttl={ttl}s)"
            )
            return data
        finally:
            self._release_lock(run_id)

    def run_refresh(self) -> bool:
        """
        Refresh unless another run holds the lock. Never raises.

        Returns:
            True if new homepage data was written
        """
        try:
            holder = self.lock_holder()
            if holder:
                self._stats["skipped_locked"] += 1
                logger.info(f"Refresh already in progress (run {holder.get('runId')}), skipping")
                return False
            self.generate()
            return True
        except (GenerationFailure, ConfigurationError) as e:
            logger.warning(f"Background refresh did not complete: {e}")
        except Exception as e:
            logger.error(f"Background refresh crashed: {e}", exc_info=True)
        return False

    def _background_disabled(self) -> bool:
        return (
            self.settings.app_env == "development"
            and not self.settings.allow_local_background_refresh
        )

    def trigger_refresh(self) -> bool:
        """
        Schedule a detached refresh. Safe from any request path; never raises.

        Returns:
            True if a run was submitted
        """
        if self._background_disabled():
            logger.info(
                "Skipping background refresh in development "
                "(set ALLOW_LOCAL_BACKGROUND_REFRESH=1 to enable)"
            )
            return False

        try:
            if self.is_refreshing():
                self._stats["skipped_locked"] += 1
                logger.debug("Refresh lock held, not scheduling another refresh")
                return False
        except Exception as e:
            logger.warning(f"Could not read refresh lock, scheduling anyway: {e}")

        with self._scheduled_lock:
            if self._scheduled:
                logger.debug("Refresh already scheduled in this process")
                return False
            self._scheduled = True

        def do_refresh():
            try:
                self.run_refresh()
            finally:
                with self._scheduled_lock:
                    self._scheduled = False

        try:
            self._executor.submit(do_refresh)
        except RuntimeError as e:
            logger.error(f"Cannot schedule background refresh: {e}")
            with self._scheduled_lock:
                self._scheduled = False
            return False

        self._stats["triggered"] += 1
        logger.info("Background refresh scheduled")
        return True

    def get_stats(self) -> Dict[str, Any]:
        with self._scheduled_lock:
            scheduled = self._scheduled
        return {**self._stats, "scheduled": scheduled}

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)
