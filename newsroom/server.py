"""
Request-time homepage decisions: serve cached, refresh in the background,
or generate on a cold start.
"""
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from config.settings import Settings, settings as default_settings

from .cache.coalescer import GenerationCoalescer
from .cache.core import CacheKeys, HomepageData
from .cache.refresh import RefreshCoordinator
from .exceptions import GenerationFailure, RefreshInProgress

logger = logging.getLogger("homepage.server")


@dataclass
class HomepageResponse:
    """Homepage payload plus where it came from."""
    data: HomepageData
    from_cache: bool
    cache_age_minutes: Optional[int] = None
    refresh_triggered: bool = False

    def to_dict(self) -> dict:
        result = self.data.to_dict()
        result["fromCache"] = self.from_cache
        if self.cache_age_minutes is not None:
            result["cacheAge"] = self.cache_age_minutes
        return result


class HomepageServer:
    """
    Stale-while-revalidate reads on top of the refresh coordinator.

    Readers are never blocked by a refresh that is already running. The
    only blocking path is a cold start, when nothing is cached and no run
    holds the lock.
    """

    def __init__(
        self,
        coordinator: RefreshCoordinator,
        settings: Settings = default_settings,
        coalescer: Optional[GenerationCoalescer] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.coordinator = coordinator
        self.settings = settings
        self.coalescer = coalescer or GenerationCoalescer()
        self._clock = clock

    def read(self) -> HomepageResponse:
        """
        Resolve one homepage request.

        Raises:
            RefreshInProgress: Nothing cached and another run is generating,
                or this request timed out waiting on one in this process
            GenerationFailure: Cold-start generation failed
            ConfigurationError: Cold start with no pipeline configured
        """
        cached = self.coordinator.get_cached_homepage()

        if cached is not None:
            age = cached.age_seconds(self._clock())
            age_minutes = math.floor(age / 60) if math.isfinite(age) else None
            triggered = False

            if age > self.settings.staleness_threshold_seconds:
                logger.info(f"Serving stale homepage ({age_minutes} minutes old), triggering background refresh")
                triggered = self.coordinator.trigger_refresh()
            else:
                logger.debug(f"Serving cached homepage ({age_minutes} minutes old)")

            return HomepageResponse(
                data=cached,
                from_cache=True,
                cache_age_minutes=age_minutes,
                refresh_triggered=triggered,
            )

        logger.warning("Homepage cache miss")

        if self.coordinator.is_refreshing():
            logger.info("Refresh already in progress, asking client to retry")
            raise RefreshInProgress(retry_after=self.settings.retry_after_seconds)

        logger.warning("No cache and no refresh in progress - generating initial data (this may take 30-60s)")
        try:
            data = self.coalescer.run(CacheKeys.HOMEPAGE, self.coordinator.generate)
        except GenerationFailure as e:
            logger.error(f"Failed to generate initial data: {e}")
            # Next request gets another chance in the background
            self.coordinator.trigger_refresh()
            raise
        except TimeoutError as e:
            # The owning request is still generating
            logger.warning(f"Gave up waiting for initial generation: {e}")
            raise RefreshInProgress(retry_after=self.settings.retry_after_seconds) from e

        return HomepageResponse(data=data, from_cache=False)
