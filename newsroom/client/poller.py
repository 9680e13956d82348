"""
Homepage client: stale-while-revalidate fetching with classified retries and
freshness-driven status polling.

Retry policy:
- refresh in progress (503 + refreshing): fixed 10s spacing, 5 attempts
- other 4xx: surfaced immediately
- network errors and 5xx: exponential backoff, 3 attempts, capped at 30s

Each poller holds one threading.Timer for status polls and one for refetching
aging homepage data; nothing busy-waits.
"""
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

import requests
from tenacity import RetryCallState, Retrying

from config.settings import Settings, settings as default_settings

from ..cache.core import parse_iso_timestamp
from ..exceptions import (
    ClientError,
    NetworkError,
    PollerError,
    RefreshInProgress,
    ServerError,
)
from .backoff import (
    MINUTE_MS,
    IdleTiers,
    apply_jitter,
    compute_backoff,
    get_backoff_interval,
    get_data_refetch_interval,
    get_idle_interval,
)

logger = logging.getLogger("client.poller")


class RetryKind(Enum):
    """How a failed fetch should be retried."""
    REFRESHING = "refreshing"          # fixed spacing
    NON_RETRIABLE = "non_retriable"    # surface now
    BACKOFF = "backoff"                # exponential backoff


class PollMode(Enum):
    IDLE = "idle"
    FIXED_RETRY = "fixed_retry"
    BACKOFF = "backoff"
    FAILED = "failed"


class PollEvent(Enum):
    SUCCESS = "success"
    REFRESHING = "refreshing"
    RETRIABLE_FAILURE = "retriable_failure"
    FATAL_FAILURE = "fatal_failure"
    EXHAUSTED = "exhausted"


_RETRYING_MODES = (PollMode.IDLE, PollMode.FIXED_RETRY, PollMode.BACKOFF, PollMode.FAILED)

# (mode, event) -> next mode
TRANSITIONS: Dict[tuple, PollMode] = {}
for _mode in _RETRYING_MODES:
    TRANSITIONS[(_mode, PollEvent.SUCCESS)] = PollMode.IDLE
    TRANSITIONS[(_mode, PollEvent.REFRESHING)] = PollMode.FIXED_RETRY
    TRANSITIONS[(_mode, PollEvent.RETRIABLE_FAILURE)] = PollMode.BACKOFF
    TRANSITIONS[(_mode, PollEvent.FATAL_FAILURE)] = PollMode.FAILED
    TRANSITIONS[(_mode, PollEvent.EXHAUSTED)] = PollMode.FAILED

_EVENT_FOR_KIND = {
    RetryKind.REFRESHING: PollEvent.REFRESHING,
    RetryKind.BACKOFF: PollEvent.RETRIABLE_FAILURE,
    RetryKind.NON_RETRIABLE: PollEvent.FATAL_FAILURE,
}


def next_mode(mode: PollMode, event: PollEvent) -> PollMode:
    return TRANSITIONS[(mode, event)]


@dataclass(frozen=True)
class PollerConfig:
    """Retry and polling parameters, in milliseconds unless noted."""
    refreshing_interval_ms: int = 10000
    refreshing_max_attempts: int = 5
    retry_base_ms: int = 1000
    retry_max_ms: int = 30000
    retry_max_attempts: int = 3
    variance: float = 0.1
    floor_ms: int = 1000
    tiers: IdleTiers = IdleTiers()

    @classmethod
    def from_settings(cls, settings: Settings = default_settings) -> "PollerConfig":
        return cls(
            refreshing_interval_ms=settings.refreshing_retry_interval_ms,
            refreshing_max_attempts=settings.refreshing_max_attempts,
            retry_base_ms=settings.retry_base_ms,
            retry_max_ms=settings.retry_max_ms,
            retry_max_attempts=settings.retry_max_attempts,
            variance=settings.jitter_variance,
            floor_ms=settings.jitter_floor_ms,
            tiers=IdleTiers(
                min_age=settings.idle_min_age_minutes,
                aging=settings.idle_aging_minutes,
                late=settings.idle_late_minutes,
                stale=settings.idle_stale_minutes,
            ),
        )


@dataclass
class PollingState:
    """Transient client state; never persisted."""
    enabled: bool = True
    mode: PollMode = PollMode.IDLE
    attempt_count: int = 0
    last_error: Optional[RetryKind] = None
    cache_age_minutes: Optional[int] = None
    status_failures: int = 0
    last_status: Optional[Dict[str, Any]] = None
    last_completed_timestamp: Optional[float] = None
    history: deque = field(default_factory=lambda: deque(maxlen=50))


def classify_failure(error: Exception) -> RetryKind:
    if isinstance(error, RefreshInProgress):
        return RetryKind.REFRESHING
    if isinstance(error, ClientError):
        return RetryKind.NON_RETRIABLE
    return RetryKind.BACKOFF


def retry_delay(kind: RetryKind, attempt: int, config: PollerConfig = PollerConfig()) -> Optional[int]:
    """
    Un-jittered delay before retry number `attempt` (1-based), or None when
    the failure should be surfaced.
    """
    if kind == RetryKind.REFRESHING:
        if attempt <= config.refreshing_max_attempts:
            return config.refreshing_interval_ms
        return None
    if kind == RetryKind.NON_RETRIABLE:
        return None
    if attempt <= config.retry_max_attempts:
        return compute_backoff(attempt, config.retry_base_ms, config.retry_max_ms)
    return None


def _has_no_data(status: Dict[str, Any]) -> bool:
    return status.get("status") == "idle" and status.get("cacheAge") is None


def _json_or_empty(response: requests.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class ClientPoller:
    """
    Client for the homepage and refresh-status endpoints.

    Usage:
        poller = ClientPoller("https://news.example.com", enabled=False)
        homepage = poller.load_homepage()
        poller.start()   # background status polling
        ...
        poller.stop()
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        config: Optional[PollerConfig] = None,
        enabled: bool = True,
        on_refresh_complete: Optional[Callable[[], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
        timeout: float = 30.0,
    ):
        """
        Args:
            base_url: Server root, e.g. "http://localhost:8000"
            session: requests session to reuse
            config: Retry and polling policy
            enabled: True while a user is blocked waiting for fresh data
            on_refresh_complete: Called once per completed refresh;
                defaults to reloading the homepage
            sleep: Sleep function used between load retries
            timer_factory: threading.Timer-compatible constructor
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.config = config or PollerConfig.from_settings()
        self.state = PollingState(enabled=enabled)
        self.homepage: Optional[Dict[str, Any]] = None
        self._on_refresh_complete = on_refresh_complete
        self._sleep = sleep
        self._timer_factory = timer_factory
        self._timeout = timeout

        self._timer: Optional[threading.Timer] = None
        self._refetch_timer: Optional[threading.Timer] = None
        self._timer_lock = threading.Lock()
        self._running = False

    # ----- requests -----

    def _get(self, path: str) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(
                url,
                headers={"Cache-Control": "no-cache"},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise NetworkError(f"Request to {path} failed: {e}") from e

        if not response.ok:
            body = _json_or_empty(response)
            status = response.status_code
            if status == 503 and body.get("refreshing"):
                retry_after = body.get("retryAfter") or response.headers.get("Retry-After") or 10
                raise RefreshInProgress(retry_after=int(retry_after))
            message = body.get("error") or f"{status} {response.reason}"
            if 400 <= status < 500:
                raise ClientError(f"{path}: {message}", status_code=status)
            raise ServerError(f"{path}: {message}", status_code=status)

        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"Invalid JSON from {path}") from e

    def fetch_homepage(self) -> Dict[str, Any]:
        """One homepage request, raising a classified error on failure."""
        return self._get("/api/homepage")

    def fetch_status(self) -> Dict[str, Any]:
        return self._get("/api/refresh-status")

    # ----- state machine -----

    def _transition(self, event: PollEvent) -> PollMode:
        previous = self.state.mode
        self.state.mode = next_mode(previous, event)
        self.state.history.append((previous, event, self.state.mode))
        if previous != self.state.mode:
            logger.debug(f"Poller {previous.value} -> {self.state.mode.value} on {event.value}")
        return self.state.mode

    # ----- retry hooks (tenacity) -----

    def _should_retry(self, retry_state: RetryCallState) -> bool:
        error = retry_state.outcome.exception()
        if not isinstance(error, (RefreshInProgress, PollerError)):
            return False
        kind = classify_failure(error)
        return retry_delay(kind, retry_state.attempt_number, self.config) is not None

    def _retry_wait(self, retry_state: RetryCallState) -> float:
        kind = classify_failure(retry_state.outcome.exception())
        delay = retry_delay(kind, retry_state.attempt_number, self.config) or 0
        return apply_jitter(delay, self.config.variance, self.config.floor_ms) / 1000

    def _before_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        kind = classify_failure(error)
        self.state.attempt_count = retry_state.attempt_number
        self.state.last_error = kind
        self._transition(_EVENT_FOR_KIND[kind])
        if kind == RetryKind.REFRESHING:
            logger.info(
                f"Waiting for data refresh (attempt {retry_state.attempt_number}/"
                f"{self.config.refreshing_max_attempts})"
            )
        else:
            logger.info(
                f"Retrying homepage fetch (attempt {retry_state.attempt_number}/"
                f"{self.config.retry_max_attempts}): {error}"
            )

    def load_homepage(self) -> Dict[str, Any]:
        """
        Fetch the homepage, retrying per the failure classification.

        Raises:
            RefreshInProgress: Refresh did not finish within the retry budget
            ClientError: Request rejected (never retried)
            ServerError, NetworkError: Backoff budget exhausted
        """
        self.state.attempt_count = 0
        retrying = Retrying(
            retry=self._should_retry,
            wait=self._retry_wait,
            sleep=self._sleep,
            before_sleep=self._before_retry,
            reraise=True,
        )
        try:
            data = retrying(self.fetch_homepage)
        except (RefreshInProgress, PollerError) as e:
            kind = classify_failure(e)
            self.state.attempt_count = retrying.statistics.get("attempt_number", 1)
            self.state.last_error = kind
            self._transition(
                PollEvent.FATAL_FAILURE if kind == RetryKind.NON_RETRIABLE else PollEvent.EXHAUSTED
            )
            logger.error(f"Homepage fetch failed after {self.state.attempt_count} attempt(s): {e}")
            raise

        self._transition(PollEvent.SUCCESS)
        self.state.attempt_count = 0
        self.state.last_error = None
        if data.get("cacheAge") is not None:
            self.state.cache_age_minutes = data["cacheAge"]
        self.homepage = data
        logger.info(f"Homepage data fetched (fromCache: {data.get('fromCache')}, cacheAge: {data.get('cacheAge')}min)")
        self._schedule_refetch()
        return data

    def homepage_refetch_interval(self, now: Optional[float] = None) -> Optional[int]:
        """How often the loaded payload itself should be refetched, if at all."""
        if not self.homepage:
            return None
        updated = parse_iso_timestamp(self.homepage.get("lastUpdated"))
        if updated is None:
            return None
        now = datetime.now(timezone.utc).timestamp() if now is None else now
        return get_data_refetch_interval((now - updated) / 3600)

    # ----- status polling -----

    def next_status_interval(self, data: Optional[Dict[str, Any]]) -> Optional[int]:
        """
        Delay before the next status poll, or None for no periodic poll.
        """
        cfg = self.config
        enabled = self.state.enabled

        # An idle status without cacheAge means nothing has been cached yet
        if not data or _has_no_data(data):
            # Back off from 5s to 1 min while a user waits, from 10s to
            # 2 min in the background
            if enabled:
                return get_backoff_interval(
                    self.state.status_failures, 5000, MINUTE_MS, cfg.variance, cfg.floor_ms
                )
            return get_backoff_interval(
                self.state.status_failures, 10000, 2 * MINUTE_MS, cfg.variance, cfg.floor_ms
            )

        status = data.get("status")
        if status == "refreshing":
            return apply_jitter(2000 if enabled else 10000, cfg.variance, cfg.floor_ms)
        if status == "error" and enabled:
            return apply_jitter(10000, cfg.variance, cfg.floor_ms)
        if status == "idle":
            return get_idle_interval(data["cacheAge"], enabled, cfg.tiers, cfg.variance, cfg.floor_ms)
        return apply_jitter(2 * MINUTE_MS, cfg.variance, cfg.floor_ms)

    def poll_status(self) -> Optional[int]:
        """Poll the status endpoint once and return the next delay."""
        try:
            data = self.fetch_status()
        except (RefreshInProgress, PollerError) as e:
            self.state.status_failures += 1
            self.state.last_error = classify_failure(e)
            logger.warning(f"Failed to get refresh status: {e}")
            return self.next_status_interval(None)

        if _has_no_data(data):
            # Keep backing off until the first homepage lands
            self.state.status_failures += 1
        else:
            self.state.status_failures = 0
        self.state.last_status = data
        if data.get("cacheAge") is not None:
            self.state.cache_age_minutes = data["cacheAge"]

        if data.get("status") == "refreshing":
            logger.info(f"Refresh in progress: {data.get('stage')} ({data.get('progress')}%)")
        elif data.get("status") == "error":
            logger.error(f"Refresh error: {data.get('stage')}")
        elif data.get("justCompleted"):
            self._handle_completion(data.get("timestamp"))

        return self.next_status_interval(data)

    def _handle_completion(self, timestamp: Optional[float]) -> None:
        """Fire the completion callback once per distinct completion."""
        if timestamp is None or timestamp == self.state.last_completed_timestamp:
            return
        self.state.last_completed_timestamp = timestamp
        logger.info("Refresh just completed, reloading homepage data")
        try:
            if self._on_refresh_complete is not None:
                self._on_refresh_complete()
            else:
                self.load_homepage()
        except Exception as e:
            logger.error(f"Reload after refresh completion failed: {e}")

    def set_enabled(self, enabled: bool) -> None:
        """Switch between waiting-user and background cadence."""
        if enabled != self.state.enabled:
            self.state.enabled = enabled
            self.state.status_failures = 0

    # ----- timer -----

    def _schedule(self, delay_ms: Optional[int]) -> None:
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if not self._running or delay_ms is None:
                return
            timer = self._timer_factory(delay_ms / 1000, self._tick)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _tick(self) -> None:
        if not self._running:
            return
        self._schedule(self.poll_status())

    def _schedule_refetch(self) -> None:
        """(Re)arm the homepage refetch timer from the loaded data's age."""
        delay_ms = self.homepage_refetch_interval() if self._running else None
        with self._timer_lock:
            if self._refetch_timer is not None:
                self._refetch_timer.cancel()
                self._refetch_timer = None
            if delay_ms is None:
                return
            timer = self._timer_factory(delay_ms / 1000, self._refetch_tick)
            timer.daemon = True
            self._refetch_timer = timer
            timer.start()

    def _refetch_tick(self) -> None:
        if not self._running:
            return
        logger.info("Refetching aging homepage data")
        try:
            self.load_homepage()
        except (RefreshInProgress, PollerError) as e:
            logger.warning(f"Homepage refetch failed: {e}")
            self._schedule_refetch()

    def start(self) -> None:
        """Begin status polling with an immediate first poll."""
        self._running = True
        self._schedule(0)
        self._schedule_refetch()

    def stop(self) -> None:
        """Cancel pending polls and refetches; safe to call at any time."""
        self._running = False
        self._schedule(None)
        self._schedule_refetch()

    def refocus(self) -> None:
        """Window regained focus: poll now."""
        if self._running:
            self._schedule(0)

    def reconnect(self) -> None:
        """Network came back: poll now."""
        if self._running:
            self._schedule(0)

    @property
    def running(self) -> bool:
        return self._running
