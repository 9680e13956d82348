"""
Polling and retry timing for homepage clients.

All intervals are in milliseconds.
"""
import random
from dataclasses import dataclass
from typing import Optional

MIN_INTERVAL_MS = 1000
DEFAULT_VARIANCE = 0.1

SECOND_MS = 1000
MINUTE_MS = 60 * SECOND_MS
HOUR_MS = 60 * MINUTE_MS


def clamp_interval(interval_ms: float, floor_ms: int = MIN_INTERVAL_MS) -> int:
    return max(floor_ms, int(round(interval_ms)))


def apply_jitter(
    interval_ms: float,
    variance: float = DEFAULT_VARIANCE,
    floor_ms: int = MIN_INTERVAL_MS,
) -> int:
    """
    Spread an interval uniformly by +/- variance so clients woken together
    drift apart.

    random() == 0.5 leaves the interval unchanged; the result never drops
    below floor_ms.
    """
    offset = (random.random() * 2 - 1) * interval_ms * variance
    return clamp_interval(interval_ms + offset, floor_ms)


def compute_backoff(attempt: int, base_ms: int, max_ms: int) -> int:
    """min(base * 2^(attempt-1), max); attempts below 1 count as the first."""
    return min(base_ms * 2 ** (max(1, attempt) - 1), max_ms)


def get_backoff_interval(
    attempt: int,
    base_ms: int,
    max_ms: int,
    variance: float = DEFAULT_VARIANCE,
    floor_ms: int = MIN_INTERVAL_MS,
) -> int:
    """Jittered exponential backoff for the given 1-based attempt."""
    interval = compute_backoff(attempt, base_ms, max_ms)
    return apply_jitter(interval or base_ms, variance, floor_ms)


@dataclass(frozen=True)
class IdleTiers:
    """
    Cache-age boundaries (minutes) for idle polling.

    Background refresh kicks in once data passes six hours, so polling
    speeds up as the cache approaches that age.
    """
    min_age: int = 5
    aging: int = 300
    late: int = 330
    stale: int = 360


DEFAULT_IDLE_TIERS = IdleTiers()

# (waiting user, background) intervals per tier
_FRESH = (15 * MINUTE_MS, 30 * MINUTE_MS)
_AGING = (2 * MINUTE_MS, 5 * MINUTE_MS)
_LATE = (1 * MINUTE_MS, 2 * MINUTE_MS)
_STALE = (30 * SECOND_MS, 1 * MINUTE_MS)


def get_idle_interval(
    cache_age_minutes: float,
    enabled: bool,
    tiers: IdleTiers = DEFAULT_IDLE_TIERS,
    variance: float = DEFAULT_VARIANCE,
    floor_ms: int = MIN_INTERVAL_MS,
) -> Optional[int]:
    """
    Poll interval while no refresh or error is active.

    enabled means a user is waiting on fresh data; such clients poll at
    roughly half to a third of the background interval. Data younger than
    tiers.min_age gets no periodic poll at all: window refocus and network
    reconnect still trigger one.
    """
    if cache_age_minutes < tiers.min_age:
        return None

    if cache_age_minutes < tiers.aging:
        waiting, background = _FRESH
    elif cache_age_minutes < tiers.late:
        waiting, background = _AGING
    elif cache_age_minutes < tiers.stale:
        waiting, background = _LATE
    else:
        waiting, background = _STALE

    return apply_jitter(waiting if enabled else background, variance, floor_ms)


def get_data_refetch_interval(hours_since_update: float) -> Optional[int]:
    """
    Background refetch cadence for the homepage payload itself.

    Fresh data is never polled; old data is checked occasionally in case
    a refresh landed without this client noticing.
    """
    if hours_since_update > 12:
        return 30 * MINUTE_MS
    if hours_since_update > 6:
        return HOUR_MS
    return None
