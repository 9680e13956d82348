"""
Client-facing refresh status derived from the progress record.
"""
import math
from dataclasses import dataclass
from typing import Optional

from .cache.core import STAGE_IDLE, RefreshProgress, epoch_to_iso

STATUS_IDLE = "idle"
STATUS_REFRESHING = "refreshing"
STATUS_ERROR = "error"


@dataclass
class RefreshStatus:
    """Payload of the refresh-status endpoint."""
    status: str
    stage: str
    progress: int
    last_update: Optional[str]
    timestamp: float
    cache_age: Optional[int] = None
    just_completed: bool = False

    def to_dict(self) -> dict:
        result = {
            "status": self.status,
            "stage": self.stage,
            "progress": self.progress,
            "lastUpdate": self.last_update,
            "timestamp": self.timestamp,
            "justCompleted": self.just_completed,
        }
        if self.cache_age is not None:
            result["cacheAge"] = self.cache_age
        return result


def build_refresh_status(progress: Optional[RefreshProgress], now: float) -> RefreshStatus:
    """
    Map a progress record to idle / refreshing / error.

    The success stage reports idle with just_completed set, which tells
    waiting clients to reload once and stop urgent polling. cache_age (whole
    minutes) is only reported while idle.
    """
    if progress is None:
        return RefreshStatus(
            status=STATUS_IDLE,
            stage="No refresh data available",
            progress=0,
            last_update=None,
            timestamp=now,
        )

    just_completed = False
    if progress.error:
        status = STATUS_ERROR
    elif progress.stage == STAGE_IDLE:
        status = STATUS_IDLE
    elif progress.is_complete:
        status = STATUS_IDLE
        just_completed = True
    else:
        status = STATUS_REFRESHING

    cache_age = None
    if status == STATUS_IDLE and progress.start_time:
        cache_age = max(0, math.floor((now - progress.start_time) / 60))

    return RefreshStatus(
        status=status,
        stage=progress.stage or "Unknown",
        progress=progress.progress or 0,
        last_update=epoch_to_iso(progress.start_time) if progress.start_time else None,
        timestamp=progress.timestamp or now,
        cache_age=cache_age,
        just_completed=just_completed,
    )


def status_unavailable(now: float) -> RefreshStatus:
    """Reported when the progress record cannot be read at all."""
    return RefreshStatus(
        status=STATUS_ERROR,
        stage="Failed to get refresh status",
        progress=0,
        last_update=None,
        timestamp=now,
    )
