"""
Core cache data structures and key schema.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class CacheKeys:
    """Logical cache keys. Stores apply the environment prefix."""
    HOMEPAGE = "homepage-result"
    LAST_UPDATE = "last-cache-update"
    REFRESH_LOCK = "refresh-in-progress"
    REFRESH_PROGRESS = "refresh-progress"


# Refresh stages, in pipeline order
STAGE_IDLE = "idle"
STAGE_STARTING = "Starting refresh..."
STAGE_FETCHING = "Fetching latest news and generating clusters..."
STAGE_SUMMARIZING = "Generating AI summaries..."
STAGE_FINALIZING = "Finalizing updates..."
STAGE_COMPLETE = "Fresh stories ready!"
STAGE_ERROR = "Error occurred"


def parse_iso_timestamp(value: Optional[str]) -> Optional[float]:
    """Parse an ISO-8601 timestamp to epoch seconds, or None if unusable."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def epoch_to_iso(seconds: float) -> str:
    return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class CacheEntry:
    """
    A stored value with absolute expiry.

    Entries are replaced wholesale on every write; reads at or after
    expires_at are misses.
    """
    value: Any
    stored_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def age_seconds(self, now: float) -> float:
        return now - self.stored_at


@dataclass(frozen=True)
class HomepageData:
    """
    The generated homepage artifact.

    Produced only by a generation pipeline, written once per successful
    refresh and never modified afterwards.
    """
    story_clusters: List[Dict[str, Any]] = field(default_factory=list)
    unclustered_articles: List[Dict[str, Any]] = field(default_factory=list)
    topics: List[str] = field(default_factory=list)
    rate_limit_message: Optional[str] = None
    last_updated: str = ""

    @property
    def is_degraded(self) -> bool:
        """A rate-limited pipeline run still yields data, just lower quality."""
        return bool(self.rate_limit_message)

    def age_seconds(self, now: float) -> float:
        """Seconds since last_updated; unknown timestamps count as infinitely old."""
        updated = parse_iso_timestamp(self.last_updated)
        if updated is None:
            return float("inf")
        return now - updated

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response and storage."""
        return {
            "storyClusters": list(self.story_clusters),
            "unclusteredArticles": list(self.unclustered_articles),
            "topics": list(self.topics),
            "rateLimitMessage": self.rate_limit_message,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HomepageData":
        return cls(
            story_clusters=list(data.get("storyClusters") or []),
            unclustered_articles=list(data.get("unclusteredArticles") or []),
            topics=list(data.get("topics") or []),
            rate_limit_message=data.get("rateLimitMessage"),
            last_updated=data.get("lastUpdated") or "",
        )


@dataclass
class RefreshProgress:
    """
    Progress record of a refresh run.

    run_id versions the record: every run writes under its own id, so an
    observer can tell one run's updates from another's.
    """
    stage: str
    progress: int
    timestamp: float
    start_time: Optional[float] = None
    error: Optional[str] = None
    run_id: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.stage == STAGE_COMPLETE and not self.error

    def to_dict(self) -> dict:
        result = {
            "runId": self.run_id,
            "stage": self.stage,
            "progress": self.progress,
            "timestamp": self.timestamp,
            "startTime": self.start_time,
        }
        if self.error is not None:
            result["error"] = self.error
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RefreshProgress":
        return cls(
            stage=data.get("stage") or "Unknown",
            progress=int(data.get("progress") or 0),
            timestamp=data.get("timestamp") or 0,
            start_time=data.get("startTime"),
            error=data.get("error"),
            run_id=data.get("runId"),
        )
