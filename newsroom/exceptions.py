"""Custom exceptions for homepage caching and refresh coordination."""
from typing import Optional


class NewsroomError(Exception):
    """Base exception for homepage-related errors."""
    pass


class RefreshInProgress(NewsroomError):
    """Raised when there is no cached homepage but a refresh is already running."""

    def __init__(self, message: str = "Data is being refreshed. Please try again in a moment.",
                 retry_after: int = 10):
        super().__init__(message)
        self.retry_after = retry_after


class GenerationFailure(NewsroomError):
    """Raised when the generation pipeline fails to produce homepage data."""
    pass


class ConfigurationError(NewsroomError):
    """Raised when a required server setting is missing."""
    pass


class PollerError(NewsroomError):
    """Base class for failures seen by the client poller."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ClientError(PollerError):
    """4xx response other than refresh-in-progress. Never retried."""
    pass


class ServerError(PollerError):
    """5xx response. Retried with exponential backoff."""
    pass


class NetworkError(PollerError):
    """Connection, timeout or decoding failure. Retried with exponential backoff."""
    pass
