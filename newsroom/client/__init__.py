"""
Client-side polling, retry classification and backoff for the homepage API.
"""
from .backoff import (
    IdleTiers,
    apply_jitter,
    compute_backoff,
    get_backoff_interval,
    get_data_refetch_interval,
    get_idle_interval,
)
from .poller import (
    ClientPoller,
    PollEvent,
    PollMode,
    PollerConfig,
    PollingState,
    RetryKind,
    classify_failure,
    retry_delay,
)

__all__ = [
    "IdleTiers",
    "apply_jitter",
    "compute_backoff",
    "get_backoff_interval",
    "get_data_refetch_interval",
    "get_idle_interval",
    "ClientPoller",
    "PollEvent",
    "PollMode",
    "PollerConfig",
    "PollingState",
    "RetryKind",
    "classify_failure",
    "retry_delay",
]
