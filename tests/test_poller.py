"""
Tests for the homepage client: failure classification, retries and status polling.
"""
from unittest.mock import MagicMock, patch

import pytest
import requests

from newsroom.client import (
    ClientPoller,
    PollEvent,
    PollMode,
    PollerConfig,
    RetryKind,
    classify_failure,
    retry_delay,
)
from newsroom.client.poller import next_mode
from newsroom.exceptions import ClientError, NetworkError, RefreshInProgress, ServerError


def make_response(status=200, body=None, headers=None):
    response = MagicMock(spec=requests.Response)
    response.status_code = status
    response.ok = status < 400
    response.reason = "Error" if status >= 400 else "OK"
    response.headers = headers or {}
    response.json.return_value = body if body is not None else {}
    return response


REFRESHING = make_response(503, {"error": "Data is being refreshed", "refreshing": True, "retryAfter": 10})
HOMEPAGE = make_response(200, {"storyClusters": [], "fromCache": True, "cacheAge": 42})


class FakeTimer:
    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True


@pytest.fixture(autouse=True)
def no_jitter():
    with patch("newsroom.client.backoff.random.random", return_value=0.5):
        yield


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def timers():
    return []


@pytest.fixture
def poller(session, sleeps, timers):
    def timer_factory(interval, function):
        timer = FakeTimer(interval, function)
        timers.append(timer)
        return timer

    return ClientPoller(
        "http://testserver/",
        session=session,
        config=PollerConfig(),
        enabled=True,
        sleep=sleeps.append,
        timer_factory=timer_factory,
    )


# =============================================================================
# Classification
# =============================================================================

def test_failures_are_classified_by_kind():
    assert classify_failure(RefreshInProgress()) == RetryKind.REFRESHING
    assert classify_failure(ClientError("nope", status_code=404)) == RetryKind.NON_RETRIABLE
    assert classify_failure(ServerError("oops", status_code=500)) == RetryKind.BACKOFF
    assert classify_failure(NetworkError("offline")) == RetryKind.BACKOFF


def test_refreshing_retries_use_fixed_spacing():
    assert [retry_delay(RetryKind.REFRESHING, a) for a in range(1, 7)] == [10000] * 5 + [None]


def test_backoff_retries_double_up_to_budget():
    assert [retry_delay(RetryKind.BACKOFF, a) for a in range(1, 5)] == [1000, 2000, 4000, None]


def test_client_errors_are_never_retried():
    assert retry_delay(RetryKind.NON_RETRIABLE, 1) is None


def test_backoff_respects_cap():
    config = PollerConfig(retry_base_ms=20000, retry_max_ms=30000, retry_max_attempts=3)
    assert retry_delay(RetryKind.BACKOFF, 3, config) == 30000


def test_every_mode_returns_to_idle_on_success():
    for mode in PollMode:
        assert next_mode(mode, PollEvent.SUCCESS) == PollMode.IDLE
        assert next_mode(mode, PollEvent.EXHAUSTED) == PollMode.FAILED


# =============================================================================
# Response mapping
# =============================================================================

def test_refreshing_503_carries_retry_after(poller, session):
    session.get.return_value = make_response(503, {"refreshing": True, "retryAfter": 15})

    with pytest.raises(RefreshInProgress) as exc_info:
        poller.fetch_homepage()

    assert exc_info.value.retry_after == 15


def test_retry_after_header_used_when_body_lacks_it(poller, session):
    session.get.return_value = make_response(503, {"refreshing": True}, headers={"Retry-After": "20"})

    with pytest.raises(RefreshInProgress) as exc_info:
        poller.fetch_homepage()

    assert exc_info.value.retry_after == 20


def test_plain_503_is_a_server_error(poller, session):
    session.get.return_value = make_response(503, {"error": "Service unavailable"})

    with pytest.raises(ServerError) as exc_info:
        poller.fetch_homepage()

    assert exc_info.value.status_code == 503


def test_invalid_json_is_a_network_error(poller, session):
    response = make_response(200)
    response.json.side_effect = ValueError("no json")
    session.get.return_value = response

    with pytest.raises(NetworkError):
        poller.fetch_homepage()


def test_requests_hit_api_paths_without_cache(poller, session):
    session.get.return_value = HOMEPAGE

    poller.fetch_homepage()

    args, kwargs = session.get.call_args
    assert args[0] == "http://testserver/api/homepage"
    assert kwargs["headers"] == {"Cache-Control": "no-cache"}


# =============================================================================
# load_homepage retries
# =============================================================================

def test_refreshing_then_success(poller, session, sleeps):
    session.get.side_effect = [REFRESHING, REFRESHING, HOMEPAGE]

    data = poller.load_homepage()

    assert data["cacheAge"] == 42
    assert sleeps == [10.0, 10.0]
    assert poller.state.mode == PollMode.IDLE
    assert poller.state.attempt_count == 0
    assert poller.state.cache_age_minutes == 42
    modes = [to for _, _, to in poller.state.history]
    assert modes == [PollMode.FIXED_RETRY, PollMode.FIXED_RETRY, PollMode.IDLE]


def test_refreshing_gives_up_after_five_retries(poller, session, sleeps):
    session.get.return_value = REFRESHING

    with pytest.raises(RefreshInProgress):
        poller.load_homepage()

    assert sleeps == [10.0] * 5
    assert session.get.call_count == 6
    assert poller.state.mode == PollMode.FAILED
    assert poller.state.last_error == RetryKind.REFRESHING


def test_client_error_surfaces_immediately(poller, session, sleeps):
    session.get.return_value = make_response(404, {"error": "Not found"})

    with pytest.raises(ClientError):
        poller.load_homepage()

    assert sleeps == []
    assert session.get.call_count == 1
    assert poller.state.mode == PollMode.FAILED
    assert poller.state.last_error == RetryKind.NON_RETRIABLE


def test_network_errors_back_off_exponentially(poller, session, sleeps):
    session.get.side_effect = requests.ConnectionError("connection refused")

    with pytest.raises(NetworkError):
        poller.load_homepage()

    assert sleeps == [1.0, 2.0, 4.0]
    assert session.get.call_count == 4
    assert poller.state.mode == PollMode.FAILED
    assert poller.state.attempt_count == 4


def test_server_error_recovers(poller, session, sleeps):
    session.get.side_effect = [make_response(500, {"error": "boom"}), HOMEPAGE]

    assert poller.load_homepage()["fromCache"] is True
    assert sleeps == [1.0]
    assert poller.state.last_error is None


def test_retry_spacing_is_jittered():
    with patch("newsroom.client.backoff.random.random", return_value=1.0):
        session = MagicMock(spec=requests.Session)
        session.get.side_effect = [REFRESHING, HOMEPAGE]
        sleeps = []
        poller = ClientPoller("http://testserver", session=session, config=PollerConfig(), sleep=sleeps.append)

        poller.load_homepage()

    assert sleeps == [11.0]


# =============================================================================
# Status polling
# =============================================================================

def test_status_interval_while_refreshing(poller):
    assert poller.next_status_interval({"status": "refreshing"}) == 2000
    poller.set_enabled(False)
    assert poller.next_status_interval({"status": "refreshing"}) == 10000


def test_status_interval_on_error(poller):
    assert poller.next_status_interval({"status": "error"}) == 10000
    poller.set_enabled(False)
    assert poller.next_status_interval({"status": "error"}) == 120000


def test_status_interval_when_idle_follows_cache_age(poller):
    assert poller.next_status_interval({"status": "idle", "cacheAge": 400}) == 30000
    assert poller.next_status_interval({"status": "idle", "cacheAge": 2}) is None


def test_status_interval_backs_off_without_data(poller):
    assert poller.next_status_interval(None) == 5000
    poller.state.status_failures = 3
    assert poller.next_status_interval(None) == 20000
    poller.state.status_failures = 10
    assert poller.next_status_interval(None) == 60000

    poller.set_enabled(False)
    assert poller.state.status_failures == 0
    assert poller.next_status_interval(None) == 10000


def test_status_without_cache_age_keeps_polling(poller):
    # What an empty store reports before the first homepage exists
    empty = {"status": "idle", "stage": "idle", "progress": 100, "lastUpdate": None,
             "timestamp": 1.0, "justCompleted": False}

    assert poller.next_status_interval(empty) == 5000
    poller.set_enabled(False)
    assert poller.next_status_interval(empty) == 10000


def test_polls_back_off_until_first_homepage_lands(poller, session, timers):
    empty = make_response(200, {"status": "idle", "stage": "idle", "progress": 100, "lastUpdate": None})
    session.get.return_value = empty
    poller.start()

    timers[0].function()
    timers[1].function()

    assert [t.interval for t in timers] == [0, 5.0, 10.0]
    assert poller.state.status_failures == 2


def test_status_intervals_honor_configured_floor(session):
    config = PollerConfig(floor_ms=45000)
    poller = ClientPoller("http://testserver", session=session, config=config)

    assert poller.next_status_interval(None) == 45000
    assert poller.next_status_interval({"status": "idle", "cacheAge": 400}) == 45000


def test_status_failure_counts_and_backs_off(poller, session):
    session.get.side_effect = requests.Timeout("slow")

    assert poller.poll_status() == 5000
    assert poller.poll_status() == 10000
    assert poller.state.status_failures == 2


def test_completion_callback_fires_once_per_refresh(session, sleeps):
    completed = MagicMock()
    poller = ClientPoller(
        "http://testserver",
        session=session,
        config=PollerConfig(),
        on_refresh_complete=completed,
        sleep=sleeps.append,
    )
    first = make_response(200, {"status": "idle", "justCompleted": True, "timestamp": 100.0, "cacheAge": 0})
    second = make_response(200, {"status": "idle", "justCompleted": True, "timestamp": 200.0, "cacheAge": 0})
    session.get.side_effect = [first, first, second]

    poller.poll_status()
    poller.poll_status()
    poller.poll_status()

    assert completed.call_count == 2


def test_completion_reloads_homepage_by_default(poller, session):
    status = make_response(200, {"status": "idle", "justCompleted": True, "timestamp": 100.0, "cacheAge": 0})
    session.get.side_effect = [status, HOMEPAGE]

    poller.poll_status()

    assert poller.homepage["cacheAge"] == 42
    assert session.get.call_args_list[1].args[0] == "http://testserver/api/homepage"


def test_failed_reload_after_completion_is_logged_not_raised(poller, session):
    status = make_response(200, {"status": "idle", "justCompleted": True, "timestamp": 100.0, "cacheAge": 0})
    session.get.side_effect = [status, make_response(404, {"error": "gone"})]

    assert poller.poll_status() is None


def test_homepage_refetch_interval_depends_on_age(poller):
    poller.homepage = {"lastUpdated": "2024-01-01T00:00:00Z"}
    start = 1704067200.0  # 2024-01-01T00:00:00Z

    assert poller.homepage_refetch_interval(start + 2 * 3600) is None
    assert poller.homepage_refetch_interval(start + 8 * 3600) == 60 * 60 * 1000
    assert poller.homepage_refetch_interval(start + 13 * 3600) == 30 * 60 * 1000


# =============================================================================
# Timer lifecycle
# =============================================================================

def test_start_polls_immediately_then_reschedules(poller, session, timers):
    session.get.return_value = make_response(200, {"status": "refreshing", "stage": "Fetching", "progress": 10})

    poller.start()

    assert timers[0].interval == 0
    assert timers[0].daemon is True
    assert timers[0].started

    timers[0].function()

    assert timers[1].interval == 2.0
    assert poller.running


def test_only_one_timer_pending_at_a_time(poller, timers):
    poller.start()
    poller.refocus()
    poller.reconnect()

    assert [t.cancelled for t in timers] == [True, True, False]


def test_no_timer_when_data_is_fresh(poller, session, timers):
    session.get.return_value = make_response(200, {"status": "idle", "cacheAge": 1})
    poller.start()

    timers[0].function()

    assert len(timers) == 1


def test_aging_homepage_is_refetched_on_a_timer(poller, session, timers):
    poller.homepage = {"lastUpdated": "2024-01-01T00:00:00Z"}

    poller.start()

    refetch = timers[1]
    assert refetch.interval == 30 * 60
    assert refetch.daemon is True

    session.get.return_value = HOMEPAGE
    refetch.function()

    assert session.get.call_args.args[0] == "http://testserver/api/homepage"
    assert poller.homepage["cacheAge"] == 42


def test_failed_refetch_is_rescheduled(poller, session, timers):
    poller.homepage = {"lastUpdated": "2024-01-01T00:00:00Z"}
    poller.start()
    session.get.return_value = make_response(404, {"error": "gone"})

    timers[1].function()

    assert timers[1].cancelled
    assert timers[-1].function == poller._refetch_tick
    assert timers[-1].interval == 30 * 60


def test_stop_cancels_pending_refetch(poller, timers):
    poller.homepage = {"lastUpdated": "2024-01-01T00:00:00Z"}
    poller.start()

    poller.stop()

    assert all(t.cancelled for t in timers)


def test_stop_cancels_pending_poll(poller, session, timers):
    poller.start()
    poller.stop()

    assert timers[0].cancelled
    assert not poller.running

    timers[0].function()
    session.get.assert_not_called()
    poller.refocus()
    assert len(timers) == 1
