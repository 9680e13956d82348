"""
Shared fixtures: a controllable clock, in-memory store and fake pipelines.
"""
import threading

import pytest

from config.settings import Settings
from newsroom.cache import HomepageData, MemoryCacheStore, RefreshCoordinator
from newsroom.cache.core import STAGE_FETCHING, STAGE_FINALIZING, STAGE_SUMMARIZING


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ImmediateExecutor:
    """Runs submitted work inline so background refreshes are deterministic."""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        fn(*args, **kwargs)

    def shutdown(self, wait: bool = True):
        pass


class DeferredExecutor:
    """Collects submitted work; tests decide when it runs."""

    def __init__(self):
        self.pending = []

    def submit(self, fn, *args, **kwargs):
        self.pending.append((fn, args, kwargs))

    def run_all(self):
        pending, self.pending = self.pending, []
        for fn, args, kwargs in pending:
            fn(*args, **kwargs)

    def shutdown(self, wait: bool = True):
        pass


class FakePipeline:
    """Walks through the real stage names and returns canned homepage data."""

    def __init__(self, data: HomepageData = None, error: Exception = None):
        self.data = data or HomepageData(
            story_clusters=[{"clusterTitle": "Test Cluster", "articleIds": ["1", "2"]}],
            unclustered_articles=[{"id": "3", "title": "Loose article"}],
            topics=["tech"],
        )
        self.error = error
        self.calls = 0
        self.progress_seen = []
        self._lock = threading.Lock()

    def generate(self, on_progress):
        with self._lock:
            self.calls += 1
        on_progress(STAGE_FETCHING, 10)
        self.progress_seen.append((STAGE_FETCHING, 10))
        if self.error is not None:
            raise self.error
        on_progress(STAGE_SUMMARIZING, 50)
        on_progress(STAGE_SUMMARIZING, 70)
        on_progress(STAGE_FINALIZING, 95)
        return self.data


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    return Settings(
        app_env="test",
        cache_prefix="test:",
        staleness_threshold_seconds=6 * 60 * 60,
        refresh_lock_ttl_seconds=600,
        refresh_status_ttl_seconds=180,
        cache_ttl_seconds=43200,
        degraded_cache_ttl_seconds=300,
        retry_after_seconds=10,
    )


@pytest.fixture
def store(clock):
    return MemoryCacheStore(prefix="test:", clock=clock)


@pytest.fixture
def pipeline():
    return FakePipeline()


@pytest.fixture
def executor():
    return ImmediateExecutor()


@pytest.fixture
def coordinator(store, pipeline, test_settings, clock, executor):
    return RefreshCoordinator(
        store,
        pipeline=pipeline,
        settings=test_settings,
        clock=clock,
        executor=executor,
    )
