# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import os
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio

from portfolio_core.cache import TTLCache
from portfolio_core.config import Settings
from portfolio_core.data import InMemoryRemote
from portfolio_core.offline import ConnectionMonitor, FallbackRouter, LocalDatabase, Scheduler
from portfolio_core.services import RequestExecutor
from portfolio_core.services.orchestrator import build_orchestrator


# =============================================================================
# TIME FIXTURES
# =============================================================================

class FakeClock:
    """Manually advanced clock usable as wall time, Unix time or monotonic time"""

    def __init__(self, start=None):
        self.current = start or datetime.now().replace(microsecond=0)

    def now(self):
        return self.current

    def time(self):
        return self.current.timestamp()

    def advance(self, seconds):
        self.current += timedelta(seconds=seconds)


class SleepRecorder:
    """Stand-in for asyncio.sleep that returns at once and remembers delays"""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def no_sleep():
    return SleepRecorder()


# =============================================================================
# STORAGE / REMOTE FIXTURES
# =============================================================================

@pytest.fixture
def remote():
    """Reachable in-process backend"""
    return InMemoryRemote()


@pytest.fixture
def local_db():
    """Initialized in-memory SQLite store"""
    db = LocalDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def cache():
    return TTLCache(default_ttl=300)


@pytest.fixture
def clean_env(monkeypatch):
    """Process environment without any SUPABASE_* / PORTFOLIO_* variables"""
    environ = {
        key: value for key, value in os.environ.items()
        if not key.startswith(("SUPABASE_", "PORTFOLIO_"))
    }
    monkeypatch.setattr(os, "environ", environ)
    return environ


# =============================================================================
# RESILIENCE LAYER FIXTURES
# =============================================================================

@pytest.fixture
def executor(no_sleep):
    """Executor with three attempts and no real backoff waits"""
    return RequestExecutor(timeout=1.0, max_retries=3, backoff_base=1.0, backoff_max=10.0, sleep=no_sleep)


@pytest.fixture
def monitor(remote):
    """Monitor probing the in-memory remote; starts offline, no scheduler"""
    return ConnectionMonitor(probe=remote.ping, probe_timeout=1.0, failure_threshold=3)


@pytest_asyncio.fixture
async def router(monitor, executor, cache, local_db, remote, clock):
    """Initialized router wired to the in-memory remote"""
    router = FallbackRouter(
        monitor=monitor,
        executor=executor,
        cache=cache,
        local_db=local_db,
        remote=remote,
        freshness_window=900,
        max_replay_attempts=5,
        now=clock.now,
    )
    await router.initialize()
    yield router
    await router.close()


@pytest.fixture
def settings(tmp_path):
    """Fast settings for end-to-end tests"""
    return Settings(
        local_db_path=Path(tmp_path) / "portfolio.db",
        request_timeout=1.0,
        max_retries=2,
        backoff_base=0.01,
        backoff_max=0.02,
        probe_timeout=1.0,
        history_size=20,
    )


@pytest_asyncio.fixture
async def orchestrator(settings, remote):
    """Orchestrator over the in-memory remote; subsystems initialized, no background jobs"""
    orchestrator = build_orchestrator(
        settings,
        remote=remote,
        local_db=LocalDatabase(":memory:"),
        scheduler=Scheduler(),
    )
    await orchestrator.router.initialize()
    yield orchestrator
    await orchestrator.shutdown()

