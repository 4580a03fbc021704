"""
Pytest Configuration and Fixtures
=================================

Shared fixtures: a test Config, the in-memory table store, a fake FPL
client and repositories/services built on them.
"""

import pytest

from cache.league_cache import LeagueCacheStore
from config import Config
from database.repositories import (
    BackfillJobRepository,
    CachePayloadRepository,
    UserLeagueRepository,
)
from fakes import FakeFPLClient, FakeTableStore, make_config
from jobs.backfill_queue import BackfillJobQueue
from utils.metrics import InMemoryMetrics


@pytest.fixture
def config() -> Config:
    return make_config()


@pytest.fixture
def store() -> FakeTableStore:
    return FakeTableStore()


@pytest.fixture
def metrics() -> InMemoryMetrics:
    return InMemoryMetrics()


@pytest.fixture
def fpl() -> FakeFPLClient:
    return FakeFPLClient(current_gw=5, names={1: "Salah", 2: "Haaland", 3: "Saka", 4: "Palmer", 5: "Raya"})


@pytest.fixture
def cache(store, metrics) -> LeagueCacheStore:
    return LeagueCacheStore(
        CachePayloadRepository(store, metrics),
        UserLeagueRepository(store, metrics),
        metrics,
        ttl_seconds=60,
    )


@pytest.fixture
def queue(store, metrics) -> BackfillJobQueue:
    return BackfillJobQueue(BackfillJobRepository(store, metrics), metrics)
