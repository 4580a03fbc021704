"""
Tests for the durable league cache
==================================

Serving policy, write-back flags, range reads and purge.
"""

from datetime import datetime, timedelta, timezone

import pytest

from cache.league_cache import (
    VIEW_ACTIVITY_IMPACT,
    VIEW_CHIPS,
    VIEW_LEAGUE,
    CacheDecision,
    CachedEntry,
    LeagueCacheStore,
    decide_cache_use,
    is_locked_gameweek,
    needs_repair,
    parse_timestamp,
)
from database.repositories import CachePayloadRepository, UserLeagueRepository
from fakes import FakeTableStore

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def entry(age_seconds: float, is_final: bool = False, payload=None) -> CachedEntry:
    return CachedEntry(
        payload=payload if payload is not None else {"standings": []},
        fetched_at=NOW - timedelta(seconds=age_seconds),
        is_final=is_final,
    )


# =============================================================================
# POLICY
# =============================================================================

def test_locked_gameweek_rules():
    assert is_locked_gameweek(4, 5)
    assert not is_locked_gameweek(5, 5)
    assert not is_locked_gameweek(6, 5)


def test_needs_repair_only_for_triple_captain_without_name():
    assert needs_repair(VIEW_CHIPS, [{"chip": "3xc", "chipCaptainName": None}])
    assert needs_repair(VIEW_ACTIVITY_IMPACT, [{"chip": "3xc", "chipCaptainName": "  "}])
    assert not needs_repair(VIEW_CHIPS, [{"chip": "3xc", "chipCaptainName": "Salah"}])
    assert not needs_repair(VIEW_CHIPS, [{"chip": "bboost", "chipCaptainName": None}])
    assert not needs_repair(VIEW_LEAGUE, [{"chip": "3xc", "chipCaptainName": None}])


def test_missing_entry_is_a_miss():
    assert decide_cache_use(VIEW_LEAGUE, None, 5, 5, 60, now=NOW) is CacheDecision.MISS


def test_final_entry_served_regardless_of_age():
    decision = decide_cache_use(VIEW_LEAGUE, entry(10_000, is_final=True), 5, 5, 60, now=NOW)
    assert decision is CacheDecision.SERVE


def test_locked_gameweek_entry_is_finalized():
    decision = decide_cache_use(VIEW_LEAGUE, entry(10_000), 3, 5, 60, now=NOW)
    assert decision is CacheDecision.SERVE_AND_FINALIZE


def test_live_entry_served_within_ttl_only():
    assert decide_cache_use(VIEW_LEAGUE, entry(30), 5, 5, 60, now=NOW) is CacheDecision.SERVE
    assert decide_cache_use(VIEW_LEAGUE, entry(60), 5, 5, 60, now=NOW) is CacheDecision.MISS


def test_incomplete_chips_row_is_a_miss_even_when_final():
    payload = [{"team": "A", "manager": "a", "chip": "3xc", "chipCaptainName": None}]
    decision = decide_cache_use(VIEW_CHIPS, entry(1, is_final=True, payload=payload), 2, 5, 60, now=NOW)
    assert decision is CacheDecision.MISS


def test_parse_timestamp_handles_z_suffix_and_naive_values():
    assert parse_timestamp("2026-10-01T12:00:00Z") == NOW
    assert parse_timestamp("2026-10-01T12:00:00") == NOW
    assert parse_timestamp("not a date") is None
    assert parse_timestamp(None) is None


# =============================================================================
# STORE
# =============================================================================

@pytest.mark.asyncio
async def test_upsert_then_get_returns_equal_payload(cache: LeagueCacheStore):
    payload = {"standings": [{"entry": 1, "gwPlayers": [{"name": "Salah", "points": 12}]}], "stats": None}
    assert await cache.upsert(10, 3, VIEW_LEAGUE, payload, True)

    cached = await cache.get(10, 3, VIEW_LEAGUE)
    assert cached.payload == payload
    assert cached.is_final is True


@pytest.mark.asyncio
async def test_upsert_is_idempotent_per_key(cache: LeagueCacheStore, store: FakeTableStore):
    await cache.upsert(10, 3, VIEW_LEAGUE, {"v": 1}, False)
    first = (await cache.get(10, 3, VIEW_LEAGUE)).fetched_at
    await cache.upsert(10, 3, VIEW_LEAGUE, {"v": 2}, False)

    rows = store.rows("fpl_cache")
    assert len(rows) == 1
    second = await cache.get(10, 3, VIEW_LEAGUE)
    assert second.payload == {"v": 2}
    assert second.fetched_at >= first


@pytest.mark.asyncio
async def test_get_range_is_ascending_and_skips_gaps(cache: LeagueCacheStore):
    for gw in (4, 1, 2):
        await cache.upsert(10, gw, VIEW_LEAGUE, {"gw": gw}, True)
    await cache.upsert(11, 3, VIEW_LEAGUE, {"gw": 3}, True)

    entries = await cache.get_range(10, VIEW_LEAGUE, 1, 4)
    assert [e.gw for e in entries] == [1, 2, 4]
    assert await cache.get_range(10, VIEW_LEAGUE, 5, 4) == []


@pytest.mark.asyncio
async def test_latest_league_gw(cache: LeagueCacheStore):
    assert await cache.get_latest_league_gw() is None
    await cache.upsert(10, 2, VIEW_LEAGUE, {}, True)
    await cache.upsert(11, 4, VIEW_LEAGUE, {}, False)
    await cache.upsert(11, 9, VIEW_CHIPS, [], False)
    assert await cache.get_latest_league_gw() == {"gw": 4, "is_final": False}


@pytest.mark.asyncio
async def test_read_through_miss_computes_and_writes_back_locked_flag(cache, metrics, store):
    calls = []

    async def compute():
        calls.append(1)
        return {"standings": ["computed"]}

    payload = await cache.read_through(10, 3, VIEW_LEAGUE, 5, compute)
    assert payload == {"standings": ["computed"]}
    assert store.rows("fpl_cache")[0]["is_final"] is True

    again = await cache.read_through(10, 3, VIEW_LEAGUE, 5, compute)
    assert again == payload
    assert len(calls) == 1
    assert metrics.get("cache.league.miss") == 1
    assert metrics.get("cache.league.hit") == 1


@pytest.mark.asyncio
async def test_read_through_live_gameweek_written_as_not_final(cache, store):
    async def compute():
        return {"standings": []}

    await cache.read_through(10, 5, VIEW_LEAGUE, 5, compute)
    assert store.rows("fpl_cache")[0]["is_final"] is False


@pytest.mark.asyncio
async def test_activity_impact_for_current_gameweek_stays_live(cache, store):
    calls = []

    async def compute():
        calls.append(1)
        return [{"entryId": 1, "gwDecisionScore": len(calls)}]

    await cache.read_through(10, 5, VIEW_ACTIVITY_IMPACT, 5, compute)
    row = store.rows("fpl_cache")[0]
    assert row["is_final"] is False

    row["fetched_at"] = "2020-01-01T00:00:00+00:00"
    again = await cache.read_through(10, 5, VIEW_ACTIVITY_IMPACT, 5, compute)

    assert again == [{"entryId": 1, "gwDecisionScore": 2}]
    assert len(calls) == 2
    assert store.rows("fpl_cache")[0]["is_final"] is False


@pytest.mark.asyncio
async def test_read_through_finalizes_stale_locked_entry(cache, store):
    store.seed("fpl_cache", {
        "league_id": 10, "gw": 2, "view": VIEW_LEAGUE,
        "payload_json": {"old": True}, "is_final": False,
        "fetched_at": "2020-01-01T00:00:00+00:00",
    })

    async def compute():
        raise AssertionError("should be served from cache")

    assert await cache.read_through(10, 2, VIEW_LEAGUE, 5, compute) == {"old": True}
    assert store.rows("fpl_cache")[0]["is_final"] is True


@pytest.mark.asyncio
async def test_read_through_repairs_incomplete_triple_captain_row(cache, store):
    store.seed("fpl_cache", {
        "league_id": 10, "gw": 2, "view": VIEW_CHIPS,
        "payload_json": [{"chip": "3xc", "chipCaptainName": None}], "is_final": True,
        "fetched_at": datetime.now(timezone.utc).isoformat(),
    })
    repaired = [{"chip": "3xc", "chipCaptainName": "Salah"}]

    async def compute():
        return repaired

    assert await cache.read_through(10, 2, VIEW_CHIPS, 5, compute) == repaired
    assert store.rows("fpl_cache")[0]["payload_json"] == repaired


@pytest.mark.asyncio
async def test_compute_errors_propagate_without_writing(cache, store):
    async def compute():
        raise RuntimeError("upstream exploded")

    with pytest.raises(RuntimeError):
        await cache.read_through(10, 3, VIEW_LEAGUE, 5, compute)
    assert store.rows("fpl_cache") == []


@pytest.mark.asyncio
async def test_unavailable_store_falls_back_to_compute(metrics):
    store = FakeTableStore()
    store.fail = True
    cache = LeagueCacheStore(CachePayloadRepository(store, metrics), metrics=metrics)

    async def compute():
        return {"live": True}

    assert await cache.read_through(10, 3, VIEW_LEAGUE, 5, compute) == {"live": True}
    assert await cache.get(10, 3, VIEW_LEAGUE) is None
    assert not await cache.upsert(10, 3, VIEW_LEAGUE, {}, True)


@pytest.mark.asyncio
async def test_unconfigured_store_is_disabled(metrics):
    cache = LeagueCacheStore(CachePayloadRepository(FakeTableStore(configured=False), metrics))
    assert not cache.enabled

    async def compute():
        return [1]

    assert await cache.read_through(10, 3, VIEW_LEAGUE, 5, compute) == [1]


@pytest.mark.asyncio
async def test_purge_only_when_unreferenced(cache, store):
    await cache.upsert(10, 1, VIEW_LEAGUE, {}, True)
    store.seed("user_leagues", {"user_id": "u1", "league_id": 10, "league_name": "A"})

    assert not await cache.purge_if_unreferenced(10)
    assert len(store.rows("fpl_cache")) == 1

    store.tables["user_leagues"].clear()
    assert await cache.purge_if_unreferenced(10)
    assert store.rows("fpl_cache") == []
