"""
In-memory stand-ins for the durable store and the FPL API.

``FakeTableStore`` mirrors the ``SupabaseClient`` primitives closely enough
to exercise the repositories: every call yields to the event loop before
touching rows (so concurrent callers interleave as they would over the
network), conditional updates are atomic, and the one-active-job-per-league
partial unique index is enforced on insert.
"""

import asyncio
import copy
from collections import defaultdict
from typing import Any, Dict, List, Optional

import httpx

from api.services import build_services
from config import Config
from database.supabase_client import DuplicateRowError, StoreUnavailableError
from fpl_api.client import FPLAPINotFoundError
from utils.metrics import InMemoryMetrics

ACTIVE_JOB_STATUSES = {"pending", "running"}


def _matches(row: Dict[str, Any], filters) -> bool:
    for column, op, value in filters:
        actual = row.get(column)
        if op == "eq" and actual != value:
            return False
        if op == "neq" and actual == value:
            return False
        if op == "in" and actual not in value:
            return False
        if op == "is" and actual is not value:
            return False
        if op in ("gt", "gte", "lt", "lte"):
            if actual is None:
                return False
            if op == "gt" and not actual > value:
                return False
            if op == "gte" and not actual >= value:
                return False
            if op == "lt" and not actual < value:
                return False
            if op == "lte" and not actual <= value:
                return False
    return True


def _project(row: Dict[str, Any], columns: str) -> Dict[str, Any]:
    if columns.strip() == "*":
        return copy.deepcopy(row)
    names = [c.strip() for c in columns.split(",") if c.strip()]
    return {name: copy.deepcopy(row.get(name)) for name in names}


class FakeTableStore:
    """PostgREST-like tables kept in memory."""

    def __init__(self, configured: bool = True):
        self.configured = configured
        self.tables: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.fail = False
        self.calls: List[tuple] = []
        self._ids: Dict[str, int] = defaultdict(int)
        self.rate_limit_hits: Dict[tuple, int] = defaultdict(int)

    async def _enter(self, action: str, table: str):
        self.calls.append((action, table))
        await asyncio.sleep(0)
        if self.fail:
            raise StoreUnavailableError(f"{action} on {table} failed: store offline")

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables[table]

    def seed(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(row)
        if "id" not in row:
            self._ids[table] += 1
            row["id"] = self._ids[table]
        else:
            self._ids[table] = max(self._ids[table], row["id"])
        self.tables[table].append(row)
        return row

    def _check_unique(self, table: str, row: Dict[str, Any]):
        """Mirrors league_backfill_jobs_one_active_idx from backend/sql/schema.sql."""
        if table != "league_backfill_jobs" or row.get("status") not in ACTIVE_JOB_STATUSES:
            return
        for existing in self.tables[table]:
            if existing is row:
                continue
            if existing.get("league_id") == row.get("league_id") and existing.get("status") in ACTIVE_JOB_STATUSES:
                raise DuplicateRowError("duplicate key value violates unique constraint")

    async def select(self, table, columns="*", filters=(), order=(), limit=None):
        await self._enter("select", table)
        rows = [r for r in self.tables[table] if _matches(r, filters)]
        for column, desc in reversed(list(order)):
            rows.sort(key=lambda r: (r.get(column) is None, r.get(column)), reverse=desc)
        if limit is not None:
            rows = rows[:limit]
        return [_project(r, columns) for r in rows]

    async def insert(self, table, rows):
        await self._enter("insert", table)
        inserted = []
        for row in rows:
            self._check_unique(table, row)
            inserted.append(copy.deepcopy(self.seed(table, row)))
        return inserted

    async def upsert(self, table, rows, on_conflict, ignore_duplicates=False):
        await self._enter("upsert", table)
        keys = [k.strip() for k in on_conflict.split(",")]
        written = []
        for row in rows:
            existing = next(
                (r for r in self.tables[table] if all(r.get(k) == row.get(k) for k in keys)),
                None,
            )
            if existing is None:
                written.append(copy.deepcopy(self.seed(table, copy.deepcopy(row))))
            elif not ignore_duplicates:
                existing.update(copy.deepcopy(row))
                written.append(copy.deepcopy(existing))
        return written

    async def update(self, table, values, filters):
        await self._enter("update", table)
        updated = []
        for row in self.tables[table]:
            if _matches(row, filters):
                row.update(copy.deepcopy(values))
                updated.append(copy.deepcopy(row))
        return updated

    async def delete(self, table, filters):
        await self._enter("delete", table)
        kept, deleted = [], []
        for row in self.tables[table]:
            (deleted if _matches(row, filters) else kept).append(row)
        self.tables[table] = kept
        return deleted

    async def rpc(self, function_name, params):
        await self._enter("rpc", function_name)
        if function_name != "check_request_rate_limit":
            raise StoreUnavailableError(f"unknown function {function_name}")
        key = (params["p_scope"], params["p_identifier"])
        self.rate_limit_hits[key] += 1
        allowed = self.rate_limit_hits[key] <= params["p_max_requests"]
        return [{
            "allowed": allowed,
            "retry_after_seconds": 0 if allowed else params["p_window_seconds"],
        }]


class FakeFPLClient:
    """Canned FPL API responses keyed by entry / gameweek / league."""

    def __init__(self, current_gw: int = 1, names: Optional[Dict[int, str]] = None):
        self.current_gw = current_gw
        self.names = names or {}
        self.live: Dict[int, Dict[int, int]] = {}
        self.picks: Dict[tuple, Dict[str, Any]] = {}
        self.transfers: Dict[int, List[Dict[str, Any]]] = {}
        self.chips: Dict[int, List[Dict[str, Any]]] = {}
        self.leagues: Dict[int, Dict[str, Any]] = {}
        self.broken_leagues = set()
        self.calls: Dict[str, int] = defaultdict(int)

    def add_league(self, league_id: int, name: str, entries: List[Dict[str, Any]], has_next: bool = False):
        self.leagues[league_id] = {
            "league": {"id": league_id, "name": name},
            "standings": {"has_next": has_next, "results": entries},
        }

    def set_picks(self, entry: int, gw: int, picks: List[Dict[str, Any]], **history):
        self.picks[(entry, gw)] = {"picks": picks, "entry_history": {"event": gw, **history}}

    async def get_player_names(self) -> Dict[int, str]:
        self.calls["names"] += 1
        return dict(self.names)

    async def get_current_gameweek(self) -> int:
        self.calls["current_gw"] += 1
        return self.current_gw

    async def get_event_live(self, gameweek: int) -> Dict[int, int]:
        self.calls["live"] += 1
        return dict(self.live.get(gameweek, {}))

    async def get_entry_picks(self, manager_id: int, gameweek: int):
        self.calls["picks"] += 1
        await asyncio.sleep(0)
        return copy.deepcopy(self.picks.get((manager_id, gameweek)))

    async def get_entry_transfers(self, manager_id: int):
        self.calls["transfers"] += 1
        return copy.deepcopy(self.transfers.get(manager_id, []))

    async def get_entry_chips(self, manager_id: int):
        self.calls["chips"] += 1
        return copy.deepcopy(self.chips.get(manager_id, []))

    async def get_league_standings(self, league_id: int, event=None, page: int = 1):
        self.calls["standings"] += 1
        if league_id in self.broken_leagues:
            return None
        if league_id not in self.leagues:
            raise FPLAPINotFoundError(f"Not found: leagues-classic/{league_id}/standings/", status_code=404)
        return copy.deepcopy(self.leagues[league_id])

    async def close(self):
        return None


def make_config(**overrides) -> Config:
    """Config for tests: store and auth configured, no secrets, no throttling."""
    values = {
        "environment": "test",
        "supabase_url": "https://project.supabase.co",
        "supabase_key": "anon-key",
        "supabase_service_key": "service-key",
        "auth_refresh_retry_delay": 0.0,
        "metrics_enabled": True,
        "slack_webhook_url": None,
        "backfill_runner_secret": None,
        "cron_secret": None,
        "live_refresh_secret": None,
        "max_requests_per_minute": 0,
    }
    values.update(overrides)
    return Config(**values)


class RecordingHTTP:
    """MockTransport handler answering 200 and recording every request."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={})

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]


def reject_auth(request: httpx.Request) -> httpx.Response:
    return httpx.Response(401, json={"msg": "invalid JWT"})


def build_test_services(
    config: Optional[Config] = None,
    store: Optional[FakeTableStore] = None,
    fpl: Optional[FakeFPLClient] = None,
    auth_handler=None,
    http_handler=None,
):
    """Service container wired to in-memory fakes and mock HTTP transports."""
    return build_services(
        config or make_config(),
        store=store if store is not None else FakeTableStore(),
        fpl_client=fpl if fpl is not None else FakeFPLClient(current_gw=5),
        auth_transport=httpx.MockTransport(auth_handler or reject_auth),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(http_handler or RecordingHTTP())),
        metrics=InMemoryMetrics(),
    )
