"""
Table repositories.

One repository per entity, each built on a table store exposing the
``SupabaseClient`` primitives (select / insert / upsert / update / delete /
rpc). A missing store or a failed request is logged and reported as a miss
or no-op; nothing here raises ``StoreUnavailableError`` to callers.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from database.supabase_client import DuplicateRowError, StoreUnavailableError
from utils.metrics import MetricsSink, NoopMetrics

logger = logging.getLogger(__name__)

CACHE_TABLE = "fpl_cache"
JOBS_TABLE = "league_backfill_jobs"
USER_LEAGUES_TABLE = "user_leagues"
RATE_LIMITS_TABLE = "request_rate_limits"

JOB_COLUMNS = "id, league_id, status, attempts, last_error, created_at, updated_at, started_at, finished_at"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _Repository:
    def __init__(self, store, metrics: Optional[MetricsSink] = None):
        self.store = store
        self.metrics = metrics or NoopMetrics()

    @property
    def available(self) -> bool:
        return self.store is not None and getattr(self.store, "configured", True)

    def _failed(self, metric: str, error: Exception, **meta: Any):
        self.metrics.observe(metric, success=False, error=str(error), **meta)
        logger.warning("Store operation failed", extra={"metric": metric, "error": str(error), **meta})


class CachePayloadRepository(_Repository):
    """Rows of ``fpl_cache`` keyed by (league_id, gw, view)."""

    async def fetch(self, league_id: int, gw: int, view: str) -> Optional[Dict[str, Any]]:
        if not self.available:
            return None
        try:
            rows = await self.store.select(
                CACHE_TABLE,
                "payload_json, fetched_at, is_final",
                filters=[("league_id", "eq", league_id), ("gw", "eq", gw), ("view", "eq", view)],
                limit=1,
            )
        except StoreUnavailableError as e:
            self._failed("cache.supabase.read", e, league_id=league_id, gw=gw, view=view)
            return None
        row = rows[0] if rows else None
        if not row or row.get("payload_json") is None:
            return None
        self.metrics.observe("cache.supabase.read", league_id=league_id, gw=gw, view=view,
                             success=True, hit=True, is_final=row.get("is_final"))
        return row

    async def fetch_range(self, league_id: int, view: str, from_gw: int, to_gw: int) -> List[Dict[str, Any]]:
        if not self.available:
            return []
        try:
            rows = await self.store.select(
                CACHE_TABLE,
                "gw, payload_json, fetched_at, is_final",
                filters=[
                    ("league_id", "eq", league_id),
                    ("view", "eq", view),
                    ("gw", "gte", from_gw),
                    ("gw", "lte", to_gw),
                ],
                order=[("gw", False)],
            )
        except StoreUnavailableError as e:
            self._failed("cache.supabase.read_range", e, league_id=league_id, from_gw=from_gw, to_gw=to_gw)
            return []
        self.metrics.observe("cache.supabase.read_range", league_id=league_id, from_gw=from_gw,
                             to_gw=to_gw, success=True, count=len(rows))
        return rows

    async def upsert(self, league_id: int, gw: int, view: str, payload: Any, is_final: bool) -> bool:
        if not self.available:
            return False
        now = utc_now_iso()
        row = {
            "league_id": league_id,
            "gw": gw,
            "view": view,
            "payload_json": payload,
            "is_final": is_final,
            "source_updated_at": now,
            "fetched_at": now,
        }
        try:
            await self.store.upsert(CACHE_TABLE, [row], on_conflict="league_id,gw,view")
        except StoreUnavailableError as e:
            self._failed("cache.supabase.write", e, league_id=league_id, gw=gw, view=view, is_final=is_final)
            return False
        self.metrics.observe("cache.supabase.write", league_id=league_id, gw=gw, view=view,
                             success=True, is_final=is_final)
        return True

    async def latest_gw(self, view: str = "league") -> Optional[Dict[str, Any]]:
        if not self.available:
            return None
        try:
            rows = await self.store.select(
                CACHE_TABLE,
                "gw, is_final",
                filters=[("view", "eq", view)],
                order=[("gw", True), ("fetched_at", True)],
                limit=1,
            )
        except StoreUnavailableError as e:
            self._failed("cache.supabase.latest_gw.read", e)
            return None
        return rows[0] if rows else None

    async def delete_league(self, league_id: int) -> bool:
        if not self.available:
            return False
        try:
            await self.store.delete(CACHE_TABLE, [("league_id", "eq", league_id)])
        except StoreUnavailableError as e:
            self._failed("cache.supabase.purge", e, league_id=league_id)
            return False
        return True


class BackfillJobRepository(_Repository):
    """Rows of ``league_backfill_jobs``."""

    async def find_active_for_league(self, league_id: int) -> Optional[List[Dict[str, Any]]]:
        """Pending/running rows for a league; None when the store cannot answer."""
        if not self.available:
            return None
        try:
            return await self.store.select(
                JOBS_TABLE,
                "id",
                filters=[("league_id", "eq", league_id), ("status", "in", ["pending", "running"])],
                limit=1,
            )
        except StoreUnavailableError as e:
            self._failed("backfill.job.enqueue", e, league_id=league_id)
            return None

    async def insert_pending(self, league_id: int) -> Optional[bool]:
        """True if inserted, None if the league already has an active job, False on failure."""
        if not self.available:
            return False
        now = utc_now_iso()
        try:
            await self.store.insert(JOBS_TABLE, [{
                "league_id": league_id,
                "status": "pending",
                "attempts": 0,
                "created_at": now,
                "updated_at": now,
            }])
        except DuplicateRowError:
            return None
        except StoreUnavailableError as e:
            self._failed("backfill.job.enqueue", e, league_id=league_id)
            return False
        return True

    async def oldest_pending(self) -> Optional[Dict[str, Any]]:
        if not self.available:
            return None
        try:
            rows = await self.store.select(
                JOBS_TABLE,
                "id, league_id, status, attempts",
                filters=[("status", "eq", "pending")],
                order=[("created_at", False), ("id", False)],
                limit=1,
            )
        except StoreUnavailableError as e:
            self._failed("backfill.job.claim", e)
            return None
        return rows[0] if rows else None

    async def mark_running_if_pending(self, job_id: int, attempts: int) -> Optional[Dict[str, Any]]:
        """Conditional update guarded on ``status=eq.pending``; None when the race is lost."""
        if not self.available:
            return None
        now = utc_now_iso()
        try:
            rows = await self.store.update(
                JOBS_TABLE,
                {
                    "status": "running",
                    "attempts": attempts,
                    "started_at": now,
                    "updated_at": now,
                    "last_error": None,
                },
                filters=[("id", "eq", job_id), ("status", "eq", "pending")],
            )
        except StoreUnavailableError as e:
            self._failed("backfill.job.claim", e, job_id=job_id)
            return None
        return rows[0] if rows else None

    async def mark_finished(self, job_id: int, status: str, last_error: Optional[str]) -> bool:
        if not self.available:
            return False
        now = utc_now_iso()
        try:
            await self.store.update(
                JOBS_TABLE,
                {"status": status, "finished_at": now, "updated_at": now, "last_error": last_error},
                filters=[("id", "eq", job_id)],
            )
        except StoreUnavailableError as e:
            self._failed("backfill.job.finalize", e, job_id=job_id, final_status=status)
            return False
        return True

    async def delete_active_for_league(self, league_id: int) -> bool:
        if not self.available:
            return False
        try:
            await self.store.delete(
                JOBS_TABLE,
                [("league_id", "eq", league_id), ("status", "in", ["pending", "running"])],
            )
        except StoreUnavailableError as e:
            self._failed("backfill.job.remove_pending", e, league_id=league_id)
            return False
        return True

    async def list_by_status(
        self,
        statuses: Sequence[str],
        league_ids: Optional[Sequence[int]] = None,
        limit: int = 1000,
    ) -> List[Dict[str, Any]]:
        if not self.available:
            return []
        filters = [("status", "in", list(statuses))]
        if league_ids is not None:
            filters.append(("league_id", "in", list(league_ids)))
        try:
            return await self.store.select(
                JOBS_TABLE,
                JOB_COLUMNS,
                filters=filters,
                order=[("updated_at", True)],
                limit=limit,
            )
        except StoreUnavailableError as e:
            self._failed("backfill.job.list", e)
            return []


class UserLeagueRepository(_Repository):
    """Rows of ``user_leagues`` (unique on user_id, league_id)."""

    async def list_for_user(self, user_id: str) -> Optional[List[Dict[str, Any]]]:
        if not self.available:
            return None
        try:
            return await self.store.select(
                USER_LEAGUES_TABLE,
                "league_id, league_name",
                filters=[("user_id", "eq", user_id)],
                order=[("created_at", False)],
            )
        except StoreUnavailableError as e:
            self._failed("user_leagues.read", e)
            return None

    async def add(self, user_id: str, league_id: int, league_name: str) -> Optional[bool]:
        """Insert ignoring duplicates; True if a row was created, None on failure."""
        if not self.available:
            return None
        try:
            rows = await self.store.upsert(
                USER_LEAGUES_TABLE,
                [{
                    "user_id": user_id,
                    "league_id": league_id,
                    "league_name": league_name,
                    "created_at": utc_now_iso(),
                }],
                on_conflict="user_id,league_id",
                ignore_duplicates=True,
            )
        except StoreUnavailableError as e:
            self._failed("user_leagues.add", e, league_id=league_id)
            return None
        return len(rows) > 0

    async def remove(self, user_id: str, league_id: int) -> Optional[bool]:
        """True if a row was deleted, False if none matched, None on failure."""
        if not self.available:
            return None
        try:
            rows = await self.store.delete(
                USER_LEAGUES_TABLE,
                [("user_id", "eq", user_id), ("league_id", "eq", league_id)],
            )
        except StoreUnavailableError as e:
            self._failed("user_leagues.remove", e, league_id=league_id)
            return None
        return len(rows) > 0

    async def rename(self, user_id: str, league_id: int, league_name: str) -> None:
        if not self.available:
            return
        try:
            await self.store.update(
                USER_LEAGUES_TABLE,
                {"league_name": league_name},
                filters=[("user_id", "eq", user_id), ("league_id", "eq", league_id)],
            )
        except StoreUnavailableError as e:
            self._failed("user_leagues.rename", e, league_id=league_id)

    async def add_many(self, user_id: str, leagues: Sequence[Tuple[int, str]]) -> Optional[int]:
        """Insert (league_id, league_name) rows ignoring existing ones; how many were created."""
        if not self.available:
            return None
        if not leagues:
            return 0
        now = utc_now_iso()
        rows = [
            {"user_id": user_id, "league_id": league_id, "league_name": name, "created_at": now}
            for league_id, name in leagues
        ]
        try:
            created = await self.store.upsert(
                USER_LEAGUES_TABLE, rows, on_conflict="user_id,league_id", ignore_duplicates=True
            )
        except StoreUnavailableError as e:
            self._failed("user_leagues.seed", e, league_count=len(rows))
            return None
        return len(created)

    async def list_distinct_league_ids(self) -> Optional[List[int]]:
        """Every league some user follows, ascending; None when the store cannot answer."""
        if not self.available:
            return None
        try:
            rows = await self.store.select(USER_LEAGUES_TABLE, "league_id", order=[("league_id", False)])
        except StoreUnavailableError as e:
            self._failed("user_leagues.read", e)
            return None
        league_ids: List[int] = []
        for row in rows:
            league_id = row.get("league_id")
            if isinstance(league_id, int) and league_id > 0 and league_id not in league_ids:
                league_ids.append(league_id)
        return league_ids

    async def is_referenced(self, league_id: int) -> Optional[bool]:
        """Whether any user still has the league; None when unknown."""
        if not self.available:
            return None
        try:
            rows = await self.store.select(
                USER_LEAGUES_TABLE,
                "league_id",
                filters=[("league_id", "eq", league_id)],
                limit=1,
            )
        except StoreUnavailableError as e:
            self._failed("user_leagues.read", e, league_id=league_id)
            return None
        return len(rows) > 0


class RateLimitRepository(_Repository):
    """Server-side atomic check-and-increment via ``check_request_rate_limit``."""

    async def check(self, scope: str, identifier: str, window_seconds: int, max_requests: int) -> Dict[str, Any]:
        allowed = {"allowed": True, "retry_after_seconds": 0}
        if not self.available:
            return allowed
        try:
            raw = await self.store.rpc("check_request_rate_limit", {
                "p_scope": scope,
                "p_identifier": identifier,
                "p_window_seconds": window_seconds,
                "p_max_requests": max_requests,
            })
        except StoreUnavailableError as e:
            self._failed("rate_limit.check", e, scope=scope)
            return allowed

        row = raw[0] if isinstance(raw, list) and raw else raw
        if not isinstance(row, dict) or not isinstance(row.get("allowed"), bool):
            return allowed

        retry_after = row.get("retry_after_seconds")
        if isinstance(retry_after, (int, float)) and retry_after > 0:
            retry_after = int(-(-retry_after // 1))
        else:
            retry_after = 0
        return {"allowed": row["allowed"], "retry_after_seconds": retry_after}

    async def delete_older_than(self, retention_hours: int) -> bool:
        """Drop counter rows not touched within ``retention_hours``."""
        if not self.available:
            return False
        cutoff = (datetime.now(timezone.utc) - timedelta(hours=retention_hours)).isoformat()
        try:
            deleted = await self.store.delete(RATE_LIMITS_TABLE, [("updated_at", "lt", cutoff)])
        except StoreUnavailableError as e:
            self._failed("rate_limit.cleanup", e, retention_hours=retention_hours)
            return False
        self.metrics.observe("rate_limit.cleanup", success=True, retention_hours=retention_hours,
                             deleted=len(deleted))
        logger.info("Old rate limit rows deleted", extra={"deleted": len(deleted), "retention_hours": retention_hours})
        return True
