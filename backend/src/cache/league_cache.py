"""
Durable per-(league, gameweek, view) payload cache.

Serving policy for a cached entry:

1. An entry failing the completeness check (triple captain without a
   captain name) is a miss, whatever its age or final flag.
2. Final entries are served.
3. Entries for a locked gameweek are re-flagged final and served.
4. In-progress entries are served while younger than the live TTL.

Recomputed payloads are written back final only when the gameweek is locked.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from database.repositories import CachePayloadRepository, UserLeagueRepository
from utils.metrics import MetricsSink, NoopMetrics

logger = logging.getLogger(__name__)

VIEW_LEAGUE = "league"
VIEW_TRANSFERS = "transfers"
VIEW_CHIPS = "chips"
VIEW_ACTIVITY_IMPACT = "activity_impact"

VIEWS = (VIEW_LEAGUE, VIEW_TRANSFERS, VIEW_CHIPS, VIEW_ACTIVITY_IMPACT)

# Views whose rows carry chip + chipCaptainName
_CHIP_ROW_VIEWS = {VIEW_CHIPS, VIEW_ACTIVITY_IMPACT}


@dataclass
class CachedEntry:
    payload: Any
    fetched_at: datetime
    is_final: bool
    gw: Optional[int] = None

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.fetched_at).total_seconds()


class CacheDecision(str, Enum):
    SERVE = "serve"
    SERVE_AND_FINALIZE = "serve_and_finalize"
    MISS = "miss"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp from the store; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_locked_gameweek(gw: int, current_gw: int) -> bool:
    """Only gameweeks before the current one are locked, for every view."""
    return gw < current_gw


def needs_repair(view: str, payload: Any) -> bool:
    """True when a chip row has ``3xc`` but no captain name."""
    if view not in _CHIP_ROW_VIEWS or not isinstance(payload, list):
        return False
    for row in payload:
        if not isinstance(row, dict) or row.get("chip") != "3xc":
            continue
        name = row.get("chipCaptainName")
        if not isinstance(name, str) or not name.strip():
            return True
    return False


def decide_cache_use(
    view: str,
    entry: Optional[CachedEntry],
    gw: int,
    current_gw: int,
    ttl_seconds: int,
    now: Optional[datetime] = None,
) -> CacheDecision:
    if entry is None or needs_repair(view, entry.payload):
        return CacheDecision.MISS
    if entry.is_final:
        return CacheDecision.SERVE
    if is_locked_gameweek(gw, current_gw):
        return CacheDecision.SERVE_AND_FINALIZE
    if entry.age_seconds(now) < ttl_seconds:
        return CacheDecision.SERVE
    return CacheDecision.MISS


class LeagueCacheStore:
    """Read/write access to cached view payloads."""

    def __init__(
        self,
        payloads: CachePayloadRepository,
        user_leagues: Optional[UserLeagueRepository] = None,
        metrics: Optional[MetricsSink] = None,
        ttl_seconds: int = 60,
    ):
        self.payloads = payloads
        self.user_leagues = user_leagues
        self.metrics = metrics or NoopMetrics()
        self.ttl_seconds = ttl_seconds

    @property
    def enabled(self) -> bool:
        return self.payloads.available

    @staticmethod
    def _to_entry(row: dict) -> Optional[CachedEntry]:
        fetched_at = parse_timestamp(row.get("fetched_at"))
        if fetched_at is None:
            return None
        return CachedEntry(
            payload=row.get("payload_json"),
            fetched_at=fetched_at,
            is_final=bool(row.get("is_final")),
            gw=row.get("gw"),
        )

    async def get(self, league_id: int, gw: int, view: str) -> Optional[CachedEntry]:
        row = await self.payloads.fetch(league_id, gw, view)
        if row is None:
            return None
        return self._to_entry(row)

    async def get_range(self, league_id: int, view: str, from_gw: int, to_gw: int) -> List[CachedEntry]:
        """Existing rows in ``[from_gw, to_gw]`` ascending by gameweek; gaps are omitted."""
        if from_gw > to_gw:
            return []
        entries = []
        for row in await self.payloads.fetch_range(league_id, view, from_gw, to_gw):
            if row.get("payload_json") is None:
                continue
            entry = self._to_entry(row)
            if entry is not None:
                entries.append(entry)
        entries.sort(key=lambda e: e.gw or 0)
        return entries

    async def upsert(self, league_id: int, gw: int, view: str, payload: Any, is_final: bool) -> bool:
        return await self.payloads.upsert(league_id, gw, view, payload, is_final)

    async def get_latest_league_gw(self) -> Optional[dict]:
        """Highest cached ``league`` gameweek as ``{"gw", "is_final"}``."""
        row = await self.payloads.latest_gw(VIEW_LEAGUE)
        if not row or not isinstance(row.get("gw"), int) or row["gw"] <= 0:
            return None
        return {"gw": row["gw"], "is_final": bool(row.get("is_final"))}

    async def purge_if_unreferenced(self, league_id: int) -> bool:
        """
        Delete every cached row for a league no user references.

        Check-then-delete is not transactional: a user adding the league
        between the two steps loses its cached rows, which are rebuilt on
        the next read.
        """
        if self.user_leagues is None or not self.enabled:
            return False
        referenced = await self.user_leagues.is_referenced(league_id)
        if referenced is None or referenced:
            return False
        deleted = await self.payloads.delete_league(league_id)
        if deleted:
            logger.info("Purged league cache", extra={"league_id": league_id})
        return deleted

    async def read_through(
        self,
        league_id: int,
        gw: int,
        view: str,
        current_gw: int,
        compute: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Serve ``view`` from cache under the serving policy, else ``compute``.

        Exceptions raised by ``compute`` propagate and nothing is written.
        """
        counter = f"cache.{view}"
        if self.enabled:
            entry = await self.get(league_id, gw, view)
            decision = decide_cache_use(view, entry, gw, current_gw, self.ttl_seconds)
            if decision is CacheDecision.SERVE_AND_FINALIZE:
                await self.upsert(league_id, gw, view, entry.payload, True)
            if decision is not CacheDecision.MISS:
                self.metrics.increment(f"{counter}.hit")
                return entry.payload
            if entry is not None and needs_repair(view, entry.payload):
                logger.info("Cached payload incomplete, recomputing", extra={
                    "league_id": league_id, "gw": gw, "view": view,
                })

        self.metrics.increment(f"{counter}.miss")
        payload = await compute()
        if self.enabled:
            await self.upsert(league_id, gw, view, payload, is_locked_gameweek(gw, current_gw))
        return payload
