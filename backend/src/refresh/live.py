"""
Live refresh of the current gameweek.

Warms every view of the current gameweek for each league any user follows,
one league after another with a short time budget per league.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from config import Config
from database.repositories import UserLeagueRepository
from fpl_api.client import FPLAPIClient
from refresh.warmup import CacheWarmupOrchestrator
from utils.metrics import MetricsSink, NoopMetrics

logger = logging.getLogger(__name__)


@dataclass
class LiveRefreshResult:
    current_gw: int
    refreshed: List[dict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(not r["failed"] and not r["timedOut"] for r in self.refreshed)


class LiveLeagueRefresher:
    """Keeps the in-progress gameweek warm for followed leagues."""

    def __init__(
        self,
        config: Config,
        user_leagues: UserLeagueRepository,
        warmup: CacheWarmupOrchestrator,
        fpl_client: FPLAPIClient,
        metrics: Optional[MetricsSink] = None,
    ):
        self.config = config
        self.user_leagues = user_leagues
        self.warmup = warmup
        self.fpl_client = fpl_client
        self.metrics = metrics or NoopMetrics()

    async def run(self, origin: str) -> LiveRefreshResult:
        current_gw = await self.fpl_client.get_current_gameweek()
        league_ids = await self.user_leagues.list_distinct_league_ids() or []
        result = LiveRefreshResult(current_gw=current_gw)
        if not league_ids:
            return result

        async with self.metrics.timed("refresh.live", current_gw=current_gw, league_count=len(league_ids)):
            for league_id in league_ids:
                warm = await self.warmup.warm(
                    league_id=league_id,
                    current_gw=current_gw,
                    origin=origin,
                    from_gw=current_gw,
                    to_gw=current_gw,
                    concurrency=self.config.live_refresh_concurrency,
                    time_budget_ms=self.config.live_refresh_time_budget_ms,
                )
                result.refreshed.append({
                    "leagueId": league_id,
                    "attempted": warm.attempted,
                    "succeeded": warm.succeeded,
                    "failed": warm.failed,
                    "timedOut": warm.timed_out,
                })

        if not result.ok:
            logger.warning("Live refresh incomplete", extra={
                "current_gw": current_gw,
                "leagues": len(league_ids),
                "failed_leagues": sum(1 for r in result.refreshed if r["failed"] or r["timedOut"]),
            })
        return result
