"""
League view models.

One service method per dashboard view (league table, transfers, chips,
activity impact). Each reads through the durable cache and, on a miss,
fetches the league from upstream and computes the payload.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from cache.league_cache import (
    VIEW_ACTIVITY_IMPACT,
    VIEW_CHIPS,
    VIEW_LEAGUE,
    VIEW_TRANSFERS,
    LeagueCacheStore,
)
from config import Config
from fpl_api.client import FPLAPIClient, FPLAPINotFoundError
from league.activity_impact import compute_activity_impact
from league.standings import build_league_payload, enrich_standings, normalize_standings
from league.trends import build_stats_trend, resolve_window, trend_range
from utils.concurrency import map_with_concurrency
from utils.metrics import MetricsSink, NoopMetrics
from utils.points_calculator import TRIPLE_CAPTAIN, PointsCalculator

logger = logging.getLogger(__name__)


class LeagueNotFoundError(Exception):
    """The league does not exist upstream."""

    def __init__(self, league_id: int):
        super().__init__(f"League {league_id} not found")
        self.league_id = league_id


class LeagueFetchError(Exception):
    """The league could not be fetched from upstream."""

    def __init__(self, league_id: int):
        super().__init__(f"Failed to fetch league {league_id}")
        self.league_id = league_id


class LeagueViewService:
    """Builds cached view payloads for a league and gameweek."""

    def __init__(
        self,
        config: Config,
        fpl_client: FPLAPIClient,
        cache: LeagueCacheStore,
        metrics: Optional[MetricsSink] = None,
    ):
        self.config = config
        self.fpl_client = fpl_client
        self.cache = cache
        self.metrics = metrics or NoopMetrics()
        self.entry_concurrency = config.entry_concurrency

    async def fetch_league(self, league_id: int, gw: Optional[int] = None) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
        """
        Fetch league metadata and normalized standings.

        Raises:
            LeagueNotFoundError: league does not exist
            LeagueFetchError: upstream unavailable
        """
        try:
            data = await self.fpl_client.get_league_standings(league_id, event=gw)
        except FPLAPINotFoundError as e:
            raise LeagueNotFoundError(league_id) from e
        if not data:
            raise LeagueFetchError(league_id)

        league = data.get("league") or {}
        standings = data.get("standings") or {}
        meta = {
            "id": league.get("id") or league_id,
            "name": league.get("name") or f"League {league_id}",
            "has_more": bool(standings.get("has_next")),
        }
        return meta, normalize_standings(standings.get("results") or [])

    async def league(self, league_id: int, gw: int, current_gw: int) -> Dict[str, Any]:
        async def compute():
            _, entries = await self.fetch_league(league_id, gw)
            ranked = await enrich_standings(
                self.fpl_client, entries, gw, current_gw, concurrency=self.entry_concurrency
            )
            return build_league_payload(ranked)

        async with self.metrics.timed("api.league.GET", league_id=league_id, gw=gw):
            return await self.cache.read_through(league_id, gw, VIEW_LEAGUE, current_gw, compute)

    async def transfers(self, league_id: int, gw: int, current_gw: int) -> List[Dict[str, Any]]:
        async def compute():
            _, entries = await self.fetch_league(league_id, gw)
            names = await self.fpl_client.get_player_names()

            async def entry_transfers(entry):
                history = await self.fpl_client.get_entry_transfers(entry["entry"])
                gw_transfers = PointsCalculator.transfers_for_gameweek(history, gw)
                return {
                    "manager": entry["player_name"],
                    "team": entry["entry_name"],
                    "transfers": [
                        {
                            "in": names.get(t.get("element_in"), "Unknown"),
                            "out": names.get(t.get("element_out"), "Unknown"),
                        }
                        for t in gw_transfers
                    ],
                    "count": len(gw_transfers),
                }

            return await map_with_concurrency(entries, self.entry_concurrency, entry_transfers)

        async with self.metrics.timed("api.transfers.GET", league_id=league_id, gw=gw):
            return await self.cache.read_through(league_id, gw, VIEW_TRANSFERS, current_gw, compute)

    async def chips(self, league_id: int, gw: int, current_gw: int) -> List[Dict[str, Any]]:
        async def compute():
            _, entries = await self.fetch_league(league_id, gw)
            names = await self.fpl_client.get_player_names()

            async def entry_chip(entry):
                played = await self.fpl_client.get_entry_chips(entry["entry"])
                chip = next((c.get("name") for c in played if c.get("event") == gw), None)
                captain_name = None
                if chip == TRIPLE_CAPTAIN:
                    team_data = await self.fpl_client.get_entry_picks(entry["entry"], gw)
                    captain = PointsCalculator.captain_pick((team_data or {}).get("picks") or [])
                    if captain is not None:
                        captain_name = names.get(captain.get("element"), "Unknown")
                return {
                    "team": entry["entry_name"],
                    "manager": entry["player_name"],
                    "chip": chip,
                    "chipCaptainName": captain_name,
                }

            return await map_with_concurrency(entries, self.entry_concurrency, entry_chip)

        async with self.metrics.timed("api.chips.GET", league_id=league_id, gw=gw):
            return await self.cache.read_through(league_id, gw, VIEW_CHIPS, current_gw, compute)

    async def activity_impact(self, league_id: int, gw: int, current_gw: int) -> List[Dict[str, Any]]:
        target_gw = min(gw, current_gw)

        async def compute():
            _, entries = await self.fetch_league(league_id)
            return await compute_activity_impact(
                self.fpl_client, entries, target_gw, current_gw, concurrency=self.entry_concurrency
            )

        async with self.metrics.timed("api.activity-impact.GET", league_id=league_id, gw=gw):
            return await self.cache.read_through(
                league_id, target_gw, VIEW_ACTIVITY_IMPACT, current_gw, compute
            )

    async def warm_current_league(self, league_id: int, current_gw: int) -> Dict[str, Any]:
        """Recompute and store the live league view, bypassing the cache read."""
        try:
            _, entries = await self.fetch_league(league_id)
        except (LeagueNotFoundError, LeagueFetchError):
            return {"leagueId": league_id, "success": False, "reason": "league_fetch_failed"}
        ranked = await enrich_standings(
            self.fpl_client, entries, current_gw, current_gw, concurrency=self.entry_concurrency
        )
        await self.cache.upsert(league_id, current_gw, VIEW_LEAGUE, build_league_payload(ranked), False)
        return {"leagueId": league_id, "success": True, "teams": len(ranked)}

    async def warm_default_leagues(self, league_ids: List[int], concurrency: int = 2) -> Dict[str, Any]:
        current_gw = await self.fpl_client.get_current_gameweek()
        results = await map_with_concurrency(
            league_ids, concurrency, lambda league_id: self.warm_current_league(league_id, current_gw)
        )
        failed = [r for r in results if not r["success"]]
        self.metrics.observe("warm.league.cache", current_gw=current_gw,
                             success_count=len(results) - len(failed),
                             failed_count=len(failed), league_count=len(league_ids))
        return {
            "ok": not failed,
            "currentGw": current_gw,
            "successCount": len(results) - len(failed),
            "failedCount": len(failed),
            "results": results,
        }

    async def stats_trend(self, league_id: int, gw: Optional[int] = None, window: Optional[int] = None) -> Dict[str, Any]:
        """
        Trend series over the cached gameweeks ending at ``gw``.

        Reads cached payloads only; gameweeks never computed show up as null
        points. Without ``gw`` the latest cached league gameweek is used,
        falling back to the upstream current gameweek.
        """
        window = resolve_window(window)
        if gw is None:
            latest = await self.cache.get_latest_league_gw()
            gw = latest["gw"] if latest else await self.fpl_client.get_current_gameweek()
        from_gw, to_gw = trend_range(gw, window)

        async with self.metrics.timed("api.stats-trend.GET", league_id=league_id, gw=gw, window=window):
            league_rows, activity_rows = await asyncio.gather(
                self.cache.get_range(league_id, VIEW_LEAGUE, from_gw, to_gw),
                self.cache.get_range(league_id, VIEW_ACTIVITY_IMPACT, from_gw, to_gw),
            )
            series = build_stats_trend(
                {entry.gw: entry.payload for entry in league_rows},
                {entry.gw: entry.payload for entry in activity_rows},
                from_gw,
                to_gw,
            )
        return {"fromGw": from_gw, "toGw": to_gw, "window": window, "series": series}
