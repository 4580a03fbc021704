"""
League standings enrichment.

Turns the upstream classic-league standings into ranked rows with gameweek
points, bench points, transfers, hits and movement versus the previous
gameweek. For the live gameweek points are recomputed from live player
points; older gameweeks trust the upstream entry history.
"""

import logging
from typing import Any, Dict, List, Optional

from fpl_api.client import FPLAPIClient
from utils.concurrency import map_with_concurrency
from utils.points_calculator import PointsCalculator

logger = logging.getLogger(__name__)


def normalize_standings(results: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Keep the standings fields the aggregators use."""
    return [
        {
            "entry": row.get("entry"),
            "entry_name": row.get("entry_name") or "",
            "player_name": row.get("player_name") or "",
            "total": row.get("total") or 0,
        }
        for row in results or []
        if row.get("entry") is not None
    ]


def rank_by_total(rows: List[Dict[str, Any]], key: str) -> List[Dict[str, Any]]:
    """Stable sort descending by ``key``; ties keep input order."""
    return sorted(rows, key=lambda row: row.get(key) or 0, reverse=True)


def _empty_row(entry: Dict[str, Any]) -> Dict[str, Any]:
    return {
        **entry,
        "gwPoints": 0,
        "totalPoints": entry.get("total") or 0,
        "transfers": 0,
        "transfersList": [],
        "hit": 0,
        "benchPoints": 0,
        "rank": 0,
        "movement": 0,
        "gwPlayers": [],
        "benchPlayers": [],
    }


def enrich_entry(
    entry: Dict[str, Any],
    team_data: Optional[Dict[str, Any]],
    transfers: Optional[List[Dict[str, Any]]],
    live_points: Dict[int, int],
    names: Dict[int, str],
    gw: int,
    current_gw: int,
) -> Dict[str, Any]:
    if not team_data or not isinstance(team_data.get("entry_history"), dict):
        return _empty_row(entry)

    picks = team_data.get("picks") or []
    history = team_data["entry_history"]

    gw_points = history.get("points") or 0
    total_points = history.get("total_points") or 0
    if gw == current_gw:
        gw_points = PointsCalculator.live_gameweek_points(picks, live_points)
        total_points = PointsCalculator.live_total_points(history, gw_points)

    starters, bench = PointsCalculator.split_picks(picks)
    bench_players = PointsCalculator.bench_rows(bench, live_points, names)
    gw_transfers = PointsCalculator.transfers_for_gameweek(transfers, gw)

    return {
        **entry,
        "gwPoints": gw_points,
        "totalPoints": total_points,
        "transfers": len(gw_transfers),
        "transfersList": [
            {
                "in": names.get(t.get("element_in"), "Unknown"),
                "out": names.get(t.get("element_out"), "Unknown"),
            }
            for t in gw_transfers
        ],
        "hit": -(history.get("event_transfers_cost") or 0),
        "benchPoints": sum(p["points"] for p in bench_players),
        "rank": 0,
        "movement": 0,
        "gwPlayers": PointsCalculator.starter_rows(starters, live_points, names),
        "benchPlayers": bench_players,
    }


async def enrich_standings(
    fpl_client: FPLAPIClient,
    entries: List[Dict[str, Any]],
    gw: int,
    current_gw: int,
    concurrency: int = 4,
) -> List[Dict[str, Any]]:
    """
    Enrich and rank league entries for a gameweek.

    Args:
        fpl_client: Upstream client
        entries: Normalized standings rows (entry, entry_name, player_name, total)
        gw: Gameweek to enrich
        current_gw: Current gameweek; equal to ``gw`` means live
        concurrency: Maximum per-entry fetches in flight

    Returns:
        Rows sorted by total points with ``rank`` and ``movement`` set
    """
    names = await fpl_client.get_player_names()
    live_points = await fpl_client.get_event_live(gw)

    async def enrich(entry: Dict[str, Any]) -> Dict[str, Any]:
        team_data = await fpl_client.get_entry_picks(entry["entry"], gw)
        if not team_data:
            return _empty_row(entry)
        transfers = await fpl_client.get_entry_transfers(entry["entry"])
        return enrich_entry(entry, team_data, transfers, live_points, names, gw, current_gw)

    enriched = await map_with_concurrency(entries, concurrency, enrich)
    ranked = [
        {**row, "rank": index + 1}
        for index, row in enumerate(rank_by_total(enriched, "totalPoints"))
    ]

    if gw <= 1:
        return ranked

    async def previous_total(entry: Dict[str, Any]) -> Dict[str, Any]:
        team_data = await fpl_client.get_entry_picks(entry["entry"], gw - 1)
        history = (team_data or {}).get("entry_history") or {}
        return {"entry": entry["entry"], "total": history.get("total_points") or 0}

    previous = await map_with_concurrency(entries, concurrency, previous_total)
    previous_rank = {
        row["entry"]: index + 1
        for index, row in enumerate(rank_by_total(previous, "total"))
    }
    for row in ranked:
        prev = previous_rank.get(row["entry"])
        row["movement"] = prev - row["rank"] if prev is not None else 0
    return ranked


def league_stats(ranked: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Stat cards for a league; the first row wins ties. None for an empty league."""
    if not ranked:
        return None

    def pick(key: str, highest: bool = True) -> Dict[str, Any]:
        best = ranked[0]
        for row in ranked[1:]:
            if (row[key] > best[key]) if highest else (row[key] < best[key]):
                best = row
        return best

    return {
        "mostPoints": pick("gwPoints"),
        "fewestPoints": pick("gwPoints", highest=False),
        "mostBench": pick("benchPoints"),
        "mostTransfers": pick("transfers"),
    }


def build_league_payload(ranked: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"standings": ranked, "stats": league_stats(ranked)}
