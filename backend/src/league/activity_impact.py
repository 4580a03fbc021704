"""
Activity impact.

Scores each manager's decisions per gameweek: net transfer impact (points
of players in minus players out, less the hit; free hits cost nothing) plus
chip impact (bench boost = bench points, triple captain = captain's base
points). Scores accumulate from gameweek 1 so managers are ranked on their
running influence total, with movement against the total before the
target gameweek.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from fpl_api.client import FPLAPIClient
from utils.concurrency import map_with_concurrency
from utils.points_calculator import TRIPLE_CAPTAIN, PointsCalculator

logger = logging.getLogger(__name__)


def score_gameweek(
    team_data: Dict[str, Any],
    gw_transfers: List[Dict[str, Any]],
    chip: Optional[str],
    live_points: Dict[int, int],
) -> Dict[str, int]:
    history = team_data.get("entry_history") or {}
    picks = team_data.get("picks") or []
    transfer_net = PointsCalculator.transfer_impact_net(
        gw_transfers, live_points, history.get("event_transfers_cost") or 0, chip
    )
    chip_impact = PointsCalculator.chip_impact(chip, picks, history, live_points)
    return {
        "transferImpactNet": transfer_net,
        "chipImpact": chip_impact,
        "gwDecisionScore": transfer_net + chip_impact,
    }


def build_entry_row(
    entry: Dict[str, Any],
    team_data_by_gw: Dict[int, Optional[Dict[str, Any]]],
    transfers: Optional[List[Dict[str, Any]]],
    chips: List[Dict[str, Any]],
    points_by_gw: Dict[int, Dict[int, int]],
    names: Dict[int, str],
    target_gw: int,
) -> Dict[str, Any]:
    """Walk gameweeks 1..target_gw for one entry and describe the target gameweek."""
    transfers_by_gw = PointsCalculator.group_transfers_by_gameweek(transfers)
    chip_by_gw = {c.get("event"): c.get("name") for c in chips or [] if c.get("event") is not None}

    row = {
        "entryId": entry["entry"],
        "team": entry.get("entry_name") or "",
        "manager": entry.get("player_name") or "",
        "chip": None,
        "chipCaptainName": None,
        "transfers": [],
        "transferImpactNet": 0,
        "chipImpact": 0,
        "gwDecisionScore": 0,
        "runningInfluenceTotal": 0,
        "previousRunningInfluenceTotal": 0,
        "pos": 0,
        "movement": 0,
    }

    for gw in range(1, target_gw + 1):
        team_data = team_data_by_gw.get(gw)
        if not team_data:
            continue
        live_points = points_by_gw.get(gw) or {}
        gw_transfers = transfers_by_gw.get(gw, [])
        chip = chip_by_gw.get(gw)
        score = score_gameweek(team_data, gw_transfers, chip, live_points)

        row["runningInfluenceTotal"] += score["gwDecisionScore"]
        if gw < target_gw:
            row["previousRunningInfluenceTotal"] += score["gwDecisionScore"]
            continue

        captain_name = None
        if chip == TRIPLE_CAPTAIN:
            captain = PointsCalculator.captain_pick(team_data.get("picks") or [])
            if captain is not None:
                captain_name = names.get(captain.get("element"), "Unknown")
        row.update(score)
        row["chip"] = chip
        row["chipCaptainName"] = captain_name
        row["transfers"] = [
            {
                "in": names.get(t.get("element_in"), "Unknown"),
                "out": names.get(t.get("element_out"), "Unknown"),
                "impact": PointsCalculator.transfer_delta(t, live_points),
            }
            for t in gw_transfers
        ]
    return row


def rank_rows(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Order by running total desc then entry id asc; movement is previous pos minus pos."""
    def positions(key: str) -> Dict[int, int]:
        ordered = sorted(rows, key=lambda r: (-r[key], r["entryId"]))
        return {r["entryId"]: index + 1 for index, r in enumerate(ordered)}

    current = positions("runningInfluenceTotal")
    previous = positions("previousRunningInfluenceTotal")
    ranked = []
    for row in rows:
        pos = current.get(row["entryId"], len(rows))
        ranked.append({**row, "pos": pos, "movement": previous.get(row["entryId"], pos) - pos})
    ranked.sort(key=lambda r: r["pos"])
    return ranked


async def compute_activity_impact(
    fpl_client: FPLAPIClient,
    entries: List[Dict[str, Any]],
    gw: int,
    current_gw: int,
    concurrency: int = 4,
) -> List[Dict[str, Any]]:
    """Activity impact rows for ``min(gw, current_gw)``."""
    target_gw = max(1, min(gw, current_gw))
    names = await fpl_client.get_player_names()

    live = await asyncio.gather(*(fpl_client.get_event_live(g) for g in range(1, target_gw + 1)))
    points_by_gw = {g: points for g, points in zip(range(1, target_gw + 1), live)}

    async def entry_row(entry: Dict[str, Any]) -> Dict[str, Any]:
        transfers, chips = await asyncio.gather(
            fpl_client.get_entry_transfers(entry["entry"]),
            fpl_client.get_entry_chips(entry["entry"]),
        )
        team_data_by_gw = {}
        for g in range(1, target_gw + 1):
            team_data_by_gw[g] = await fpl_client.get_entry_picks(entry["entry"], g)
        return build_entry_row(entry, team_data_by_gw, transfers, chips, points_by_gw, names, target_gw)

    rows = await map_with_concurrency(entries, concurrency, entry_row)
    return rank_rows(rows)
