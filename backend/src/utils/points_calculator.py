"""
Points calculation utilities.

Pure helpers over upstream picks, live points and transfers: live gameweek
points with multipliers, starters/bench split, transfer impact and chip
impact. Nothing here performs I/O.
"""

import logging
from collections import defaultdict
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

FREE_HIT = "freehit"
BENCH_BOOST = "bboost"
TRIPLE_CAPTAIN = "3xc"


class PointsCalculator:
    """Calculates manager points from picks and live player points."""

    @staticmethod
    def live_gameweek_points(picks: List[Dict], live_points: Dict[int, int]) -> int:
        """Sum of live points times multiplier (bench picks have multiplier 0)."""
        return sum(
            (live_points.get(pick.get("element"), 0) or 0) * (pick.get("multiplier") or 0)
            for pick in picks
        )

    @staticmethod
    def live_total_points(entry_history: Dict, gw_points: int) -> int:
        """
        Season total with the gameweek swapped for a live recomputation.

        ``total_points`` already includes the upstream ``points`` for the
        gameweek, so that is removed before adding ``gw_points``.
        """
        return (
            (entry_history.get("total_points") or 0)
            - (entry_history.get("points") or 0)
            + gw_points
        )

    @staticmethod
    def split_picks(picks: List[Dict]):
        """Return (starters, bench) keeping pick order."""
        starters = [p for p in picks if (p.get("multiplier") or 0) > 0]
        bench = [p for p in picks if (p.get("multiplier") or 0) == 0]
        return starters, bench

    @staticmethod
    def starter_rows(
        starters: List[Dict],
        live_points: Dict[int, int],
        names: Dict[int, str],
    ) -> List[Dict]:
        rows = [
            {
                "name": names.get(pick.get("element"), "Unknown"),
                "points": (live_points.get(pick.get("element"), 0) or 0) * (pick.get("multiplier") or 0),
                "isCaptain": bool(pick.get("is_captain")),
                "isViceCaptain": bool(pick.get("is_vice_captain")),
            }
            for pick in starters
        ]
        # Stable, so equal points keep pick order
        rows.sort(key=lambda row: row["points"], reverse=True)
        return rows

    @staticmethod
    def bench_rows(
        bench: List[Dict],
        live_points: Dict[int, int],
        names: Dict[int, str],
    ) -> List[Dict]:
        return [
            {
                "name": names.get(pick.get("element"), "Unknown"),
                "points": live_points.get(pick.get("element"), 0) or 0,
            }
            for pick in bench
        ]

    @staticmethod
    def transfers_for_gameweek(transfers: Optional[List[Dict]], gameweek: int) -> List[Dict]:
        return [t for t in transfers or [] if t.get("event") == gameweek]

    @staticmethod
    def group_transfers_by_gameweek(transfers: Optional[List[Dict]]) -> Dict[int, List[Dict]]:
        by_gw: Dict[int, List[Dict]] = defaultdict(list)
        for transfer in transfers or []:
            event = transfer.get("event")
            if event is not None:
                by_gw[event].append(transfer)
        return by_gw

    @staticmethod
    def transfer_delta(transfer: Dict, live_points: Dict[int, int]) -> int:
        """Points of the player brought in minus the player sold."""
        return (
            (live_points.get(transfer.get("element_in"), 0) or 0)
            - (live_points.get(transfer.get("element_out"), 0) or 0)
        )

    @classmethod
    def transfer_impact_net(
        cls,
        transfers: List[Dict],
        live_points: Dict[int, int],
        transfer_cost: int,
        chip: Optional[str],
    ) -> int:
        """Gross transfer delta minus the hit; a free hit costs nothing."""
        gross = sum(cls.transfer_delta(t, live_points) for t in transfers)
        cost = 0 if chip == FREE_HIT else (transfer_cost or 0)
        return gross - cost

    @staticmethod
    def captain_pick(picks: List[Dict]) -> Optional[Dict]:
        return next((p for p in picks if p.get("is_captain")), None)

    @classmethod
    def chip_impact(
        cls,
        chip: Optional[str],
        picks: List[Dict],
        entry_history: Dict,
        live_points: Dict[int, int],
    ) -> int:
        """
        Points attributable to a chip.

        Bench boost is worth the bench points; triple captain is worth one
        extra copy of the captain's base points. Other chips score 0.
        """
        if chip == BENCH_BOOST:
            return entry_history.get("points_on_bench") or 0
        if chip == TRIPLE_CAPTAIN:
            captain = cls.captain_pick(picks)
            if captain is None:
                return 0
            return live_points.get(captain.get("element"), 0) or 0
        return 0
