"""
Stats trend series.

Builds per-gameweek "best / worst" series over a window of cached league
and activity impact payloads. Gameweeks with no cached payload still get a
point, with every field null; averages skip nulls.
"""

from typing import Any, Dict, List, Optional

DEFAULT_WINDOW = 8
MAX_WINDOW = 20

SERIES = (
    "mostPoints",
    "fewestPoints",
    "mostBench",
    "fewestBench",
    "mostTransfers",
    "mostInfluence",
    "leastInfluence",
)


def resolve_window(raw: Optional[int]) -> int:
    """Positive windows are capped at MAX_WINDOW; anything else is DEFAULT_WINDOW."""
    if isinstance(raw, int) and not isinstance(raw, bool) and raw > 0:
        return min(raw, MAX_WINDOW)
    return DEFAULT_WINDOW


def trend_range(gw: int, window: int) -> tuple:
    return max(1, gw - window + 1), gw


def series_average(points: List[Dict[str, Any]]) -> Optional[float]:
    values = [p["value"] for p in points if isinstance(p["value"], (int, float))]
    if not values:
        return None
    return round(sum(values) / len(values), 2)


def _point(gw: int, value: Any, manager: Optional[str], team: Optional[str]) -> Dict[str, Any]:
    return {"gw": gw, "value": value, "manager": manager, "team": team}


def _standing_point(gw: int, standing: Optional[Dict[str, Any]], key: str) -> Dict[str, Any]:
    if not standing:
        return _point(gw, None, None, None)
    return _point(gw, standing.get(key), standing.get("player_name"), standing.get("entry_name"))


def _activity_point(gw: int, row: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not row:
        return _point(gw, None, None, None)
    return _point(gw, row.get("gwDecisionScore"), row.get("manager"), row.get("team"))


def _extreme(rows: List[Dict[str, Any]], key: str, highest: bool) -> Optional[Dict[str, Any]]:
    # First row wins ties, matching the league stat cards.
    best = None
    for row in rows:
        if best is None:
            best = row
            continue
        value, current = row.get(key) or 0, best.get(key) or 0
        if (value > current) if highest else (value < current):
            best = row
    return best


def build_stats_trend(
    league_payloads: Dict[int, Any],
    activity_payloads: Dict[int, Any],
    from_gw: int,
    to_gw: int,
) -> Dict[str, Dict[str, Any]]:
    """
    Trend series for ``from_gw..to_gw`` inclusive.

    Args:
        league_payloads: ``{gw: league view payload}`` for cached gameweeks
        activity_payloads: ``{gw: activity impact rows}`` for cached gameweeks

    Returns:
        ``{series_name: {"points": [...], "average": float | None}}``
    """
    points: Dict[str, List[Dict[str, Any]]] = {name: [] for name in SERIES}

    for gw in range(from_gw, to_gw + 1):
        payload = league_payloads.get(gw)
        if not isinstance(payload, dict):
            payload = {}
        stats = payload.get("stats") or {}
        points["mostPoints"].append(_standing_point(gw, stats.get("mostPoints"), "gwPoints"))
        points["fewestPoints"].append(_standing_point(gw, stats.get("fewestPoints"), "gwPoints"))
        points["mostBench"].append(_standing_point(gw, stats.get("mostBench"), "benchPoints"))
        fewest_bench = _extreme(payload.get("standings") or [], "benchPoints", highest=False)
        points["fewestBench"].append(_standing_point(gw, fewest_bench, "benchPoints"))
        points["mostTransfers"].append(_standing_point(gw, stats.get("mostTransfers"), "transfers"))

        rows = [r for r in activity_payloads.get(gw) or [] if isinstance(r, dict)]
        points["mostInfluence"].append(_activity_point(gw, _extreme(rows, "gwDecisionScore", highest=True)))
        points["leastInfluence"].append(_activity_point(gw, _extreme(rows, "gwDecisionScore", highest=False)))

    return {
        name: {"points": series, "average": series_average(series)}
        for name, series in points.items()
    }
