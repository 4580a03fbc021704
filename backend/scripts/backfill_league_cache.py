#!/usr/bin/env python3
"""
Backfill League Cache

Warms the durable league cache by calling a running API's view endpoints
for every gameweek in a range. Each request computes the view and writes it
through the cache; locked gameweeks are stored as final.

Usage:
    # Default leagues, gameweeks 1..current-1
    python scripts/backfill_league_cache.py

    # Specific leagues and range against a deployed API
    python scripts/backfill_league_cache.py --league-ids 430552,4311 --from-gw 1 --to-gw 20 \
        --base-url https://api.example.com
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

# Load environment variables
from dotenv import load_dotenv
load_dotenv(Path(__file__).parent.parent / ".env")

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from config import Config
from fpl_api.client import FPLAPIClient
from refresh.warmup import CacheWarmupOrchestrator, expected_task_count

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def parse_id_list(value: Optional[str]) -> List[int]:
    if not value:
        return []
    ids = []
    for part in value.split(","):
        part = part.strip()
        if part.isdigit() and int(part) > 0:
            ids.append(int(part))
    return ids


async def backfill_league_cache(
    league_ids: List[int],
    base_url: str,
    from_gw: int = 1,
    to_gw: Optional[int] = None,
    current_gw: Optional[int] = None,
    concurrency: int = 3,
    time_budget_ms: int = 300_000,
) -> int:
    """Warm each league in turn; returns the number of failed tasks."""
    config = Config()
    if current_gw is None:
        async with FPLAPIClient(config) as fpl_client:
            current_gw = await fpl_client.get_current_gameweek()
    to_gw = to_gw if to_gw is not None else max(1, current_gw - 1)
    if to_gw < from_gw:
        raise ValueError(f"Invalid range: from GW {from_gw} > to GW {to_gw}")

    logger.info(
        f"Starting cache backfill: leagues={league_ids} range={from_gw}-{to_gw} "
        f"currentGw={current_gw} tasks/league={expected_task_count(from_gw, to_gw)} "
        f"concurrency={concurrency}"
    )

    warmup = CacheWarmupOrchestrator()
    failures = 0
    try:
        for league_id in league_ids:
            result = await warmup.warm(
                league_id=league_id,
                current_gw=current_gw,
                origin=base_url,
                from_gw=from_gw,
                to_gw=to_gw,
                concurrency=concurrency,
                time_budget_ms=time_budget_ms,
            )
            failures += result.failed
            logger.info(
                f"League {league_id}: attempted={result.attempted} succeeded={result.succeeded} "
                f"failed={result.failed} timedOut={result.timed_out}"
            )
    finally:
        await warmup.close()

    logger.info(f"Backfill complete. Failed tasks: {failures}")
    return failures


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Warm the league cache for a gameweek range via the API"
    )
    parser.add_argument(
        "--league-ids",
        type=str,
        help="Comma-separated league IDs (default: DEFAULT_LEAGUE_IDS)"
    )
    parser.add_argument(
        "--base-url",
        type=str,
        default=None,
        help="API origin (default: API_ORIGIN)"
    )
    parser.add_argument("--from-gw", type=int, default=1, help="First gameweek (default: 1)")
    parser.add_argument("--to-gw", type=int, default=None, help="Last gameweek (default: current - 1)")
    parser.add_argument("--current-gw", type=int, default=None, help="Override the current gameweek")
    parser.add_argument("--concurrency", type=int, default=3, help="Parallel requests (default: 3)")
    parser.add_argument(
        "--time-budget-ms",
        type=int,
        default=300_000,
        help="Per-league time budget in milliseconds (default: 300000)"
    )

    args = parser.parse_args()
    config = Config()
    league_ids = parse_id_list(args.league_ids) or config.default_league_ids
    if not league_ids:
        parser.error("No valid league IDs provided.")

    failed = asyncio.run(backfill_league_cache(
        league_ids=league_ids,
        base_url=args.base_url or config.api_origin,
        from_gw=max(1, args.from_gw),
        to_gw=args.to_gw,
        current_gw=args.current_gw,
        concurrency=max(1, args.concurrency),
        time_budget_ms=args.time_budget_ms,
    ))
    sys.exit(1 if failed else 0)
