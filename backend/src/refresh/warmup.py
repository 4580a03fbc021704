"""
League cache warmup.

Drives the service's own read endpoints so each (gameweek, view) payload is
computed and written through the cache. Recent gameweeks are queued first,
a fixed pool of workers drains the queue, and a worker checks the wall-clock
budget before starting each task. Tasks already running when the budget
runs out are allowed to finish.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import List, Optional, Tuple

import httpx

from utils.metrics import MetricsSink, NoopMetrics

logger = logging.getLogger(__name__)

# (cache view, api route)
WARMUP_VIEWS: Tuple[Tuple[str, str], ...] = (
    ("league", "league"),
    ("transfers", "transfers"),
    ("chips", "chips"),
    ("activity_impact", "activity-impact"),
)


@dataclass
class WarmTask:
    gw: int
    view: str
    route: str


@dataclass
class WarmResult:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    timed_out: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def build_warm_tasks(from_gw: int, to_gw: int) -> List[WarmTask]:
    """Every view for every gameweek, newest gameweek first."""
    return [
        WarmTask(gw=gw, view=view, route=route)
        for gw in range(to_gw, from_gw - 1, -1)
        for view, route in WARMUP_VIEWS
    ]


def expected_task_count(from_gw: int, to_gw: int) -> int:
    if to_gw < from_gw:
        return 0
    return (to_gw - from_gw + 1) * len(WARMUP_VIEWS)


class CacheWarmupOrchestrator:
    """Bounded-concurrency, time-budgeted cache warmer."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        metrics: Optional[MetricsSink] = None,
        request_timeout: float = 60.0,
    ):
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=request_timeout)
        self.metrics = metrics or NoopMetrics()

    async def _run_task(self, task: WarmTask, league_id: int, current_gw: int, origin: str) -> bool:
        url = f"{origin.rstrip('/')}/api/{task.route}"
        params = {"leagueId": league_id, "gw": task.gw, "currentGw": current_gw}
        try:
            response = await self.http_client.get(url, params=params)
        except httpx.HTTPError as e:
            logger.debug("Warmup request failed", extra={
                "league_id": league_id, "gw": task.gw, "view": task.view, "error": type(e).__name__,
            })
            return False
        return response.is_success

    async def warm(
        self,
        league_id: int,
        current_gw: int,
        origin: str,
        from_gw: Optional[int] = None,
        to_gw: Optional[int] = None,
        concurrency: int = 2,
        time_budget_ms: int = 10_000,
    ) -> WarmResult:
        """
        Warm every view for gameweeks ``from_gw..to_gw`` of a league.

        Never raises; failures are counted in the result.
        """
        started = time.monotonic()
        budget_seconds = max(0, time_budget_ms) / 1000.0
        workers = max(1, concurrency)
        to_gw = max(1, int(to_gw if to_gw is not None else current_gw))
        from_gw = min(max(1, int(from_gw if from_gw is not None else 1)), to_gw)

        queue: asyncio.Queue = asyncio.Queue()
        for task in build_warm_tasks(from_gw, to_gw):
            queue.put_nowait(task)

        result = WarmResult()

        async def worker():
            while True:
                try:
                    task = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if time.monotonic() - started >= budget_seconds:
                    result.timed_out = True
                    return
                result.attempted += 1
                if await self._run_task(task, league_id, current_gw, origin):
                    result.succeeded += 1
                else:
                    result.failed += 1

        await asyncio.gather(*(worker() for _ in range(min(workers, queue.qsize() or 1))))

        self.metrics.observe(
            "cache.warmup.league",
            league_id=league_id,
            current_gw=current_gw,
            from_gw=from_gw,
            to_gw=to_gw,
            duration_ms=int((time.monotonic() - started) * 1000),
            **result.to_dict(),
        )
        return result

    async def close(self):
        if self._owns_client:
            await self.http_client.aclose()
