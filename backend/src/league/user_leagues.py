"""
User league management and beta guardrails.

Adding a league is a two-step flow: a preview validates the league and the
user's limits without writing anything, the confirm step persists the
membership, warms the most recent gameweeks, queues a full backfill and
nudges the backfill runner without waiting for it.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

import httpx

from cache.league_cache import LeagueCacheStore
from config import Config
from database.repositories import RateLimitRepository, UserLeagueRepository
from fpl_api.client import FPLAPIClient
from jobs.backfill_queue import FAILED, PENDING, RUNNING, BackfillJobQueue
from league.views import LeagueFetchError, LeagueNotFoundError, LeagueViewService
from refresh.warmup import CacheWarmupOrchestrator
from utils.concurrency import map_with_concurrency
from utils.notifications import LEAGUE_ADDED, OpsNotifier

logger = logging.getLogger(__name__)

BACKFILL_RUN_PATH = "/api/internal/backfill/run"


class GuardrailError(Exception):
    """A user league request rejected with an HTTP status."""

    def __init__(self, status_code: int, message: str, retry_after_seconds: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.retry_after_seconds = retry_after_seconds


def parse_league_id(raw: Any) -> Optional[int]:
    """Positive integer league id, or None."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw > 0 else None
    if isinstance(raw, float):
        return int(raw) if raw.is_integer() and raw > 0 else None
    if isinstance(raw, str) and raw.strip().isdigit():
        value = int(raw.strip())
        return value if value > 0 else None
    return None


def is_placeholder_name(name: Optional[str], league_id: int) -> bool:
    return not name or not name.strip() or name.strip() == f"League {league_id}"


class UserLeagueService:
    """List, add and remove a user's leagues under beta limits."""

    def __init__(
        self,
        config: Config,
        user_leagues: UserLeagueRepository,
        rate_limits: RateLimitRepository,
        queue: BackfillJobQueue,
        cache: LeagueCacheStore,
        views: LeagueViewService,
        warmup: CacheWarmupOrchestrator,
        fpl_client: FPLAPIClient,
        notifier: Optional[OpsNotifier] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.user_leagues = user_leagues
        self.rate_limits = rate_limits
        self.queue = queue
        self.cache = cache
        self.views = views
        self.warmup = warmup
        self.fpl_client = fpl_client
        self.notifier = notifier
        self.http_client = http_client or httpx.AsyncClient(timeout=10.0)
        self._background: Set[asyncio.Task] = set()

    async def list_leagues(self, user_id: str) -> List[Dict[str, Any]]:
        rows = await self.user_leagues.list_for_user(user_id)
        leagues = []
        for row in rows or []:
            league_id = row.get("league_id")
            name = row.get("league_name")
            if is_placeholder_name(name, league_id):
                name = await self._heal_name(user_id, league_id) or f"League {league_id}"
            leagues.append({"id": league_id, "name": name.strip()})
        return leagues

    async def _heal_name(self, user_id: str, league_id: int) -> Optional[str]:
        try:
            meta, _ = await self.views.fetch_league(league_id)
        except (LeagueNotFoundError, LeagueFetchError):
            return None
        name = meta["name"]
        if is_placeholder_name(name, league_id):
            return None
        await self.user_leagues.rename(user_id, league_id, name)
        return name

    async def _fresh_active_jobs(self, league_ids: Optional[List[int]] = None):
        if league_ids is None:
            jobs = await self.queue.list_active()
        else:
            jobs = await self.queue.list_for_leagues(league_ids)
        return self.queue.fresh_active(jobs, self.config.active_backfill_stale_after_seconds)

    async def guardrails(self, league_ids: List[int]) -> Dict[str, Any]:
        user_active = await self._fresh_active_jobs(league_ids)
        global_active = await self._fresh_active_jobs()
        return {
            "addLeagueEnabled": self.config.add_league_enabled,
            "hasActiveBackfillForUser": bool(user_active),
            "globalActiveBackfillJobs": len(global_active),
            "globalActiveBackfillLimit": self.config.global_active_backfill_limit,
            "isGlobalBackfillAtCapacity": len(global_active) >= self.config.global_active_backfill_limit,
        }

    def limits(self) -> Dict[str, int]:
        return {
            "maxLeaguesPerUser": self.config.max_leagues_per_user,
            "maxManagersPerLeague": self.config.max_managers_per_league,
        }

    async def _check_rate_limit(self, user_id: str, preview: bool):
        if preview:
            window = self.config.league_preview_rate_limit_window_seconds
            max_requests = self.config.league_preview_rate_limit_max_requests
        else:
            window = self.config.league_add_rate_limit_window_seconds
            max_requests = self.config.league_add_rate_limit_max_requests
        result = await self.rate_limits.check(
            f"league_{'preview' if preview else 'add'}", user_id, window, max_requests
        )
        if not result["allowed"]:
            message = (
                "Too many league checks. Please wait before trying again."
                if preview else
                "Too many league add attempts. Please wait before trying again."
            )
            raise GuardrailError(429, message, retry_after_seconds=result["retry_after_seconds"])

    async def add_league(
        self,
        user_id: str,
        raw_league_id: Any,
        preview: bool,
        origin: str,
        email: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Preview or confirm adding a league.

        Raises:
            GuardrailError: when a limit or validation rejects the request
        """
        await self._check_rate_limit(user_id, preview)

        league_id = parse_league_id(raw_league_id)
        if league_id is None:
            raise GuardrailError(400, "Invalid leagueId. Expected a positive integer.")

        current = await self.user_leagues.list_for_user(user_id) or []
        current_ids = [row.get("league_id") for row in current]
        if league_id in current_ids:
            raise GuardrailError(409, "This league is already in your dashboard.")
        if len(current_ids) >= self.config.max_leagues_per_user:
            raise GuardrailError(
                400,
                f"You can add up to {self.config.max_leagues_per_user} leagues while beta limits are active.",
            )

        if not preview:
            if not self.config.add_league_enabled:
                raise GuardrailError(503, "Adding new leagues is temporarily paused while we manage beta capacity.")
            global_active = await self._fresh_active_jobs()
            if len(global_active) >= self.config.global_active_backfill_limit:
                raise GuardrailError(503, "League processing is currently at capacity. Please try again shortly.")

        try:
            meta, entries = await self.views.fetch_league(league_id)
        except (LeagueNotFoundError, LeagueFetchError):
            raise GuardrailError(404, f"Could not find FPL classic league {league_id}.")

        manager_count = len(entries)
        if meta["has_more"] or manager_count > self.config.max_managers_per_league:
            raise GuardrailError(
                400,
                f"League too large for beta limits ({manager_count}{'+' if meta['has_more'] else ''} managers). "
                f"The current limit is {self.config.max_managers_per_league}.",
            )

        league = {"id": league_id, "name": meta["name"]}
        if preview:
            return {"league": league, "managerCount": manager_count, "preview": True}

        if await self._fresh_active_jobs(current_ids):
            raise GuardrailError(
                409,
                "A league backfill is already in progress. Please wait for it to finish before adding another league.",
            )

        created = await self.user_leagues.add(user_id, league_id, meta["name"])
        if created is None:
            raise GuardrailError(500, "Failed to persist your league configuration.")

        current_gw = await self.fpl_client.get_current_gameweek()
        warm = await self.warmup.warm(
            league_id=league_id,
            current_gw=current_gw,
            origin=origin,
            to_gw=current_gw,
            concurrency=self.config.add_league_warmup_concurrency,
            time_budget_ms=self.config.add_league_warmup_time_budget_ms,
        )
        queued = await self.queue.enqueue(league_id)
        if queued:
            self.trigger_backfill_runner(origin)

        if self.notifier is not None:
            await self.notifier.send(
                LEAGUE_ADDED,
                "A user added a league.",
                email=email,
                league_id=league_id,
                league_name=meta["name"],
                manager_count=manager_count,
                warmup_attempted=warm.attempted,
                warmup_succeeded=warm.succeeded,
                warmup_failed=warm.failed,
                warmup_timed_out=warm.timed_out,
                backfill_queued=queued,
            )

        logger.info("League added", extra={
            "league_id": league_id, "managers": manager_count, "backfill_queued": queued,
        })
        return {
            "league": league,
            "created": created,
            "cacheWarmup": {
                "attempted": warm.attempted,
                "succeeded": warm.succeeded,
                "failed": warm.failed,
                "timedOut": warm.timed_out,
            },
            "fullBackfillQueued": queued,
        }

    async def remove_league(self, user_id: str, raw_league_id: Any) -> Dict[str, Any]:
        league_id = parse_league_id(raw_league_id)
        if league_id is None:
            raise GuardrailError(400, "Invalid leagueId. Expected a positive integer.")

        removed = await self.user_leagues.remove(user_id, league_id)
        if removed is None:
            raise GuardrailError(500, "Failed to remove league.")
        if not removed:
            raise GuardrailError(404, "League was not found for this user.")

        await self.queue.remove_pending(league_id)
        await self.cache.purge_if_unreferenced(league_id)
        return {"removed": True, "leagues": await self.list_leagues(user_id)}

    async def seed_default_leagues(self, user_id: str) -> int:
        """
        Give a user with no leagues the configured default leagues.

        Names come from upstream where available, else the ``League <id>``
        placeholder that ``list_leagues`` heals later. Returns how many rows
        were created; store failures are logged and count as zero.
        """
        defaults = self.config.default_league_ids
        if not defaults:
            return 0
        existing = await self.user_leagues.list_for_user(user_id)
        if existing is None or existing:
            return 0

        async def named(league_id: int):
            try:
                meta, _ = await self.views.fetch_league(league_id)
            except (LeagueNotFoundError, LeagueFetchError):
                return league_id, f"League {league_id}"
            return league_id, meta["name"]

        leagues = await map_with_concurrency(defaults, self.config.warm_cache_concurrency, named)
        created = await self.user_leagues.add_many(user_id, leagues)
        if created is None:
            return 0
        logger.info("Default leagues seeded", extra={"created": created, "league_count": len(leagues)})
        return created

    async def backfill_status(self, user_id: str) -> Dict[str, Any]:
        leagues = await self.user_leagues.list_for_user(user_id) or []
        jobs = await self.queue.list_for_leagues([row.get("league_id") for row in leagues])
        return {
            "summary": {
                "queued": sum(1 for job in jobs if job.status == PENDING),
                "running": sum(1 for job in jobs if job.status == RUNNING),
                "failed": sum(1 for job in jobs if job.status == FAILED),
            },
            "jobs": [
                {
                    "id": job.id,
                    "leagueId": job.league_id,
                    "status": job.status,
                    "attempts": job.attempts,
                    "lastError": job.last_error,
                    "updatedAt": job.updated_at,
                }
                for job in jobs
            ],
        }

    async def retry_backfill(self, user_id: str, origin: str) -> int:
        leagues = await self.user_leagues.list_for_user(user_id) or []
        queued = await self.queue.requeue_failed([row.get("league_id") for row in leagues])
        if queued > 0:
            self.trigger_backfill_runner(origin)
        return queued

    def trigger_backfill_runner(self, origin: str) -> asyncio.Task:
        """Fire-and-forget POST to the backfill runner endpoint."""
        headers = {}
        if self.config.backfill_runner_secret:
            headers["x-backfill-secret"] = self.config.backfill_runner_secret

        async def post():
            try:
                await self.http_client.post(f"{origin.rstrip('/')}{BACKFILL_RUN_PATH}", headers=headers)
            except httpx.HTTPError as e:
                logger.warning("Backfill runner trigger failed", extra={"error": type(e).__name__})

        task = asyncio.create_task(post())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
