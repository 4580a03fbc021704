"""
Service wiring for the API process.

Everything is built once from a ``Config`` and kept on ``app.state``;
tests pass their own store, upstream client and transports.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request

from auth.gotrue import GoTrueClient
from auth.session import AuthSessionManager
from cache.league_cache import LeagueCacheStore
from config import Config
from database.repositories import (
    BackfillJobRepository,
    CachePayloadRepository,
    RateLimitRepository,
    UserLeagueRepository,
)
from database.supabase_client import SupabaseClient
from fpl_api.client import FPLAPIClient
from jobs.backfill_queue import BackfillJobQueue
from league.user_leagues import UserLeagueService
from league.views import LeagueViewService
from refresh.backfill import BackfillRunner
from refresh.live import LiveLeagueRefresher
from refresh.warmup import CacheWarmupOrchestrator
from utils.metrics import MetricsSink, build_metrics
from utils.notifications import OpsNotifier

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: Config
    metrics: MetricsSink
    store: object
    fpl_client: FPLAPIClient
    gotrue: GoTrueClient
    sessions: AuthSessionManager
    cache: LeagueCacheStore
    queue: BackfillJobQueue
    views: LeagueViewService
    warmup: CacheWarmupOrchestrator
    runner: BackfillRunner
    live_refresher: LiveLeagueRefresher
    rate_limits: RateLimitRepository
    user_leagues: UserLeagueService
    notifier: OpsNotifier
    http_client: httpx.AsyncClient

    async def close(self):
        await self.fpl_client.close()
        await self.gotrue.close()
        await self.http_client.aclose()


def build_services(
    config: Config,
    store=None,
    fpl_client: Optional[FPLAPIClient] = None,
    auth_transport: Optional[httpx.AsyncBaseTransport] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    metrics: Optional[MetricsSink] = None,
) -> Services:
    metrics = metrics or build_metrics(config)
    store = store if store is not None else SupabaseClient(config)
    fpl_client = fpl_client or FPLAPIClient(config)
    http_client = http_client or httpx.AsyncClient(timeout=60.0)

    payloads = CachePayloadRepository(store, metrics)
    user_league_repo = UserLeagueRepository(store, metrics)
    cache = LeagueCacheStore(payloads, user_league_repo, metrics, ttl_seconds=config.live_cache_ttl_seconds)
    queue = BackfillJobQueue(BackfillJobRepository(store, metrics), metrics)
    views = LeagueViewService(config, fpl_client, cache, metrics)
    warmup = CacheWarmupOrchestrator(http_client=http_client, metrics=metrics)
    rate_limits = RateLimitRepository(store, metrics)
    notifier = OpsNotifier(config.slack_webhook_url, http_client=http_client)
    gotrue = GoTrueClient(config, transport=auth_transport)

    return Services(
        config=config,
        metrics=metrics,
        store=store,
        fpl_client=fpl_client,
        gotrue=gotrue,
        sessions=AuthSessionManager(config, gotrue),
        cache=cache,
        queue=queue,
        views=views,
        warmup=warmup,
        runner=BackfillRunner(config, queue, warmup, fpl_client, notifier, metrics),
        live_refresher=LiveLeagueRefresher(config, user_league_repo, warmup, fpl_client, metrics),
        rate_limits=rate_limits,
        user_leagues=UserLeagueService(
            config,
            user_league_repo,
            rate_limits,
            queue,
            cache,
            views,
            warmup,
            fpl_client,
            notifier=notifier,
            http_client=http_client,
        ),
        notifier=notifier,
        http_client=http_client,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
