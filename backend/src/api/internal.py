"""
Internal endpoints: backfill runner trigger, live refresh of the current
gameweek, scheduled cache warm, guardrail status and rate limit cleanup.
Not linked from the dashboard. Secrets are compared in constant time.
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.services import Services, get_services
from config import Config

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/internal", tags=["internal"])

UNAUTHORIZED = {"error": "Unauthorized."}


def secrets_match(provided: Optional[str], expected: str) -> bool:
    """Constant-time comparison of a caller-supplied secret."""
    if provided is None:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def is_backfill_authorized(request: Request, config: Config) -> bool:
    if not config.backfill_runner_secret:
        return not config.is_production
    return secrets_match(request.headers.get("x-backfill-secret"), config.backfill_runner_secret)


def is_live_refresh_authorized(request: Request, config: Config) -> bool:
    secret = config.live_refresh_secret or config.backfill_runner_secret
    if not secret:
        return not config.is_production
    provided = request.headers.get("x-live-refresh-secret")
    if provided is None:
        provided = request.headers.get("x-backfill-secret")
    return secrets_match(provided, secret)


def is_cron_authorized(request: Request, config: Config) -> bool:
    if not config.cron_secret:
        return not config.is_production
    if secrets_match(request.headers.get("authorization"), f"Bearer {config.cron_secret}"):
        return True
    return secrets_match(request.query_params.get("token"), config.cron_secret)


def request_origin(request: Request) -> str:
    return str(request.base_url).rstrip("/")


@router.post("/backfill/run")
async def run_backfill(request: Request, services: Services = Depends(get_services)):
    if not is_backfill_authorized(request, services.config):
        return JSONResponse(UNAUTHORIZED, status_code=401)

    processed = await services.runner.run_batch(request_origin(request))
    if not processed:
        return {"ok": True, "message": "No pending jobs."}

    all_ok = all(result.ok for result in processed)
    return JSONResponse(
        {
            "ok": all_ok,
            "processed": [
                {"jobId": r.job_id, "leagueId": r.league_id, "ok": r.ok} for r in processed
            ],
        },
        status_code=200 if all_ok else 500,
    )


@router.get("/warm-league-cache")
async def warm_league_cache(request: Request, services: Services = Depends(get_services)):
    config = services.config
    if not is_cron_authorized(request, config):
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    if not services.cache.enabled:
        return JSONResponse({"error": "Supabase cache not configured"}, status_code=500)

    async with services.metrics.timed("api.internal.warm-league-cache.GET"):
        return await services.views.warm_default_leagues(
            config.default_league_ids, concurrency=config.warm_cache_concurrency
        )


@router.get("/guardrails/status")
async def guardrails_status(request: Request, services: Services = Depends(get_services)):
    config = services.config
    if not is_backfill_authorized(request, config):
        return JSONResponse(UNAUTHORIZED, status_code=401)

    active = services.queue.fresh_active(
        await services.queue.list_active(), config.active_backfill_stale_after_seconds
    )
    return {
        "guardrails": {
            "addLeagueEnabled": config.add_league_enabled,
            "globalActiveBackfillLimit": config.global_active_backfill_limit,
            "activeBackfillStaleAfterSeconds": config.active_backfill_stale_after_seconds,
            "rateLimitRetentionHours": config.rate_limit_retention_hours,
            "previewRateLimit": {
                "windowSeconds": config.league_preview_rate_limit_window_seconds,
                "maxRequests": config.league_preview_rate_limit_max_requests,
            },
            "addRateLimit": {
                "windowSeconds": config.league_add_rate_limit_window_seconds,
                "maxRequests": config.league_add_rate_limit_max_requests,
            },
        },
        "metrics": {
            "activeBackfillJobs": len(active),
            "isGlobalBackfillAtCapacity": len(active) >= config.global_active_backfill_limit,
        },
    }


@router.post("/refresh-live/run")
async def refresh_live(request: Request, services: Services = Depends(get_services)):
    if not is_live_refresh_authorized(request, services.config):
        return JSONResponse(UNAUTHORIZED, status_code=401)

    result = await services.live_refresher.run(request_origin(request))
    return JSONResponse(
        {"ok": result.ok, "currentGw": result.current_gw, "refreshed": result.refreshed},
        status_code=200 if result.ok else 500,
    )


@router.post("/guardrails/cleanup")
async def guardrails_cleanup(request: Request, services: Services = Depends(get_services)):
    config = services.config
    if not is_backfill_authorized(request, config):
        return JSONResponse(UNAUTHORIZED, status_code=401)

    deleted = await services.rate_limits.delete_older_than(config.rate_limit_retention_hours)
    return {"ok": deleted, "retentionHours": config.rate_limit_retention_hours}
