"""
Backend API: league dashboard views served through the durable cache, plus
user league management, auth session endpoints and internal job triggers.
"""

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load .env and ensure backend/src is on path
backend_dir = Path(__file__).resolve().parent.parent.parent
load_dotenv(backend_dir / ".env")
sys.path.insert(0, str(backend_dir / "src"))

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api import auth as auth_routes
from api import internal as internal_routes
from api import user as user_routes
from api.middleware import SessionRefreshMiddleware
from api.services import Services, build_services, get_services
from config import Config
from league.user_leagues import GuardrailError
from league.views import LeagueFetchError, LeagueNotFoundError
from utils.logger import setup_logging

logger = logging.getLogger(__name__)

INVALID_VIEW_PARAMS = "Invalid query params. Expected positive integers for leagueId, gw and currentGw."
INVALID_TREND_PARAMS = "Invalid query params. Expected positive integers for leagueId and gw."


def parse_positive_int(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    raw = raw.strip()
    if not raw.isdigit():
        return None
    value = int(raw)
    return value if value > 0 else None


def error_response(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status_code)


def create_app(config: Optional[Config] = None, services: Optional[Services] = None) -> FastAPI:
    config = config or (services.config if services else Config())
    services = services or build_services(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await services.close()

    app = FastAPI(title="League Dashboard API", version="1.0.0", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(SessionRefreshMiddleware, manager=services.sessions)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LeagueNotFoundError)
    async def league_not_found(request: Request, exc: LeagueNotFoundError):
        return error_response(404, f"League {exc.league_id} not found.")

    @app.exception_handler(LeagueFetchError)
    async def league_fetch_failed(request: Request, exc: LeagueFetchError):
        logger.warning("League fetch failed", extra={"league_id": exc.league_id, "path": request.url.path})
        return error_response(500, f"Failed to fetch league {exc.league_id}")

    @app.exception_handler(GuardrailError)
    async def guardrail_rejected(request: Request, exc: GuardrailError):
        if exc.retry_after_seconds is None:
            return error_response(exc.status_code, exc.message)
        response = error_response(exc.status_code, exc.message, retryAfterSeconds=exc.retry_after_seconds)
        response.headers["Retry-After"] = str(exc.retry_after_seconds)
        return response

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception):
        logger.error("Unhandled error", extra={
            "path": request.url.path,
            "error": str(exc),
            "error_type": type(exc).__name__,
        }, exc_info=exc)
        return error_response(500, "Internal server error.")

    async def view_params(request: Request, services: Services, require_current_gw: bool = True):
        params = request.query_params
        league_id = parse_positive_int(params.get("leagueId"))
        gw = parse_positive_int(params.get("gw"))
        current_gw = parse_positive_int(params.get("currentGw"))
        if current_gw is None and not require_current_gw and params.get("currentGw") is None:
            current_gw = await services.fpl_client.get_current_gameweek()
        if league_id is None or gw is None or current_gw is None:
            return None
        return league_id, gw, current_gw

    @app.get("/health")
    async def health():
        return {"status": "ok", "cache_enabled": config.cache_enabled, "auth_enabled": config.auth_enabled}

    @app.get("/api/league")
    async def league_view(request: Request, services: Services = Depends(get_services)):
        parsed = await view_params(request, services)
        if parsed is None:
            return error_response(400, INVALID_VIEW_PARAMS)
        return await services.views.league(*parsed)

    @app.get("/api/transfers")
    async def transfers_view(request: Request, services: Services = Depends(get_services)):
        parsed = await view_params(request, services, require_current_gw=False)
        if parsed is None:
            return error_response(400, INVALID_VIEW_PARAMS)
        return await services.views.transfers(*parsed)

    @app.get("/api/chips")
    async def chips_view(request: Request, services: Services = Depends(get_services)):
        parsed = await view_params(request, services, require_current_gw=False)
        if parsed is None:
            return error_response(400, INVALID_VIEW_PARAMS)
        return await services.views.chips(*parsed)

    @app.get("/api/activity-impact")
    async def activity_impact_view(request: Request, services: Services = Depends(get_services)):
        parsed = await view_params(request, services)
        if parsed is None:
            return error_response(400, INVALID_VIEW_PARAMS)
        return await services.views.activity_impact(*parsed)

    @app.get("/api/stats-trend")
    async def stats_trend_view(request: Request, services: Services = Depends(get_services)):
        params = request.query_params
        league_id = parse_positive_int(params.get("leagueId"))
        gw = parse_positive_int(params.get("gw"))
        if league_id is None or (gw is None and params.get("gw") is not None):
            return error_response(400, INVALID_TREND_PARAMS)
        window = parse_positive_int(params.get("window"))
        return await services.views.stats_trend(league_id, gw, window)

    app.include_router(internal_routes.router)
    app.include_router(user_routes.router)
    app.include_router(auth_routes.router)
    return app


setup_logging()
app = create_app()
