"""
Signed-in user endpoints: league list management and backfill status.

Every handler resolves the user through the session manager; a refreshed
session is written back as cookies on whatever response is returned.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.services import Services, get_services
from auth.session import SessionState, SessionUserResult, attach_auth_cookies, clear_auth_cookies
from league.user_leagues import GuardrailError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/user", tags=["user"])


def respond(
    services: Services,
    session: SessionUserResult,
    body: Dict[str, Any],
    status_code: int = 200,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    response = JSONResponse(body, status_code=status_code, headers=headers)
    return attach_auth_cookies(response, session.refreshed_session, services.config)


def unauthorized(services: Services, session: SessionUserResult) -> JSONResponse:
    response = JSONResponse({"error": "Unauthorized."}, status_code=401)
    if session.reauth_reason == SessionState.REFRESH_INVALID.value:
        clear_auth_cookies(response, services.config)
    return response


def guardrail_response(services: Services, session: SessionUserResult, exc: GuardrailError) -> JSONResponse:
    body = {"error": exc.message}
    headers = None
    if exc.retry_after_seconds is not None:
        body["retryAfterSeconds"] = exc.retry_after_seconds
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return respond(services, session, body, status_code=exc.status_code, headers=headers)


def request_origin(request: Request) -> str:
    return str(request.base_url).rstrip("/")


@router.get("/leagues")
async def list_leagues(request: Request, services: Services = Depends(get_services)):
    session = await services.sessions.get_request_session_user(request)
    if not session.user:
        return unauthorized(services, session)

    leagues = await services.user_leagues.list_leagues(session.user["id"])
    guardrails = await services.user_leagues.guardrails([league["id"] for league in leagues])
    return respond(services, session, {
        "leagues": leagues,
        "limits": services.user_leagues.limits(),
        "guardrails": guardrails,
    })


@router.post("/leagues")
async def add_league(request: Request, services: Services = Depends(get_services)):
    session = await services.sessions.get_request_session_user(request)
    if not session.user:
        return unauthorized(services, session)

    try:
        body = await request.json()
    except ValueError:
        return respond(services, session, {"error": "Invalid JSON body."}, status_code=400)
    if not isinstance(body, dict):
        return respond(services, session, {"error": "Invalid JSON body."}, status_code=400)

    try:
        result = await services.user_leagues.add_league(
            session.user["id"],
            body.get("leagueId"),
            preview=body.get("preview") is True,
            origin=request_origin(request),
            email=session.user.get("email"),
        )
    except GuardrailError as e:
        return guardrail_response(services, session, e)
    return respond(services, session, result)


@router.delete("/leagues")
async def remove_league(request: Request, services: Services = Depends(get_services)):
    session = await services.sessions.get_request_session_user(request)
    if not session.user:
        return unauthorized(services, session)

    try:
        result = await services.user_leagues.remove_league(
            session.user["id"], request.query_params.get("leagueId")
        )
    except GuardrailError as e:
        return guardrail_response(services, session, e)
    return respond(services, session, result)


@router.get("/backfill-status")
async def backfill_status(request: Request, services: Services = Depends(get_services)):
    session = await services.sessions.get_request_session_user(request)
    if not session.user:
        return unauthorized(services, session)

    config = services.config
    first_visit = request.cookies.get(config.leagues_seeded_cookie) is None
    if first_visit:
        await services.user_leagues.seed_default_leagues(session.user["id"])

    response = respond(services, session, await services.user_leagues.backfill_status(session.user["id"]))
    if first_visit:
        response.set_cookie(
            config.leagues_seeded_cookie,
            "1",
            max_age=config.leagues_seeded_cookie_max_age,
            path="/",
            httponly=True,
            samesite="lax",
            secure=config.is_production,
        )
    return response


@router.post("/backfill-retry")
async def backfill_retry(request: Request, services: Services = Depends(get_services)):
    session = await services.sessions.get_request_session_user(request)
    if not session.user:
        return unauthorized(services, session)

    queued = await services.user_leagues.retry_backfill(session.user["id"], request_origin(request))
    return respond(services, session, {"ok": True, "queued": queued})
