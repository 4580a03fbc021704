"""Email/password auth endpoints backed by Supabase Auth."""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.services import Services, get_services
from auth.session import SessionState, attach_auth_cookies, clear_auth_cookies
from utils.notifications import AUTH_SUCCESS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

MIN_PASSWORD_LENGTH = 8


async def read_credentials(request: Request):
    """(email, password) from the JSON body, or None when the body is not JSON."""
    try:
        body = await request.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    email = str(body.get("email") or "").strip().lower()
    password = str(body.get("password") or "")
    return email, password


def public_user(user: dict, fallback_email: str = None) -> dict:
    return {"id": user.get("id"), "email": user.get("email") or fallback_email}


@router.post("/login")
async def login(request: Request, services: Services = Depends(get_services)):
    credentials = await read_credentials(request)
    if credentials is None:
        return JSONResponse({"error": "Invalid JSON body."}, status_code=400)
    email, password = credentials
    if not email or not password:
        return JSONResponse({"error": "Email and password are required."}, status_code=400)

    result = await services.gotrue.sign_in_with_password(email, password)
    if not result.ok:
        return JSONResponse({"error": result.error}, status_code=401)

    await services.notifier.send(AUTH_SUCCESS, "User signed in.", email=email, auth_method="password")
    response = JSONResponse({"ok": True, "user": public_user(result.user, email)})
    return attach_auth_cookies(response, result.session, services.config)


@router.post("/signup")
async def signup(request: Request, services: Services = Depends(get_services)):
    credentials = await read_credentials(request)
    if credentials is None:
        return JSONResponse({"error": "Invalid JSON body."}, status_code=400)
    email, password = credentials
    if not email or len(password) < MIN_PASSWORD_LENGTH:
        return JSONResponse(
            {"error": f"Email and password (min {MIN_PASSWORD_LENGTH} chars) are required."},
            status_code=400,
        )

    result = await services.gotrue.sign_up(email, password)
    if not result.ok:
        return JSONResponse({"error": result.error}, status_code=400)

    response = JSONResponse({
        "ok": True,
        "user": public_user(result.user, email),
        "requiresEmailConfirmation": result.session is None,
    })
    return attach_auth_cookies(response, result.session, services.config)


@router.post("/logout")
async def logout(services: Services = Depends(get_services)):
    return clear_auth_cookies(JSONResponse({"ok": True}), services.config)


@router.get("/session")
async def session(request: Request, services: Services = Depends(get_services)):
    result = await services.sessions.get_request_session_user(request)
    user = result.user
    metadata = (user or {}).get("user_metadata") or {}
    response = JSONResponse({
        "isAuthenticated": bool(user),
        "user": {
            "id": user.get("id"),
            "email": user.get("email"),
            "name": metadata.get("full_name") or metadata.get("name"),
            "avatarUrl": metadata.get("avatar_url") or metadata.get("picture"),
        } if user else None,
    })
    if result.reauth_reason == SessionState.REFRESH_INVALID.value:
        return clear_auth_cookies(response, services.config)
    return attach_auth_cookies(response, result.refreshed_session, services.config)
