"""
Session refresh middleware.

Runs before route handlers: when the access token cookie is missing or near
expiry and a refresh token is present, the session is refreshed once. On
success the incoming ``cookie`` header is rewritten so handlers see the new
tokens, and the new cookies are set on the response. On an invalid refresh
token both cookies are cleared. Transient failures leave cookies alone.
"""

import logging
from http.cookies import SimpleCookie
from typing import Callable, Dict, List, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from auth.gotrue import AuthSession
from auth.session import AuthSessionManager, SessionState, attach_auth_cookies, clear_auth_cookies

logger = logging.getLogger(__name__)


def build_cookie_header(cookies: Dict[str, str], overrides: Dict[str, str]) -> str:
    merged = dict(cookies)
    merged.update(overrides)
    return "; ".join(f"{name}={value}" for name, value in merged.items())


def _parse_cookie_header(raw: str) -> Dict[str, str]:
    parsed = SimpleCookie()
    try:
        parsed.load(raw)
    except Exception:
        return {}
    return {name: morsel.value for name, morsel in parsed.items()}


def rewrite_cookie_header(request: Request, session: AuthSession, access_name: str, refresh_name: str):
    """Replace the request's ``cookie`` header in the ASGI scope."""
    headers: List[Tuple[bytes, bytes]] = [
        (key, value) for key, value in request.scope["headers"] if key != b"cookie"
    ]
    raw = "; ".join(
        value.decode("latin-1") for key, value in request.scope["headers"] if key == b"cookie"
    )
    cookie_header = build_cookie_header(
        _parse_cookie_header(raw),
        {access_name: session.access_token, refresh_name: session.refresh_token},
    )
    headers.append((b"cookie", cookie_header.encode("latin-1")))
    request.scope["headers"] = headers


class SessionRefreshMiddleware(BaseHTTPMiddleware):
    """Refresh auth cookies ahead of the route handlers."""

    EXCLUDE_PATHS = {"/health"}

    def __init__(self, app, manager: AuthSessionManager):
        super().__init__(app)
        self.manager = manager

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.EXCLUDE_PATHS:
            return await call_next(request)

        config = self.manager.config
        resolution = await self.manager.resolve(
            request.cookies.get(config.access_token_cookie),
            request.cookies.get(config.refresh_token_cookie),
            source="middleware",
            path=request.url.path,
        )
        request.state.session_resolution = resolution

        if resolution.state is SessionState.REFRESH_SUCCESS:
            rewrite_cookie_header(
                request, resolution.session, config.access_token_cookie, config.refresh_token_cookie
            )
            response = await call_next(request)
            return attach_auth_cookies(response, resolution.session, config)

        response = await call_next(request)
        if resolution.state is SessionState.REFRESH_INVALID:
            clear_auth_cookies(response, config)
        return response
