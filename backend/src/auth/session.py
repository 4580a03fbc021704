"""
Auth session refresh.

Sessions are an access token (JWT with ``exp``) plus an opaque refresh
token, both stored in httpOnly cookies. A request whose access token is
missing or within the expiry skew goes through one refresh:

    valid            access token usable, nothing to do
    needs_refresh    refresh token present, access token near expiry
    refresh_success  new session issued; cookies rewritten
    refresh_invalid  401/403 or 400 invalid_grant; cookies cleared
    refresh_transient network error, timeout, 5xx, malformed response or
                     auth not configured; request continues unauthenticated
                     and cookies are kept
    unauthenticated  no refresh token

Refreshes are single-flight per refresh token inside the process, and a
transient failure is retried once after a short delay.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import httpx
import jwt
from starlette.requests import Request
from starlette.responses import Response

from auth.gotrue import (
    AuthNotConfiguredError,
    AuthSession,
    GoTrueClient,
    read_auth_error,
    session_from_payload,
)
from auth.telemetry import (
    FORCED_REAUTH_REASON,
    REFRESH_FAILED_INVALID,
    REFRESH_FAILED_TRANSIENT,
    REFRESH_SUCCESS,
    emit_auth_telemetry,
)
from config import Config
from utils.concurrency import SingleFlight

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    VALID = "valid"
    NEEDS_REFRESH = "needs_refresh"
    REFRESH_SUCCESS = "refresh_success"
    REFRESH_INVALID = "refresh_invalid"
    REFRESH_TRANSIENT = "refresh_transient"
    UNAUTHENTICATED = "unauthenticated"


@dataclass
class RefreshOutcome:
    state: SessionState
    session: Optional[AuthSession] = None
    status: Optional[int] = None
    error: Optional[str] = None


@dataclass
class SessionResolution:
    state: SessionState
    session: Optional[AuthSession] = None


@dataclass
class SessionUserResult:
    user: Optional[Dict[str, Any]]
    refreshed_session: Optional[AuthSession] = None
    reauth_reason: Optional[str] = None


def token_expiry(token: str) -> Optional[int]:
    """``exp`` claim read without signature verification; None if unreadable."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    return int(exp)


def is_expired_or_near_expiry(token: str, skew_seconds: int = 60, now: Optional[float] = None) -> bool:
    """Malformed tokens and tokens without ``exp`` count as expired."""
    exp = token_expiry(token)
    if not exp:
        return True
    now = time.time() if now is None else now
    return exp <= int(now) + skew_seconds


def classify_refresh_failure(status: int, payload: Dict[str, Any]) -> SessionState:
    if status in (401, 403):
        return SessionState.REFRESH_INVALID
    error_text = (read_auth_error(payload) or "").lower()
    if status == 400 and "invalid_grant" in error_text:
        return SessionState.REFRESH_INVALID
    return SessionState.REFRESH_TRANSIENT


class AuthSessionManager:
    """Shared refresh state machine for the middleware and route handlers."""

    def __init__(
        self,
        config: Config,
        gotrue: GoTrueClient,
        single_flight: Optional[SingleFlight] = None,
    ):
        self.config = config
        self.gotrue = gotrue
        self.single_flight = single_flight or SingleFlight()

    def needs_refresh(self, access_token: Optional[str]) -> bool:
        if not access_token:
            return True
        return is_expired_or_near_expiry(access_token, self.config.auth_expiry_skew_seconds)

    async def _run_refresh(self, refresh_token: str, source: str, path: str, attempt: int) -> RefreshOutcome:
        telemetry = {"source": source, "path": path, "attempt": attempt}
        try:
            status, payload = await self.gotrue.refresh(refresh_token)
        except AuthNotConfiguredError:
            emit_auth_telemetry(REFRESH_FAILED_TRANSIENT, reason="auth_unconfigured", **telemetry)
            return RefreshOutcome(SessionState.REFRESH_TRANSIENT, error="Auth is not configured.")
        except httpx.TimeoutException:
            emit_auth_telemetry(REFRESH_FAILED_TRANSIENT, reason="timeout", **telemetry)
            return RefreshOutcome(SessionState.REFRESH_TRANSIENT, error="Refresh request failed.")
        except httpx.HTTPError as e:
            emit_auth_telemetry(REFRESH_FAILED_TRANSIENT, reason=type(e).__name__, **telemetry)
            return RefreshOutcome(SessionState.REFRESH_TRANSIENT, error="Refresh request failed.")

        if not 200 <= status < 300:
            state = classify_refresh_failure(status, payload)
            error = read_auth_error(payload)
            emit_auth_telemetry(
                REFRESH_FAILED_INVALID if state is SessionState.REFRESH_INVALID else REFRESH_FAILED_TRANSIENT,
                status=status,
                reason=error or f"http_{status}",
                **telemetry,
            )
            return RefreshOutcome(state, status=status, error=error)

        session = session_from_payload(payload)
        if session is None:
            emit_auth_telemetry(
                REFRESH_FAILED_TRANSIENT,
                status=status,
                reason="missing_tokens_in_refresh_response",
                **telemetry,
            )
            return RefreshOutcome(
                SessionState.REFRESH_TRANSIENT,
                status=status,
                error="Refresh succeeded but tokens were missing from response.",
            )

        emit_auth_telemetry(REFRESH_SUCCESS, status=status, **telemetry)
        return RefreshOutcome(SessionState.REFRESH_SUCCESS, session=session, status=status)

    async def _refresh_with_retry(self, refresh_token: str, source: str, path: str) -> RefreshOutcome:
        first = await self._run_refresh(refresh_token, source, path, attempt=1)
        if first.state is not SessionState.REFRESH_TRANSIENT:
            return first
        await asyncio.sleep(self.config.auth_refresh_retry_delay)
        return await self._run_refresh(refresh_token, source, path, attempt=2)

    async def refresh(self, refresh_token: str, source: str = "api", path: str = "") -> RefreshOutcome:
        """Refresh a session; concurrent callers with the same token share one upstream call."""
        return await self.single_flight.do(
            refresh_token,
            lambda: self._refresh_with_retry(refresh_token, source, path),
        )

    async def resolve(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str],
        source: str = "middleware",
        path: str = "",
    ) -> SessionResolution:
        if access_token and not self.needs_refresh(access_token):
            return SessionResolution(SessionState.VALID)
        if not refresh_token:
            return SessionResolution(SessionState.UNAUTHENTICATED)
        outcome = await self.refresh(refresh_token, source=source, path=path)
        return SessionResolution(outcome.state, outcome.session)

    async def get_request_session_user(self, request: Request) -> SessionUserResult:
        """
        Resolve the user behind a request's auth cookies.

        Handlers attach ``refreshed_session`` to their response with
        ``attach_auth_cookies`` and clear cookies when ``reauth_reason`` is
        ``refresh_invalid``.
        """
        access_token = request.cookies.get(self.config.access_token_cookie)
        refresh_token = request.cookies.get(self.config.refresh_token_cookie)
        path = request.url.path

        if access_token and not self.needs_refresh(access_token):
            user = await self.gotrue.get_user(access_token)
            if user:
                return SessionUserResult(user=user)

        if not refresh_token:
            return SessionUserResult(user=None)

        # The middleware already tried this refresh token for this request
        earlier = getattr(request.state, "session_resolution", None)
        if earlier is not None and earlier.state in (SessionState.REFRESH_INVALID, SessionState.REFRESH_TRANSIENT):
            outcome = RefreshOutcome(earlier.state)
        else:
            outcome = await self.refresh(refresh_token, source="api", path=path)
        if outcome.state is not SessionState.REFRESH_SUCCESS:
            reason = outcome.state.value
            emit_auth_telemetry(FORCED_REAUTH_REASON, source="api", path=path, reason=reason)
            return SessionUserResult(user=None, reauth_reason=reason)

        user = await self.gotrue.get_user(outcome.session.access_token)
        if not user:
            emit_auth_telemetry(FORCED_REAUTH_REASON, source="api", path=path, reason="user_lookup_failed")
            return SessionUserResult(user=None, reauth_reason="user_lookup_failed")
        return SessionUserResult(user=user, refreshed_session=outcome.session)


def _cookie_kwargs(config: Config) -> Dict[str, Any]:
    return {
        "path": "/",
        "httponly": True,
        "samesite": "lax",
        "secure": config.is_production,
    }


def attach_auth_cookies(response: Response, session: Optional[AuthSession], config: Config) -> Response:
    if session is None:
        return response
    kwargs = _cookie_kwargs(config)
    response.set_cookie(config.access_token_cookie, session.access_token,
                        max_age=config.session_cookie_max_age, **kwargs)
    response.set_cookie(config.refresh_token_cookie, session.refresh_token,
                        max_age=config.session_cookie_max_age, **kwargs)
    return response


def clear_auth_cookies(response: Response, config: Config) -> Response:
    kwargs = _cookie_kwargs(config)
    response.set_cookie(config.access_token_cookie, "", max_age=0, **kwargs)
    response.set_cookie(config.refresh_token_cookie, "", max_age=0, **kwargs)
    return response
