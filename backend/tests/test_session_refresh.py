"""
Tests for auth session refresh
==============================

Expiry checks, failure classification, retry, single-flight and the
request middleware that rewrites cookies.
"""

import asyncio
import time

import httpx
import jwt
import pytest
from fastapi import FastAPI, Request
from httpx import ASGITransport, AsyncClient

from api.middleware import SessionRefreshMiddleware, build_cookie_header
from auth.gotrue import GoTrueClient
from auth.session import (
    AuthSessionManager,
    SessionState,
    classify_refresh_failure,
    is_expired_or_near_expiry,
)
from fakes import make_config


def make_token(expires_in: int) -> str:
    return jwt.encode({"sub": "user-1", "exp": int(time.time()) + expires_in}, "test-secret", algorithm="HS256")


NEW_ACCESS = make_token(3600)
FRESH_PAYLOAD = {"access_token": NEW_ACCESS, "refresh_token": "new-refresh", "token_type": "bearer"}


class AuthServer:
    """MockTransport handler scripted with a list of (status, body) replies."""

    def __init__(self, replies=None, delay: float = 0.0):
        self.replies = list(replies or [(200, FRESH_PAYLOAD)])
        self.delay = delay
        self.refresh_calls = 0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/auth/v1/user":
            if request.headers.get("authorization") == f"Bearer {NEW_ACCESS}":
                return httpx.Response(200, json={"id": "user-1", "email": "a@example.com"})
            return httpx.Response(401, json={"msg": "bad jwt"})
        self.refresh_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        status, body = self.replies[min(self.refresh_calls, len(self.replies)) - 1]
        if isinstance(body, Exception):
            raise body
        return httpx.Response(status, json=body)


def make_manager(server: AuthServer, **config_overrides) -> AuthSessionManager:
    config = make_config(**config_overrides)
    return AuthSessionManager(config, GoTrueClient(config, transport=httpx.MockTransport(server)))


# =============================================================================
# HELPERS
# =============================================================================

def test_expiry_detection():
    assert not is_expired_or_near_expiry(make_token(3600))
    assert is_expired_or_near_expiry(make_token(30), skew_seconds=60)
    assert is_expired_or_near_expiry(make_token(-10))
    assert is_expired_or_near_expiry("not-a-jwt")
    assert is_expired_or_near_expiry(jwt.encode({"sub": "x"}, "k", algorithm="HS256"))


def test_refresh_failure_classification():
    assert classify_refresh_failure(401, {}) is SessionState.REFRESH_INVALID
    assert classify_refresh_failure(403, {}) is SessionState.REFRESH_INVALID
    assert classify_refresh_failure(400, {"error": "invalid_grant"}) is SessionState.REFRESH_INVALID
    assert classify_refresh_failure(400, {"error": "bad_json"}) is SessionState.REFRESH_TRANSIENT
    assert classify_refresh_failure(503, {}) is SessionState.REFRESH_TRANSIENT


def test_build_cookie_header_overrides_tokens():
    header = build_cookie_header({"theme": "dark", "fpl_access_token": "old"}, {"fpl_access_token": "new"})
    assert header == "theme=dark; fpl_access_token=new"


# =============================================================================
# MANAGER
# =============================================================================

@pytest.mark.asyncio
async def test_refresh_success():
    server = AuthServer()
    outcome = await make_manager(server).refresh("rt-1")

    assert outcome.state is SessionState.REFRESH_SUCCESS
    assert outcome.session.access_token == NEW_ACCESS
    assert outcome.session.refresh_token == "new-refresh"
    assert server.refresh_calls == 1


@pytest.mark.asyncio
async def test_concurrent_refreshes_share_one_upstream_call():
    server = AuthServer(delay=0.05)
    manager = make_manager(server)

    outcomes = await asyncio.gather(*(manager.refresh("rt-1") for _ in range(5)))

    assert server.refresh_calls == 1
    assert all(o.state is SessionState.REFRESH_SUCCESS for o in outcomes)
    assert manager.single_flight.in_flight() == 0


@pytest.mark.asyncio
async def test_invalid_grant_is_not_retried():
    server = AuthServer([(400, {"error": "invalid_grant", "error_description": "Invalid Refresh Token"})])
    outcome = await make_manager(server).refresh("rt-1")

    assert outcome.state is SessionState.REFRESH_INVALID
    assert server.refresh_calls == 1


@pytest.mark.asyncio
async def test_transient_failure_is_retried_once():
    server = AuthServer([(503, {"message": "unavailable"}), (503, {"message": "unavailable"})])
    outcome = await make_manager(server).refresh("rt-1")

    assert outcome.state is SessionState.REFRESH_TRANSIENT
    assert server.refresh_calls == 2


@pytest.mark.asyncio
async def test_transient_then_success():
    server = AuthServer([(502, {}), (200, FRESH_PAYLOAD)])
    outcome = await make_manager(server).refresh("rt-1")

    assert outcome.state is SessionState.REFRESH_SUCCESS
    assert server.refresh_calls == 2


@pytest.mark.asyncio
async def test_network_error_is_transient():
    server = AuthServer([(0, httpx.ConnectError("connection refused"))])
    outcome = await make_manager(server).refresh("rt-1")

    assert outcome.state is SessionState.REFRESH_TRANSIENT


@pytest.mark.asyncio
async def test_missing_tokens_in_success_response_is_transient():
    server = AuthServer([(200, {"access_token": "only-access"})])
    outcome = await make_manager(server).refresh("rt-1")

    assert outcome.state is SessionState.REFRESH_TRANSIENT
    assert "missing" in outcome.error


@pytest.mark.asyncio
async def test_unconfigured_auth_is_transient_without_calls():
    server = AuthServer()
    outcome = await make_manager(server, supabase_url="", supabase_key="", supabase_service_key=None).refresh("rt")

    assert outcome.state is SessionState.REFRESH_TRANSIENT
    assert server.refresh_calls == 0


@pytest.mark.asyncio
async def test_resolve_states():
    server = AuthServer()
    manager = make_manager(server)

    assert (await manager.resolve(make_token(3600), "rt")).state is SessionState.VALID
    assert (await manager.resolve(make_token(10), None)).state is SessionState.UNAUTHENTICATED
    assert (await manager.resolve(None, "rt")).state is SessionState.REFRESH_SUCCESS
    assert server.refresh_calls == 1


# =============================================================================
# MIDDLEWARE
# =============================================================================

def make_app(manager: AuthSessionManager) -> FastAPI:
    app = FastAPI()
    app.add_middleware(SessionRefreshMiddleware, manager=manager)

    @app.get("/whoami")
    async def whoami(request: Request):
        result = await manager.get_request_session_user(request)
        return {
            "access": request.cookies.get("fpl_access_token"),
            "theme": request.cookies.get("theme"),
            "user": (result.user or {}).get("id"),
            "reauth": result.reauth_reason,
        }

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


@pytest.mark.asyncio
async def test_middleware_refreshes_and_rewrites_cookies():
    server = AuthServer()
    manager = make_manager(server)
    cookies = {"fpl_access_token": make_token(5), "fpl_refresh_token": "rt-1", "theme": "dark"}

    async with AsyncClient(transport=ASGITransport(app=make_app(manager)), base_url="http://test",
                           cookies=cookies) as client:
        response = await client.get("/whoami")

    assert response.status_code == 200
    body = response.json()
    assert body["access"] == NEW_ACCESS
    assert body["theme"] == "dark"
    assert body["user"] == "user-1"
    set_cookies = response.headers.get_list("set-cookie")
    assert any(c.startswith(f"fpl_access_token={NEW_ACCESS}") for c in set_cookies)
    assert any(c.startswith("fpl_refresh_token=new-refresh") for c in set_cookies)
    assert all("httponly" in c.lower() for c in set_cookies)
    assert server.refresh_calls == 1


@pytest.mark.asyncio
async def test_middleware_clears_cookies_on_invalid_refresh():
    server = AuthServer([(401, {"msg": "revoked"})])
    manager = make_manager(server)
    cookies = {"fpl_access_token": make_token(-100), "fpl_refresh_token": "rt-1"}

    async with AsyncClient(transport=ASGITransport(app=make_app(manager)), base_url="http://test",
                           cookies=cookies) as client:
        response = await client.get("/whoami")

    body = response.json()
    assert body["user"] is None
    assert body["reauth"] == "refresh_invalid"
    set_cookies = response.headers.get_list("set-cookie")
    assert any(c.startswith("fpl_access_token=") and "Max-Age=0" in c for c in set_cookies)
    # the handler reuses the middleware's outcome instead of refreshing again
    assert server.refresh_calls == 1


@pytest.mark.asyncio
async def test_middleware_keeps_cookies_on_transient_failure():
    server = AuthServer([(500, {}), (500, {})])
    manager = make_manager(server)
    cookies = {"fpl_access_token": make_token(-100), "fpl_refresh_token": "rt-1"}

    async with AsyncClient(transport=ASGITransport(app=make_app(manager)), base_url="http://test",
                           cookies=cookies) as client:
        response = await client.get("/whoami")

    assert response.json()["reauth"] == "refresh_transient"
    assert response.headers.get_list("set-cookie") == []
    assert server.refresh_calls == 2


@pytest.mark.asyncio
async def test_middleware_skips_health():
    server = AuthServer()
    manager = make_manager(server)

    async with AsyncClient(transport=ASGITransport(app=make_app(manager)), base_url="http://test",
                           cookies={"fpl_refresh_token": "rt-1"}) as client:
        response = await client.get("/health")

    assert response.status_code == 200
    assert server.refresh_calls == 0
