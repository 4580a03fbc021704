"""
Supabase Auth (GoTrue) REST client.

Thin wrapper over ``/auth/v1/*``: password sign-in, sign-up, user lookup
for an access token and the raw refresh-token grant. Refresh returns the
status and decoded body so the session manager can classify failures.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx

from config import Config

logger = logging.getLogger(__name__)


class AuthNotConfiguredError(Exception):
    """Raised when no Supabase URL / key is available for auth."""
    pass


@dataclass
class AuthSession:
    access_token: str
    refresh_token: str


@dataclass
class AuthResult:
    ok: bool
    user: Optional[Dict[str, Any]] = None
    session: Optional[AuthSession] = None
    error: Optional[str] = None


def read_auth_error(payload: Dict[str, Any]) -> Optional[str]:
    for key in ("error_description", "error", "message", "msg"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def session_from_payload(payload: Dict[str, Any]) -> Optional[AuthSession]:
    access_token = payload.get("access_token")
    refresh_token = payload.get("refresh_token")
    if not isinstance(access_token, str) or not access_token:
        return None
    if not isinstance(refresh_token, str) or not refresh_token:
        return None
    return AuthSession(access_token=access_token, refresh_token=refresh_token)


class GoTrueClient:
    """HTTP client for the Supabase Auth endpoints."""

    def __init__(self, config: Config, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.client = httpx.AsyncClient(
            timeout=config.auth_refresh_timeout,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return self.config.auth_enabled

    def _headers(self, bearer_token: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.config.auth_key or "",
            "Content-Type": "application/json",
        }
        if bearer_token:
            headers["Authorization"] = f"Bearer {bearer_token}"
        return headers

    def _url(self, path: str) -> str:
        return f"{self.config.supabase_url}{path}"

    @staticmethod
    def _decode(response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}

    async def refresh(self, refresh_token: str) -> Tuple[int, Dict[str, Any]]:
        """
        Exchange a refresh token.

        Raises:
            AuthNotConfiguredError: when auth is not configured
            httpx.HTTPError: on network errors and timeouts
        """
        if not self.configured:
            raise AuthNotConfiguredError("Auth is not configured.")
        response = await self.client.post(
            self._url("/auth/v1/token?grant_type=refresh_token"),
            headers=self._headers(),
            json={"refresh_token": refresh_token},
            timeout=self.config.auth_refresh_timeout,
        )
        return response.status_code, self._decode(response)

    async def sign_in_with_password(self, email: str, password: str) -> AuthResult:
        if not self.configured:
            return AuthResult(ok=False, error="Auth is not configured.")
        try:
            response = await self.client.post(
                self._url("/auth/v1/token?grant_type=password"),
                headers=self._headers(),
                json={"email": email, "password": password},
            )
        except httpx.HTTPError as e:
            logger.warning("Sign in request failed", extra={"error": type(e).__name__})
            return AuthResult(ok=False, error="Sign in failed.")

        payload = self._decode(response)
        session = session_from_payload(payload)
        if not response.is_success or not payload.get("user") or session is None:
            return AuthResult(ok=False, error=read_auth_error(payload) or "Sign in failed.")
        return AuthResult(ok=True, user=payload["user"], session=session)

    async def sign_up(self, email: str, password: str) -> AuthResult:
        if not self.configured:
            return AuthResult(ok=False, error="Auth is not configured.")
        try:
            response = await self.client.post(
                self._url("/auth/v1/signup"),
                headers=self._headers(),
                json={"email": email, "password": password},
            )
        except httpx.HTTPError as e:
            logger.warning("Sign up request failed", extra={"error": type(e).__name__})
            return AuthResult(ok=False, error="Sign up failed.")

        payload = self._decode(response)
        # With email confirmation on, GoTrue returns the user without a session
        user = payload.get("user") or (payload if payload.get("id") else None)
        if not response.is_success or not user:
            return AuthResult(ok=False, error=read_auth_error(payload) or "Sign up failed.")
        return AuthResult(ok=True, user=user, session=session_from_payload(payload))

    async def get_user(self, access_token: str) -> Optional[Dict[str, Any]]:
        """User for an access token, or None when rejected or unreachable."""
        if not self.configured or not access_token:
            return None
        try:
            response = await self.client.get(
                self._url("/auth/v1/user"),
                headers=self._headers(bearer_token=access_token),
            )
        except httpx.HTTPError as e:
            logger.warning("User lookup failed", extra={"error": type(e).__name__})
            return None
        if not response.is_success:
            return None
        payload = self._decode(response)
        return payload if payload.get("id") else None

    async def close(self):
        await self.client.aclose()
