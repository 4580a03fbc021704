"""
FPL API Client with rate limiting, retry logic, and error handling.

Handles all read-only communication with the Fantasy Premier League API.
Public getters return ``None`` (or an empty collection) when the upstream
is unavailable so callers can degrade gracefully; only a missing league is
surfaced as an exception.
"""

import asyncio
import logging
import random
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
from asyncio_throttle import Throttler

from config import Config

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "application/json",
    "Accept-Language": "en-US,en;q=0.9",
    "Referer": "https://fantasy.premierleague.com/",
}


class FPLAPIError(Exception):
    """Base exception for FPL API errors."""
    pass


class FPLAPIRateLimitError(FPLAPIError):
    """Raised when rate limit is exceeded."""
    pass


class FPLAPINonRetryableError(FPLAPIError):
    """Raised for non-retryable errors (4xx except 429)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class FPLAPINotFoundError(FPLAPINonRetryableError):
    """Raised when the requested resource does not exist (404)."""
    pass


class FPLAPIClient:
    """Client for interacting with the FPL API."""

    def __init__(self, config: Config, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.base_url = config.fpl_api_base_url
        self.max_retries = config.max_retries
        self.retry_backoff_base = config.retry_backoff_base
        self.max_retry_delay = config.max_retry_delay

        self.throttler: Optional[Throttler] = None
        if config.max_requests_per_minute > 0:
            self.throttler = Throttler(
                rate_limit=config.max_requests_per_minute,
                period=60.0
            )
        self.min_interval = config.min_request_interval
        self.last_request_time = 0.0

        # Cache for bootstrap-static (players + gameweek metadata)
        self._bootstrap_cache: Optional[Dict[str, Any]] = None
        self._bootstrap_cache_time: Optional[datetime] = None
        self._bootstrap_cache_ttl = timedelta(seconds=config.bootstrap_cache_ttl)
        self._bootstrap_lock = asyncio.Lock()

        self.client = httpx.AsyncClient(
            timeout=config.fpl_request_timeout,
            follow_redirects=True,
            headers=DEFAULT_HEADERS,
            transport=transport,
        )

    async def _wait_for_rate_limit(self):
        """Wait to respect rate limiting."""
        if self.throttler is not None:
            await self.throttler.acquire()

        if self.min_interval > 0:
            current_time = time.time()
            time_since_last = current_time - self.last_request_time
            if time_since_last < self.min_interval:
                wait_time = self.min_interval - time_since_last
                # Add jitter (±25%)
                jitter = wait_time * 0.25 * (random.random() * 2 - 1)
                await asyncio.sleep(wait_time + jitter)

        self.last_request_time = time.time()

    def _is_retryable_error(self, status_code: int) -> bool:
        """Check if error is retryable."""
        # Retryable: 429 (rate limit), 500, 502, 503, 504
        # Non-retryable: 400, 401, 403, 404
        return status_code in {429, 500, 502, 503, 504}

    def _backoff(self, attempt: int) -> float:
        backoff = min(self.retry_backoff_base * (2 ** attempt), self.max_retry_delay)
        jitter = backoff * 0.25 * (random.random() * 2 - 1)
        return max(0.0, backoff + jitter)

    async def _request_with_retry(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        """
        Make HTTP request with retry logic.

        Args:
            method: HTTP method
            endpoint: API endpoint path
            **kwargs: Additional arguments for httpx request

        Returns:
            httpx.Response object

        Raises:
            FPLAPIRateLimitError: If rate limited after retries
            FPLAPINotFoundError: On 404
            FPLAPINonRetryableError: If non-retryable error
            FPLAPIError: For other errors after retries exhausted
        """
        if endpoint.startswith("http"):
            url = endpoint
        else:
            url = f"{self.base_url.rstrip('/')}/{endpoint.lstrip('/')}"
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            try:
                await self._wait_for_rate_limit()
                response = await self.client.request(method, url, **kwargs)

                if response.is_success:
                    return response

                status_code = response.status_code

                if status_code == 429:
                    retry_after = int(response.headers.get("Retry-After", 60))
                    logger.warning("Rate limited by FPL API", extra={
                        "endpoint": endpoint,
                        "retry_after": retry_after,
                        "attempt": attempt + 1
                    })
                    if attempt < self.max_retries:
                        await asyncio.sleep(min(retry_after, self.max_retry_delay))
                        continue
                    raise FPLAPIRateLimitError(f"Rate limited after {self.max_retries} retries")

                if not self._is_retryable_error(status_code):
                    error_text = response.text[:500]
                    if status_code == 404:
                        raise FPLAPINotFoundError(f"Not found: {endpoint}", status_code=404)
                    logger.error("Non-retryable error from FPL API", extra={
                        "endpoint": endpoint,
                        "status_code": status_code,
                        "error": error_text
                    })
                    raise FPLAPINonRetryableError(
                        f"Non-retryable error {status_code}: {error_text}",
                        status_code=status_code,
                    )

                if attempt < self.max_retries:
                    wait_time = self._backoff(attempt)
                    logger.warning("Retryable error from FPL API, retrying", extra={
                        "endpoint": endpoint,
                        "status_code": status_code,
                        "attempt": attempt + 1,
                        "wait_time": wait_time
                    })
                    await asyncio.sleep(wait_time)
                    continue

                raise FPLAPIError(
                    f"Request failed after {self.max_retries} retries: {status_code}"
                )

            except (httpx.TimeoutException, httpx.NetworkError) as e:
                last_exception = e
                if attempt < self.max_retries:
                    wait_time = self._backoff(attempt)
                    logger.warning("Network error from FPL API, retrying", extra={
                        "endpoint": endpoint,
                        "attempt": attempt + 1,
                        "wait_time": wait_time,
                        "error": str(e) or type(e).__name__
                    })
                    await asyncio.sleep(wait_time)
                    continue
                raise FPLAPIError(f"Network error after {self.max_retries} retries") from e

        raise FPLAPIError("Request failed") from last_exception

    async def _get_json(self, endpoint: str) -> Optional[Any]:
        """GET ``endpoint`` and decode JSON; ``None`` on any transient failure."""
        try:
            response = await self._request_with_retry("GET", endpoint)
            return response.json()
        except FPLAPINotFoundError:
            raise
        except FPLAPIError as e:
            logger.warning("FPL API request failed", extra={"endpoint": endpoint, "error": str(e)})
            return None
        except ValueError as e:
            logger.error("JSON parse failed", extra={"endpoint": endpoint, "error": str(e)})
            return None

    async def _get_json_or_none(self, endpoint: str) -> Optional[Any]:
        try:
            return await self._get_json(endpoint)
        except FPLAPINotFoundError:
            logger.info("FPL API resource not found", extra={"endpoint": endpoint})
            return None

    async def get_bootstrap_static(self, use_cache: bool = True) -> Optional[Dict[str, Any]]:
        """
        Get bootstrap-static data (players, teams, gameweeks).

        Cached for ``bootstrap_cache_ttl`` seconds; a stale copy is returned
        if the refresh fails.
        """
        async with self._bootstrap_lock:
            if use_cache and self._bootstrap_cache is not None and self._bootstrap_cache_time is not None:
                age = datetime.now(timezone.utc) - self._bootstrap_cache_time
                if age < self._bootstrap_cache_ttl:
                    return self._bootstrap_cache

            data = await self._get_json_or_none("/bootstrap-static/")
            if not isinstance(data, dict):
                return self._bootstrap_cache

            self._bootstrap_cache = data
            self._bootstrap_cache_time = datetime.now(timezone.utc)
            logger.info("Bootstrap-static fetched", extra={
                "players_count": len(data.get("elements", [])),
                "gameweeks_count": len(data.get("events", []))
            })
            return data

    async def get_players(self) -> List[Dict[str, Any]]:
        data = await self.get_bootstrap_static()
        return (data or {}).get("elements") or []

    async def get_player_names(self) -> Dict[int, str]:
        """Map of player id -> web name."""
        return {
            p["id"]: p.get("web_name") or "Unknown"
            for p in await self.get_players()
            if p.get("id") is not None
        }

    async def get_current_gameweek(self) -> int:
        """Current gameweek id; 1 when unknown."""
        data = await self.get_bootstrap_static()
        for event in (data or {}).get("events") or []:
            if event.get("is_current"):
                return int(event["id"])
        return 1

    async def get_event_live(self, gameweek: int) -> Dict[int, int]:
        """
        Get live per-player points for a gameweek.

        Returns:
            Map of player id -> total points (empty when unavailable)
        """
        data = await self._get_json_or_none(f"/event/{gameweek}/live/")
        points: Dict[int, int] = {}
        for element in (data or {}).get("elements") or []:
            player_id = element.get("id")
            if player_id is None:
                continue
            points[player_id] = (element.get("stats") or {}).get("total_points") or 0
        return points

    async def get_entry_picks(self, manager_id: int, gameweek: int) -> Optional[Dict[str, Any]]:
        """Picks and entry history for a manager in a gameweek."""
        data = await self._get_json_or_none(f"/entry/{manager_id}/event/{gameweek}/picks/")
        return data if isinstance(data, dict) else None

    async def get_entry_transfers(self, manager_id: int) -> Optional[List[Dict[str, Any]]]:
        """Full transfer history for a manager (filter by ``event`` client-side)."""
        data = await self._get_json_or_none(f"/entry/{manager_id}/transfers/")
        return data if isinstance(data, list) else None

    async def get_entry_history(self, manager_id: int) -> Optional[Dict[str, Any]]:
        data = await self._get_json_or_none(f"/entry/{manager_id}/history/")
        return data if isinstance(data, dict) else None

    async def get_entry_chips(self, manager_id: int) -> List[Dict[str, Any]]:
        """Chips played by a manager (``name``, ``event``)."""
        history = await self.get_entry_history(manager_id)
        return (history or {}).get("chips") or []

    async def get_league_standings(
        self,
        league_id: int,
        event: Optional[int] = None,
        page: int = 1
    ) -> Optional[Dict[str, Any]]:
        """
        Get classic league standings.

        Raises:
            FPLAPINotFoundError: if the league does not exist

        Returns:
            League standings dictionary, or None if the API is unavailable
        """
        endpoint = f"/leagues-classic/{league_id}/standings/?page_standings={page}"
        if event is not None:
            endpoint += f"&event={event}"
        data = await self._get_json(endpoint)
        return data if isinstance(data, dict) else None

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
