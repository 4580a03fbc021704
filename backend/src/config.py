"""
Configuration management for the League Dashboard backend.

Loads configuration from environment variables with sensible defaults.
Resolved once at startup and passed explicitly to every component.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _parse_id_list(raw: Optional[str]) -> List[int]:
    ids: List[int] = []
    if not raw:
        return ids
    for s in raw.split(","):
        s = s.strip()
        if not s:
            continue
        try:
            value = int(s)
        except ValueError:
            continue
        if value > 0 and value not in ids:
            ids.append(value)
    return ids


@dataclass
class Config:
    """Application configuration."""

    # Environment
    environment: str = os.getenv("ENVIRONMENT", "development")

    # Supabase Configuration (durable cache, job queue, user leagues, auth)
    supabase_url: str = os.getenv("SUPABASE_URL", "")
    supabase_key: str = os.getenv("SUPABASE_ANON_KEY", os.getenv("SUPABASE_KEY", ""))
    supabase_service_key: Optional[str] = os.getenv("SUPABASE_SERVICE_ROLE_KEY", None)

    # FPL API Configuration
    fpl_api_base_url: str = os.getenv("FPL_API_BASE_URL", "https://fantasy.premierleague.com/api")
    fpl_request_timeout: float = float(os.getenv("FPL_REQUEST_TIMEOUT", "30.0"))

    # Rate Limiting
    max_requests_per_minute: int = _env_int("MAX_REQUESTS_PER_MINUTE", 120)
    min_request_interval: float = float(os.getenv("MIN_REQUEST_INTERVAL", "0.0"))

    # Retry Configuration
    max_retries: int = _env_int("MAX_RETRIES", 2)
    retry_backoff_base: float = float(os.getenv("RETRY_BACKOFF_BASE", "1.0"))
    max_retry_delay: int = _env_int("MAX_RETRY_DELAY", 30)

    # Cache Configuration
    bootstrap_cache_ttl: int = _env_int("BOOTSTRAP_CACHE_TTL", 300)  # 5 minutes
    # In-progress gameweeks are served from cache for this long before recomputing
    live_cache_ttl_seconds: int = _env_int("FPL_LIVE_CACHE_TTL_SECONDS", 60)
    # Per-entry upstream fetches inside one aggregation request
    entry_concurrency: int = _env_int("ENTRY_CONCURRENCY", 4)

    # Auth sessions
    auth_refresh_timeout: float = float(os.getenv("AUTH_REFRESH_TIMEOUT", "5.0"))
    auth_refresh_retry_delay: float = float(os.getenv("AUTH_REFRESH_RETRY_DELAY", "0.15"))
    auth_expiry_skew_seconds: int = _env_int("AUTH_EXPIRY_SKEW_SECONDS", 60)
    session_cookie_max_age: int = _env_int("SESSION_COOKIE_MAX_AGE", 60 * 60 * 24 * 90)
    access_token_cookie: str = "fpl_access_token"
    refresh_token_cookie: str = "fpl_refresh_token"
    # Set once default leagues were offered, so removing them all does not re-seed
    leagues_seeded_cookie: str = "fpl_leagues_seeded"
    leagues_seeded_cookie_max_age: int = 60 * 60 * 24 * 365 * 5

    # Backfill jobs
    backfill_runner_secret: Optional[str] = os.getenv("BACKFILL_RUNNER_SECRET", None)
    backfill_batch_size: int = _env_int("BACKFILL_BATCH_SIZE", 3)
    max_backfill_attempts: int = _env_int("MAX_BACKFILL_ATTEMPTS", 3)
    backfill_concurrency: int = _env_int("BACKFILL_CONCURRENCY", 3)
    backfill_time_budget_ms: int = _env_int("BACKFILL_TIME_BUDGET_MS", 300_000)
    # A pending/running job untouched for longer than this is treated as abandoned
    active_backfill_stale_after_seconds: int = _env_int("ACTIVE_BACKFILL_STALE_AFTER_SECONDS", 900)
    backfill_poll_interval_seconds: int = _env_int("BACKFILL_POLL_INTERVAL_SECONDS", 60)
    api_origin: str = os.getenv("API_ORIGIN", "http://localhost:8000")

    # Warmup right after a league is added (keeps the add request short)
    add_league_warmup_concurrency: int = _env_int("ADD_LEAGUE_WARMUP_CONCURRENCY", 2)
    add_league_warmup_time_budget_ms: int = _env_int("ADD_LEAGUE_WARMUP_TIME_BUDGET_MS", 5_000)

    # Scheduled warm of the current gameweek for default leagues
    cron_secret: Optional[str] = os.getenv("CRON_SECRET", None)
    warm_cache_concurrency: int = _env_int("WARM_CACHE_CONCURRENCY", 2)
    default_league_ids: List[int] = field(default_factory=list)

    # Current-gameweek refresh across every league any user follows
    live_refresh_secret: Optional[str] = os.getenv("LIVE_REFRESH_SECRET", None)
    live_refresh_concurrency: int = _env_int("LIVE_REFRESH_CONCURRENCY", 2)
    live_refresh_time_budget_ms: int = _env_int("LIVE_REFRESH_TIME_BUDGET_MS", 15_000)

    # Beta guardrails
    max_leagues_per_user: int = _env_int("FPL_MAX_LEAGUES_PER_USER", 3)
    max_managers_per_league: int = _env_int("FPL_MAX_MANAGERS_PER_LEAGUE", 30)
    add_league_enabled: bool = _env_bool("FPL_ADD_LEAGUE_ENABLED", True)
    global_active_backfill_limit: int = _env_int("FPL_GLOBAL_ACTIVE_BACKFILL_LIMIT", 5)
    league_preview_rate_limit_window_seconds: int = _env_int("LEAGUE_PREVIEW_RATE_LIMIT_WINDOW_SECONDS", 60)
    league_preview_rate_limit_max_requests: int = _env_int("LEAGUE_PREVIEW_RATE_LIMIT_MAX_REQUESTS", 10)
    league_add_rate_limit_window_seconds: int = _env_int("LEAGUE_ADD_RATE_LIMIT_WINDOW_SECONDS", 3600)
    league_add_rate_limit_max_requests: int = _env_int("LEAGUE_ADD_RATE_LIMIT_MAX_REQUESTS", 5)
    rate_limit_retention_hours: int = _env_int("RATE_LIMIT_RETENTION_HOURS", 48)

    # Ops notifications
    slack_webhook_url: Optional[str] = os.getenv("SLACK_WEBHOOK_URL", None)

    # Metrics and logging
    metrics_enabled: bool = _env_bool("FPL_METRICS", True)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_format: str = os.getenv("LOG_FORMAT", "json")  # json or text

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def store_key(self) -> Optional[str]:
        """Key used for table access (service role preferred)."""
        return self.supabase_service_key or None

    @property
    def cache_enabled(self) -> bool:
        """Durable store is usable only with a URL and a service role key."""
        return bool(self.supabase_url and self.store_key)

    @property
    def auth_key(self) -> Optional[str]:
        return self.supabase_key or self.supabase_service_key or None

    @property
    def auth_enabled(self) -> bool:
        return bool(self.supabase_url and self.auth_key)

    def validate(self):
        """Validate configuration."""
        errors = []

        if self.supabase_url and not self.supabase_url.startswith(("http://", "https://")):
            errors.append("SUPABASE_URL must be an http(s) URL")
        if self.live_cache_ttl_seconds < 0:
            errors.append("FPL_LIVE_CACHE_TTL_SECONDS must be >= 0")
        if self.entry_concurrency < 1:
            errors.append("ENTRY_CONCURRENCY must be >= 1")
        if self.backfill_batch_size < 1:
            errors.append("BACKFILL_BATCH_SIZE must be >= 1")
        if self.auth_refresh_timeout <= 0:
            errors.append("AUTH_REFRESH_TIMEOUT must be > 0")
        if self.rate_limit_retention_hours < 1:
            errors.append("RATE_LIMIT_RETENTION_HOURS must be >= 1")

        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")

        return True

    def __post_init__(self):
        """Normalize and validate after initialization."""
        self.supabase_url = (self.supabase_url or "").rstrip("/")
        if not self.default_league_ids:
            self.default_league_ids = _parse_id_list(os.getenv("DEFAULT_LEAGUE_IDS"))
        self.validate()
