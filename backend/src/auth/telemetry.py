"""Auth telemetry events, logged with credential-like fields removed."""

import logging
from datetime import datetime, timezone

from utils.logger import sanitize

logger = logging.getLogger("auth.telemetry")

REFRESH_SUCCESS = "refresh_success"
REFRESH_FAILED_TRANSIENT = "refresh_failed_transient"
REFRESH_FAILED_INVALID = "refresh_failed_invalid"
FORCED_REAUTH_REASON = "forced_reauth_reason"

EVENTS = {REFRESH_SUCCESS, REFRESH_FAILED_TRANSIENT, REFRESH_FAILED_INVALID, FORCED_REAUTH_REASON}


def emit_auth_telemetry(event: str, **metadata) -> dict:
    if event not in EVENTS:
        raise ValueError(f"Unknown auth telemetry event: {event}")
    payload = {
        "event": event,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "metadata": sanitize(metadata),
    }
    logger.info("auth.telemetry", extra=payload)
    return payload
