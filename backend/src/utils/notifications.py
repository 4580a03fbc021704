"""
Ops notifications.

Posts a short Slack message for notable events (user signup, league added,
backfill failure) when ``SLACK_WEBHOOK_URL`` is set. Metadata is sanitized
before formatting and delivery failures are only logged.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from utils.logger import sanitize

logger = logging.getLogger(__name__)

AUTH_SUCCESS = "auth_success"
LEAGUE_ADDED = "league_added"
BACKFILL_FAILED = "backfill_failed"

APP_NAME = "League Dashboard"


def _as_str(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip()


def _as_number(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def format_notification(event_type: str, message: str, metadata: Dict[str, Any]) -> Tuple[str, List[Tuple[str, str]]]:
    """Return (title, [(label, value), ...]) for an event."""
    if event_type == AUTH_SUCCESS:
        return "New User Signup", [
            ("User email", _as_str(metadata.get("email")) or "Unknown"),
            ("Auth method", _as_str(metadata.get("auth_method")) or "Unknown"),
        ]

    if event_type == LEAGUE_ADDED:
        league_id = _as_number(metadata.get("league_id"))
        manager_count = _as_number(metadata.get("manager_count"))
        attempted = _as_number(metadata.get("warmup_attempted"))
        succeeded = _as_number(metadata.get("warmup_succeeded"))
        failed = _as_number(metadata.get("warmup_failed"))
        fields = [
            ("User email", _as_str(metadata.get("email")) or "Unknown"),
            ("League name", _as_str(metadata.get("league_name")) or "Unknown"),
            ("League ID", str(league_id) if league_id is not None else "Unknown"),
            ("Manager count", str(manager_count) if manager_count is not None else "Unknown"),
            ("Cache warmup", f"{succeeded}/{attempted} successful"
             if attempted is not None and succeeded is not None else "Unknown"),
            ("Backfill status", "Backfill queued" if metadata.get("backfill_queued") is True
             else "Backfill not queued"),
        ]
        issues = []
        if failed:
            issues.append(f"{failed} warmup task(s) failed")
        if metadata.get("warmup_timed_out") is True:
            issues.append("warmup timed out")
        if issues:
            fields.append(("Warmup issues", "; ".join(issues)))
        return "League Added", fields

    fields = []
    for label, key in (("League ID", "league_id"), ("Job ID", "job_id"), ("Attempt", "attempts")):
        value = _as_number(metadata.get(key))
        if value is not None:
            fields.append((label, str(value)))
    error = _as_str(metadata.get("error"))
    if error:
        fields.append(("Error", error))
    return "Backfill Failure", fields


class OpsNotifier:
    """Best-effort Slack webhook notifier."""

    def __init__(self, webhook_url: Optional[str], http_client: Optional[httpx.AsyncClient] = None):
        self.webhook_url = (webhook_url or "").strip() or None
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=5.0)

    async def send(self, event_type: str, message: str, **metadata) -> bool:
        safe = sanitize(metadata)
        title, fields = format_notification(event_type, message, safe)
        if not self.webhook_url:
            logger.info("Ops notification", extra={"event_type": event_type, "title": title, **safe})
            return False

        lines = [f"*{title}*", message]
        if fields:
            lines.append("")
            lines.extend(f"*{label}:* {value}" for label, value in fields)
        body = {
            "text": f"[{APP_NAME}] {title}: {message}",
            "blocks": [{"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(lines)}}],
        }
        try:
            response = await self.http_client.post(self.webhook_url, json=body)
        except httpx.HTTPError as e:
            logger.error("Slack notification failed", extra={"event_type": event_type, "error": str(e)})
            return False
        if not response.is_success:
            logger.error("Slack webhook request failed", extra={
                "event_type": event_type, "status_code": response.status_code,
            })
            return False
        return True

    async def close(self):
        if self._owns_client:
            await self.http_client.aclose()
