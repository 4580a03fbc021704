"""
Durable league backfill job queue.

Job rows live in ``league_backfill_jobs``. At most one pending/running job
per league is kept by an existence check before insert, backed by the
partial unique index ``league_backfill_jobs_one_active_idx`` in
``backend/sql/schema.sql``. An insert that loses the race against that
index is treated as already queued, not as a store failure. Claiming moves
a job pending -> running with an update guarded on ``status=eq.pending``
so only one worker wins a given job.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from cache.league_cache import parse_timestamp
from database.repositories import BackfillJobRepository
from utils.metrics import MetricsSink, NoopMetrics

logger = logging.getLogger(__name__)

PENDING = "pending"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"

ACTIVE_STATUSES = (PENDING, RUNNING)


@dataclass
class BackfillJob:
    id: int
    league_id: int
    status: str
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    finished_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "BackfillJob":
        return cls(
            id=row["id"],
            league_id=row["league_id"],
            status=row.get("status") or PENDING,
            attempts=row.get("attempts") or 0,
            last_error=row.get("last_error"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            finished_at=row.get("finished_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "league_id": self.league_id,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "finished_at": self.finished_at,
        }


def _valid_league_ids(league_ids: Iterable[Any]) -> List[int]:
    valid: List[int] = []
    for league_id in league_ids:
        if isinstance(league_id, int) and not isinstance(league_id, bool) and league_id > 0:
            if league_id not in valid:
                valid.append(league_id)
    return valid


class BackfillJobQueue:
    """Enqueue, claim and finalize league backfill jobs."""

    def __init__(self, jobs: BackfillJobRepository, metrics: Optional[MetricsSink] = None):
        self.jobs = jobs
        self.metrics = metrics or NoopMetrics()

    async def enqueue(self, league_id: int) -> bool:
        """Insert a pending job unless one is already pending or running."""
        existing = await self.jobs.find_active_for_league(league_id)
        if existing is None:
            return False
        if existing:
            logger.debug("Backfill job already active", extra={"league_id": league_id})
            return False

        queued = await self.jobs.insert_pending(league_id)
        if queued is None:
            logger.debug("Backfill job already active", extra={"league_id": league_id})
            return False
        self.metrics.observe("backfill.job.enqueue", league_id=league_id, success=queued)
        if queued:
            logger.info("Backfill job enqueued", extra={"league_id": league_id})
        return queued

    async def claim_next(self) -> Optional[BackfillJob]:
        """Claim the oldest pending job; None when the queue is empty or the race is lost."""
        row = await self.jobs.oldest_pending()
        if row is None:
            return None

        claimed = await self.jobs.mark_running_if_pending(row["id"], (row.get("attempts") or 0) + 1)
        if claimed is None:
            self.metrics.observe("backfill.job.claim", job_id=row["id"], success=False, race_lost=True)
            return None

        job = BackfillJob.from_row({**row, **claimed})
        self.metrics.observe("backfill.job.claim", job_id=job.id, league_id=job.league_id,
                             attempts=job.attempts, success=True)
        return job

    async def finalize(self, job_id: int, success: bool, error: Optional[str] = None) -> bool:
        status = SUCCEEDED if success else FAILED
        last_error = None if success else (error or "Unknown error")
        ok = await self.jobs.mark_finished(job_id, status, last_error)
        self.metrics.observe("backfill.job.finalize", job_id=job_id, success=ok, final_status=status)
        return ok

    async def remove_pending(self, league_id: int) -> None:
        await self.jobs.delete_active_for_league(league_id)

    async def list_for_leagues(self, league_ids: Iterable[Any]) -> List[BackfillJob]:
        """Pending, running and failed jobs for the leagues, newest update first."""
        valid = _valid_league_ids(league_ids)
        if not valid:
            return []
        rows = await self.jobs.list_by_status((PENDING, RUNNING, FAILED), league_ids=valid, limit=100)
        return [BackfillJob.from_row(r) for r in rows]

    async def list_active(self) -> List[BackfillJob]:
        rows = await self.jobs.list_by_status(ACTIVE_STATUSES, limit=1000)
        return [BackfillJob.from_row(r) for r in rows]

    @staticmethod
    def fresh_active(
        jobs: Iterable[BackfillJob],
        stale_after_seconds: int = 900,
        now: Optional[datetime] = None,
    ) -> List[BackfillJob]:
        """
        Active jobs touched within ``stale_after_seconds``.

        Older jobs are considered abandoned and ignored by guardrails; they
        are not modified. Jobs with an unparseable ``updated_at`` are dropped.
        """
        now = now or datetime.now(timezone.utc)
        fresh = []
        for job in jobs:
            if job.status not in ACTIVE_STATUSES:
                continue
            updated_at = parse_timestamp(job.updated_at)
            if updated_at is None:
                continue
            if (now - updated_at).total_seconds() <= stale_after_seconds:
                fresh.append(job)
        return fresh

    async def requeue_failed(self, league_ids: Iterable[Any]) -> int:
        """Enqueue one fresh job per league that has a failed job; returns how many were queued."""
        jobs = await self.list_for_leagues(league_ids)
        failed_league_ids: List[int] = []
        for job in jobs:
            if job.status == FAILED and job.league_id not in failed_league_ids:
                failed_league_ids.append(job.league_id)

        queued = 0
        for league_id in failed_league_ids:
            if await self.enqueue(league_id):
                queued += 1
        return queued
