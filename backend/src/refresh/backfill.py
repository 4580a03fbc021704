"""
Backfill runner.

Claims a small batch of league backfill jobs and warms every gameweek/view
for each one. A job is complete only if the warmup did not time out, had no
failures and succeeded on every expected task; anything else finalizes the
job as failed, notifies ops and re-enqueues it while attempts remain.
Errors are contained per job so one bad league does not stop the batch,
and a job interrupted by cancellation is still finalized as failed.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import List, Optional

from config import Config
from fpl_api.client import FPLAPIClient
from jobs.backfill_queue import BackfillJob, BackfillJobQueue
from refresh.warmup import CacheWarmupOrchestrator, WarmResult, expected_task_count
from utils.metrics import MetricsSink, NoopMetrics
from utils.notifications import BACKFILL_FAILED, OpsNotifier

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Backfill interrupted"


@dataclass
class BackfillJobResult:
    job_id: int
    league_id: int
    ok: bool
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def is_complete(result: WarmResult, expected: int) -> bool:
    return (
        not result.timed_out
        and result.failed == 0
        and result.attempted == expected
        and result.succeeded == expected
    )


class BackfillRunner:
    """Drains the backfill queue through the cache warmup orchestrator."""

    def __init__(
        self,
        config: Config,
        queue: BackfillJobQueue,
        warmup: CacheWarmupOrchestrator,
        fpl_client: FPLAPIClient,
        notifier: Optional[OpsNotifier] = None,
        metrics: Optional[MetricsSink] = None,
    ):
        self.config = config
        self.queue = queue
        self.warmup = warmup
        self.fpl_client = fpl_client
        self.notifier = notifier
        self.metrics = metrics or NoopMetrics()

    async def _notify_failure(self, job: BackfillJob, message: str, **metadata):
        if self.notifier is None:
            return
        try:
            await self.notifier.send(
                BACKFILL_FAILED,
                message,
                source="backfill_runner",
                job_id=job.id,
                league_id=job.league_id,
                attempts=job.attempts,
                **metadata,
            )
        except Exception as e:
            logger.error("Ops notification failed", extra={"job_id": job.id, "error": str(e)})

    async def _retry_if_allowed(self, job: BackfillJob):
        if job.attempts < self.config.max_backfill_attempts:
            await self.queue.enqueue(job.league_id)
        else:
            logger.warning("Backfill job out of attempts", extra={
                "job_id": job.id, "league_id": job.league_id, "attempts": job.attempts,
            })

    async def process_job(self, job: BackfillJob, origin: str) -> BackfillJobResult:
        finalized = False
        try:
            try:
                current_gw = await self.fpl_client.get_current_gameweek()
                target_gw = max(1, current_gw)
                expected = expected_task_count(1, target_gw)
                result = await self.warmup.warm(
                    league_id=job.league_id,
                    current_gw=current_gw,
                    origin=origin,
                    from_gw=1,
                    to_gw=target_gw,
                    concurrency=self.config.backfill_concurrency,
                    time_budget_ms=self.config.backfill_time_budget_ms,
                )
            except Exception as e:
                error = str(e) or type(e).__name__
                logger.error("Backfill job raised", extra={
                    "job_id": job.id, "league_id": job.league_id, "error": error,
                }, exc_info=True)
                finalized = True
                await self.queue.finalize(job.id, success=False, error=error)
                await self._notify_failure(job, "Backfill runner encountered an exception.", error=error)
                await self._retry_if_allowed(job)
                return BackfillJobResult(job.id, job.league_id, ok=False, error=error)

            if is_complete(result, expected):
                finalized = True
                await self.queue.finalize(job.id, success=True)
                logger.info("Backfill job succeeded", extra={
                    "job_id": job.id, "league_id": job.league_id, "tasks": expected,
                })
                return BackfillJobResult(job.id, job.league_id, ok=True)

            error = (
                f"Backfill incomplete: expected={expected}, attempted={result.attempted}, "
                f"succeeded={result.succeeded}, failed={result.failed}, timedOut={result.timed_out}"
            )
            finalized = True
            await self.queue.finalize(job.id, success=False, error=error)
            await self._notify_failure(
                job,
                "Backfill job failed due to incomplete warmup results.",
                expected_tasks=expected,
                error=error,
            )
            await self._retry_if_allowed(job)
            return BackfillJobResult(job.id, job.league_id, ok=False, error=error)
        finally:
            # Cancellation or shutdown mid-warmup must not leave the job running.
            if not finalized:
                logger.warning("Backfill job interrupted", extra={
                    "job_id": job.id, "league_id": job.league_id,
                })
                await asyncio.shield(
                    self.queue.finalize(job.id, success=False, error=INTERRUPTED_ERROR)
                )

    async def run_batch(self, origin: str, max_jobs: Optional[int] = None) -> List[BackfillJobResult]:
        """Claim and process up to ``max_jobs`` pending jobs."""
        limit = max_jobs if max_jobs is not None else self.config.backfill_batch_size
        processed: List[BackfillJobResult] = []
        async with self.metrics.timed("backfill.run_batch"):
            for _ in range(limit):
                job = await self.queue.claim_next()
                if job is None:
                    break
                processed.append(await self.process_job(job, origin))
        return processed
