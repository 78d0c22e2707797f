"""
Stale Job Reaper — recovers jobs whose worker died mid-Processing.

A periodic, lower-frequency sweep:
  1. find jobs Processing since before now - stale_threshold
  2. treat the stall as a transient failure of that attempt
  3. attempts left   → Scheduled, attempt_count + 1, due after retry_delay
     attempts spent  → Failed
The reclaim is conditional on the observed started_at, so two reapers (or
a reaper racing the original worker) move a job at most once.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from database.store_base import BaseJobStore
from job_queue.errors import PersistenceError
from job_queue.outcome import OutcomeRecorder
from job_queue.retry import RetryAfter, RetryPolicy, with_persistence_retry
from models.schemas import ErrorKind, JobEventType, JobStatus

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StaleJobReaper:
    """
    Usage:
        reaper = StaleJobReaper(jobs, policy, recorder, stale_threshold=600)
        await reaper.start_background()
        ...
        await reaper.stop()
    """

    def __init__(
        self,
        jobs: BaseJobStore,
        retry_policy: RetryPolicy,
        recorder: Optional[OutcomeRecorder] = None,
        interval: float = 60.0,
        stale_threshold: float = 600.0,
        retry_delay: float = 1.0,
        batch_size: int = 100,
        in_flight: Optional[set[str]] = None,
        persist_retry_attempts: int = 5,
        persist_retry_max_wait: float = 10.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.jobs = jobs
        self.retry_policy = retry_policy
        self.recorder = recorder
        self.interval = interval
        self.stale_threshold = stale_threshold
        self.retry_delay = retry_delay
        self.batch_size = batch_size
        self.in_flight = in_flight if in_flight is not None else set()
        self.persist_retry_attempts = persist_retry_attempts
        self.persist_retry_max_wait = persist_retry_max_wait
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    async def sweep(self) -> int:
        """Run one sweep. Returns the number of jobs reclaimed."""
        now = self._clock()
        stale_before = now - timedelta(seconds=self.stale_threshold)
        stale = await self._persist(
            "find_stale", lambda: self.jobs.find_stale(stale_before, self.batch_size),
        )

        reclaimed = 0
        for job in stale:
            if job.id in self.in_flight:
                # Still running in this process; the handler timeout bounds it
                continue

            decision = self.retry_policy.decide(
                job.attempt_count + 1, job.max_attempts, ErrorKind.TRANSIENT,
            )
            next_retry_at = (
                now + timedelta(seconds=self.retry_delay)
                if isinstance(decision, RetryAfter) else None
            )
            error = (f"stale claim: processing since {job.started_at.isoformat()}"
                     f" by {job.claimed_by or 'unknown worker'}")

            updated = await self._persist(
                "reclaim_stale",
                lambda: self.jobs.reclaim_stale(job.id, job.started_at, next_retry_at, error, now),
            )
            if updated is None:
                logger.debug("stale_job_already_moved", job_id=job.id)
                continue

            reclaimed += 1
            logger.warning("stale_job_reclaimed",
                           job_id=job.id,
                           job_type=job.job_type,
                           claimed_by=job.claimed_by,
                           status=updated.status.value,
                           attempt_count=updated.attempt_count)

            if self.recorder is not None:
                event = (JobEventType.RECLAIMED
                         if updated.status == JobStatus.SCHEDULED else None)
                await self._persist(
                    "record_outcome",
                    lambda: self.recorder.record(updated, None, event, now),
                )

        if stale:
            logger.info("reaper_sweep_complete", stale=len(stale), reclaimed=reclaimed)
        return reclaimed

    async def _persist(self, operation: str, call):
        return await with_persistence_retry(
            call, operation,
            attempts=self.persist_retry_attempts,
            max_wait=self.persist_retry_max_wait,
        )

    # ── Background task ───────────────────────────────────

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("reaper_started", interval=self.interval,
                    stale_threshold=self.stale_threshold)
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                break
            except PersistenceError as e:
                logger.error("reaper_store_unavailable", error=str(e))
            except Exception as e:
                logger.error("reaper_error", error=str(e), exc_info=True)
            await asyncio.sleep(self.interval)
