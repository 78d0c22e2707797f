"""
Scheduler Loop — claim → rate check → dispatch → record.

Topology (one process):
  ┌──────────────────────────── WorkerPool ────────────────────────────┐
  │  SchedulerLoop × N ──claim_next──▶ Job Store ◀──reclaim── Reaper ×1 │
  │        │                                                            │
  │        ├── resource_key? ──▶ RateLimiter ── Deferred ──▶ defer      │
  │        ├── Dispatcher ──▶ handler (timeout)                         │
  │        ├── success  ──▶ mark_completed                              │
  │        ├── failure  ──▶ RetryPolicy ──▶ reschedule | failed         │
  │        └── OutcomeRecorder (always)                                 │
  └─────────────────────────────────────────────────────────────────────┘

Job state machine:
  Pending ──claim──▶ Processing ──▶ Completed | Failed | Scheduled
  Scheduled (due) ──claim──▶ Processing

Every store call goes through with_persistence_retry. If it still fails,
the job is left in Processing and the reaper picks it up later.
"""
from __future__ import annotations

import asyncio
import socket
import os
import structlog
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence

from database.store_base import BaseJobStore
from job_queue.dispatcher import Dispatcher, Outcome
from job_queue.errors import InvalidTransition, JobNotFound, PersistenceError
from job_queue.outcome import OutcomeRecorder
from job_queue.rate_limiter import Deferred, ProviderLimits, RateLimiter
from job_queue.reaper import StaleJobReaper
from job_queue.retry import RetryAfter, RetryPolicy, with_persistence_retry
from models.schemas import Job, JobEventType

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_worker_prefix() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class SchedulerLoop:
    """
    One worker. run_once() processes at most one job and reports whether
    it did; run() repeats it, sleeping poll_interval when idle.
    """

    def __init__(
        self,
        worker_id: str,
        jobs: BaseJobStore,
        rate_limiter: RateLimiter,
        dispatcher: Dispatcher,
        retry_policy: RetryPolicy,
        recorder: OutcomeRecorder,
        provider_limits: Optional[ProviderLimits] = None,
        eligible_types: Optional[Sequence[str]] = None,
        poll_interval: float = 2.0,
        persist_retry_attempts: int = 5,
        persist_retry_max_wait: float = 10.0,
        in_flight: Optional[set[str]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.worker_id = worker_id
        self.jobs = jobs
        self.rate_limiter = rate_limiter
        self.dispatcher = dispatcher
        self.retry_policy = retry_policy
        self.recorder = recorder
        self.provider_limits = provider_limits or ProviderLimits()
        self.eligible_types = list(eligible_types) if eligible_types else None
        self.poll_interval = poll_interval
        self.persist_retry_attempts = persist_retry_attempts
        self.persist_retry_max_wait = persist_retry_max_wait
        self.in_flight = in_flight if in_flight is not None else set()
        self._clock = clock
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # ── One iteration ─────────────────────────────────────

    async def run_once(self) -> bool:
        try:
            job = await self._persist(
                "claim_next",
                lambda: self.jobs.claim_next(self.eligible_types, self.worker_id, self._clock()),
            )
        except PersistenceError as e:
            logger.error("claim_failed", worker_id=self.worker_id, error=str(e))
            return False

        if job is None:
            return False

        self.in_flight.add(job.id)
        logger.info("job_claimed",
                    job_id=job.id,
                    job_type=job.job_type,
                    worker_id=self.worker_id,
                    attempt=job.attempt_count + 1,
                    max_attempts=job.max_attempts)
        try:
            await self._process(job)
        finally:
            self.in_flight.discard(job.id)
        return True

    async def _process(self, job: Job) -> None:
        # 1. Flow control
        if job.resource_key:
            limit = self.provider_limits.limit_for(job)
            try:
                decision = await self._persist(
                    "check_and_reserve",
                    lambda: self.rate_limiter.check_and_reserve(
                        job.resource_key, limit, self._clock()),
                )
            except PersistenceError as e:
                logger.error("rate_check_failed_left_for_reaper",
                             job_id=job.id, resource_key=job.resource_key, error=str(e))
                return

            if isinstance(decision, Deferred):
                now = self._clock()
                updated = await self._transition(
                    job, "defer",
                    lambda: self.jobs.defer(job.id, now + decision.retry_after, "rate limited", now),
                )
                if updated is not None:
                    await self._record(updated, None, JobEventType.DEFERRED)
                return

        # 2. Execute
        outcome = await self.dispatcher.dispatch(job)
        now = self._clock()

        # 3. Persist the result
        if outcome.success:
            updated = await self._transition(
                job, "mark_completed", lambda: self.jobs.mark_completed(job.id, now),
            )
            if updated is not None:
                logger.info("job_completed", job_id=job.id, job_type=job.job_type,
                            duration=round(outcome.duration, 3))
        else:
            attempts_made = job.attempt_count + 1
            decision = self.retry_policy.decide(attempts_made, job.max_attempts, outcome.error_kind)
            if isinstance(decision, RetryAfter):
                next_retry_at = now + timedelta(seconds=decision.delay)
                updated = await self._transition(
                    job, "reschedule",
                    lambda: self.jobs.reschedule(job.id, next_retry_at, outcome.error, now),
                )
                if updated is not None:
                    logger.warning("job_rescheduled",
                                   job_id=job.id, job_type=job.job_type,
                                   error_kind=outcome.error_kind.value,
                                   error=outcome.error,
                                   attempt=attempts_made,
                                   retry_in=round(decision.delay, 1))
            else:
                updated = await self._transition(
                    job, "mark_failed_terminal",
                    lambda: self.jobs.mark_failed_terminal(job.id, outcome.error, now),
                )
                if updated is not None:
                    logger.error("job_failed",
                                 job_id=job.id, job_type=job.job_type,
                                 error_kind=outcome.error_kind.value,
                                 error=outcome.error,
                                 reason=decision.reason,
                                 attempts=updated.attempt_count)

        # 4. Record
        if updated is not None:
            await self._record(updated, outcome)

    # ── Store access ──────────────────────────────────────

    async def _persist(self, operation: str, call):
        return await with_persistence_retry(
            call, operation,
            attempts=self.persist_retry_attempts,
            max_wait=self.persist_retry_max_wait,
        )

    async def _transition(self, job: Job, operation: str, call) -> Optional[Job]:
        """Run a state transition; log and swallow failures the loop cannot fix."""
        try:
            return await self._persist(operation, call)
        except InvalidTransition as e:
            logger.error("invalid_transition",
                         job_id=job.id, operation=operation,
                         current=e.current_status, target=e.target_status)
        except JobNotFound:
            logger.error("job_vanished", job_id=job.id, operation=operation)
        except PersistenceError as e:
            logger.error("persist_failed_left_for_reaper",
                         job_id=job.id, operation=operation, error=str(e))
        return None

    async def _record(self, job: Job, outcome: Optional[Outcome],
                      event_type: Optional[JobEventType] = None) -> None:
        try:
            await self._persist(
                "record_outcome",
                lambda: self.recorder.record(job, outcome, event_type, self._clock()),
            )
        except PersistenceError as e:
            logger.error("outcome_record_failed", job_id=job.id, error=str(e))

    # ── Loop ──────────────────────────────────────────────

    async def run(self):
        """Loop until stop() — blocks."""
        self._stop.clear()
        logger.info("scheduler_loop_started", worker_id=self.worker_id,
                    eligible_types=self.eligible_types or "all",
                    poll_interval=self.poll_interval)
        while not self._stop.is_set():
            try:
                processed = await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("scheduler_loop_error", worker_id=self.worker_id,
                             error=str(e), exc_info=True)
                processed = False

            if not processed:
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info("scheduler_loop_stopped", worker_id=self.worker_id)

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self, timeout: float = 30.0):
        """Finish the job in hand (up to timeout), then cancel it and exit."""
        self._stop.set()
        if self._task is None:
            return
        done, _ = await asyncio.wait({self._task}, timeout=timeout)
        if not done:
            logger.warning("scheduler_loop_stop_timeout", worker_id=self.worker_id)
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None


# ──────────────────────────────────────────────────────────────
#  Worker Pool
# ──────────────────────────────────────────────────────────────

class WorkerPool:
    """
    N scheduler loops plus one reaper, sharing the stores, the limiter
    and an in-flight set of job ids.

    Usage:
        pool = WorkerPool.from_settings(settings, stores, registry)
        await pool.start()
        ...
        await pool.stop()
    """

    def __init__(self, loops: list[SchedulerLoop], reaper: Optional[StaleJobReaper],
                 in_flight: Optional[set[str]] = None):
        self.loops = loops
        self.reaper = reaper
        self.in_flight = in_flight if in_flight is not None else set()
        self._running = False

    @classmethod
    def from_settings(
        cls,
        settings,
        stores,
        registry,
        auto_pause_hook=None,
        worker_prefix: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> WorkerPool:
        prefix = worker_prefix or default_worker_prefix()
        in_flight: set[str] = set()

        retry_policy = RetryPolicy.from_settings(settings.retry)
        recorder = OutcomeRecorder(stores.metrics, auto_pause_hook)
        limiter = RateLimiter(stores.rate_windows, settings.rate_limits.day_boundary_hour)
        limits = ProviderLimits.from_settings(settings.rate_limits)
        dispatcher = Dispatcher(registry)

        loops = [
            SchedulerLoop(
                worker_id=f"{prefix}:{i}",
                jobs=stores.jobs,
                rate_limiter=limiter,
                dispatcher=dispatcher,
                retry_policy=retry_policy,
                recorder=recorder,
                provider_limits=limits,
                eligible_types=settings.worker.eligible_types,
                poll_interval=settings.worker.poll_interval,
                persist_retry_attempts=settings.worker.persist_retry_attempts,
                persist_retry_max_wait=settings.worker.persist_retry_max_wait,
                in_flight=in_flight,
                clock=clock,
            )
            for i in range(settings.worker.worker_count)
        ]
        reaper = StaleJobReaper(
            jobs=stores.jobs,
            retry_policy=retry_policy,
            recorder=recorder,
            interval=settings.reaper.interval,
            stale_threshold=settings.reaper.stale_threshold,
            retry_delay=settings.reaper.retry_delay,
            batch_size=settings.reaper.batch_size,
            in_flight=in_flight,
            persist_retry_attempts=settings.worker.persist_retry_attempts,
            persist_retry_max_wait=settings.worker.persist_retry_max_wait,
            clock=clock,
        )
        return cls(loops, reaper, in_flight)

    async def start(self):
        if self._running:
            return
        self._running = True
        for loop in self.loops:
            await loop.start_background()
        if self.reaper is not None:
            await self.reaper.start_background()
        logger.info("worker_pool_started", workers=len(self.loops),
                    reaper=self.reaper is not None)

    async def stop(self, timeout: float = 30.0):
        if not self._running:
            return
        self._running = False
        if self.reaper is not None:
            await self.reaper.stop()
        await asyncio.gather(*(loop.stop(timeout) for loop in self.loops))
        logger.info("worker_pool_stopped", in_flight=len(self.in_flight))
