"""
In-memory stores — Dict-backed stores for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with the SQL stores
  - Atomic claim/reserve via one asyncio.Lock per store (single event loop)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from collections import Counter
from datetime import date, datetime, timezone
from typing import Any, Optional, Sequence

from database.store_base import BaseJobStore, BaseMetricsStore, BaseRateWindowStore
from job_queue.errors import InvalidTransition, JobNotFound
from models.schemas import Job, JobEvent, JobStatus, RateWindow

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class InMemoryJobStore(BaseJobStore):
    """
    Job store with the same contract as SqlJobStore.
    Returns copies so callers never mutate stored state.
    """

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._lock = asyncio.Lock()
        logger.info("inmemory_job_store_initialized")

    # ── Producer side ─────────────────────────────────────

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        workspace_id: str,
        resource_key: Optional[str] = None,
        max_attempts: int = 3,
    ) -> str:
        now = _utcnow()
        job = Job(
            id=_new_id(),
            job_type=str(getattr(job_type, "value", job_type)),
            payload=dict(payload or {}),
            workspace_id=workspace_id,
            resource_key=resource_key,
            max_attempts=max_attempts,
            created_at=now,
            updated_at=now,
        )
        async with self._lock:
            self._jobs[job.id] = job
        return job.id

    # ── Claiming ──────────────────────────────────────────

    async def claim_next(
        self,
        eligible_types: Optional[Sequence[str]],
        worker_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[Job]:
        now = now or _utcnow()
        types = set(eligible_types) if eligible_types else None

        async with self._lock:
            candidates = [
                j for j in self._jobs.values()
                if (types is None or j.job_type in types)
                and (
                    j.status == JobStatus.PENDING
                    or (j.status == JobStatus.SCHEDULED
                        and j.next_retry_at is not None
                        and j.next_retry_at <= now)
                )
            ]
            if not candidates:
                return None
            # due retries first, then FIFO
            candidates.sort(key=lambda j: (
                0 if j.status == JobStatus.SCHEDULED else 1,
                j.created_at,
            ))
            job = candidates[0]
            job.status = JobStatus.PROCESSING
            job.started_at = now
            job.claimed_by = worker_id
            job.next_retry_at = None
            job.updated_at = now
            return job.model_copy(deep=True)

    # ── Outcomes ──────────────────────────────────────────

    def _processing(self, job_id: str, target: JobStatus) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.status != JobStatus.PROCESSING:
            raise InvalidTransition(job_id, job.status.value, target.value)
        return job

    async def mark_completed(self, job_id: str, now: Optional[datetime] = None) -> Job:
        now = now or _utcnow()
        async with self._lock:
            job = self._processing(job_id, JobStatus.COMPLETED)
            job.status = JobStatus.COMPLETED
            job.completed_at = now
            job.claimed_by = None
            job.updated_at = now
            return job.model_copy(deep=True)

    async def mark_failed_terminal(self, job_id: str, error: str,
                                   now: Optional[datetime] = None) -> Job:
        now = now or _utcnow()
        async with self._lock:
            job = self._processing(job_id, JobStatus.FAILED)
            job.status = JobStatus.FAILED
            job.attempt_count = min(job.attempt_count + 1, job.max_attempts)
            job.last_error = error
            job.completed_at = now
            job.claimed_by = None
            job.updated_at = now
            return job.model_copy(deep=True)

    async def reschedule(self, job_id: str, next_retry_at: datetime, error: str,
                         now: Optional[datetime] = None) -> Job:
        return await self._to_scheduled(job_id, next_retry_at, error, now, count_attempt=True)

    async def defer(self, job_id: str, next_retry_at: datetime, reason: str,
                    now: Optional[datetime] = None) -> Job:
        return await self._to_scheduled(job_id, next_retry_at, reason, now, count_attempt=False)

    async def _to_scheduled(self, job_id: str, next_retry_at: datetime, error: str,
                            now: Optional[datetime], count_attempt: bool) -> Job:
        now = now or _utcnow()
        if next_retry_at <= now:
            raise ValueError("next_retry_at must be in the future")
        async with self._lock:
            job = self._processing(job_id, JobStatus.SCHEDULED)
            job.status = JobStatus.SCHEDULED
            if count_attempt:
                job.attempt_count += 1
            job.next_retry_at = next_retry_at
            job.last_error = error
            job.claimed_by = None
            job.updated_at = now
            return job.model_copy(deep=True)

    # ── Reaper support ────────────────────────────────────

    async def find_stale(self, stale_before: datetime, limit: int = 100) -> list[Job]:
        async with self._lock:
            stale = [
                j for j in self._jobs.values()
                if j.status == JobStatus.PROCESSING
                and j.started_at is not None
                and j.started_at < stale_before
            ]
        stale.sort(key=lambda j: j.started_at)
        return [j.model_copy(deep=True) for j in stale[:limit]]

    async def reclaim_stale(
        self,
        job_id: str,
        started_at: datetime,
        next_retry_at: Optional[datetime],
        error: str,
        now: Optional[datetime] = None,
    ) -> Optional[Job]:
        now = now or _utcnow()
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PROCESSING or job.started_at != started_at:
                return None
            job.attempt_count = min(job.attempt_count + 1, job.max_attempts)
            job.last_error = error
            job.claimed_by = None
            job.updated_at = now
            if next_retry_at is None:
                job.status = JobStatus.FAILED
                job.completed_at = now
            else:
                job.status = JobStatus.SCHEDULED
                job.next_retry_at = next_retry_at
            return job.model_copy(deep=True)

    # ── Queries ───────────────────────────────────────────

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def count_by_status(self, workspace_id: Optional[str] = None) -> dict[str, int]:
        counts = Counter(
            j.status.value for j in self._jobs.values()
            if workspace_id is None or j.workspace_id == workspace_id
        )
        return dict(counts)

    async def list_failed(self, workspace_id: Optional[str] = None, limit: int = 50) -> list[Job]:
        failed = [
            j for j in self._jobs.values()
            if j.status == JobStatus.FAILED
            and (workspace_id is None or j.workspace_id == workspace_id)
        ]
        failed.sort(key=lambda j: j.updated_at, reverse=True)
        return [j.model_copy(deep=True) for j in failed[:limit]]


class InMemoryRateWindowStore(BaseRateWindowStore):

    def __init__(self):
        self._windows: dict[tuple[str, datetime], RateWindow] = {}
        self._lock = asyncio.Lock()

    async def reserve(
        self,
        resource_key: str,
        window_start: datetime,
        window_end: datetime,
        limit: int,
    ) -> tuple[bool, RateWindow]:
        key = (resource_key, window_start)
        async with self._lock:
            window = self._windows.get(key)
            if window is None:
                window = RateWindow(
                    resource_key=resource_key,
                    window_start=window_start,
                    window_end=window_end,
                    count=0,
                    limit=limit,
                )
                self._windows[key] = window
            window.limit = limit
            if window.count < limit:
                window.count += 1
                return True, window.model_copy()
            return False, window.model_copy()

    async def get_window(self, resource_key: str, window_start: datetime) -> Optional[RateWindow]:
        window = self._windows.get((resource_key, window_start))
        return window.model_copy() if window else None


class InMemoryMetricsStore(BaseMetricsStore):

    def __init__(self):
        self._usage: dict[tuple[str, str, date], int] = {}
        self._events: dict[str, JobEvent] = {}          # dedupe_key → event
        self._lock = asyncio.Lock()

    async def increment_usage(
        self,
        workspace_id: str,
        metric_type: str,
        amount: int,
        period_start: date,
        period_end: date,
        marker: Optional[JobEvent] = None,
    ) -> int:
        key = (workspace_id, metric_type, period_start)
        async with self._lock:
            if marker is not None:
                if marker.dedupe_key in self._events:
                    return self._usage.get(key, 0)
                self._events[marker.dedupe_key] = marker
            self._usage[key] = self._usage.get(key, 0) + amount
            return self._usage[key]

    async def get_usage(self, workspace_id: str, metric_type: str, period_start: date) -> int:
        return self._usage.get((workspace_id, metric_type, period_start), 0)

    async def record_event(self, event: JobEvent) -> bool:
        async with self._lock:
            if event.dedupe_key in self._events:
                return False
            self._events[event.dedupe_key] = event
            return True

    async def list_events(self, job_id: Optional[str] = None,
                          event_type: Optional[str] = None) -> list[JobEvent]:
        events = [
            e for e in self._events.values()
            if (job_id is None or e.job_id == job_id)
            and (event_type is None or e.event_type.value == str(getattr(event_type, "value", event_type)))
        ]
        return sorted(events, key=lambda e: e.created_at)
