"""
Abstract stores — Interfaces for all storage backends.

Implementations:
  - SqlJobStore / SqlRateWindowStore / SqlMetricsStore
        (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryJobStore / InMemoryRateWindowStore / InMemoryMetricsStore
        (dict-based, single-process, no persistence)

The two correctness-bearing operations are BaseJobStore.claim_next and
BaseRateWindowStore.reserve: both must be a single atomic step in the
backend, never a read followed by an unconditional write.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Optional, Sequence

from models.schemas import Job, JobEvent, RateWindow


class BaseJobStore(ABC):
    """Persistence for job records. Owns every Job exclusively."""

    @abstractmethod
    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        workspace_id: str,
        resource_key: Optional[str] = None,
        max_attempts: int = 3,
    ) -> str:
        """Insert a Pending job and return its id."""
        ...

    @abstractmethod
    async def claim_next(
        self,
        eligible_types: Optional[Sequence[str]],
        worker_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[Job]:
        """
        Atomically move one Pending or due-Scheduled job to Processing.
        Due-Scheduled jobs go first, then FIFO by created_at.
        """
        ...

    @abstractmethod
    async def mark_completed(self, job_id: str, now: Optional[datetime] = None) -> Job:
        ...

    @abstractmethod
    async def mark_failed_terminal(self, job_id: str, error: str,
                                   now: Optional[datetime] = None) -> Job:
        ...

    @abstractmethod
    async def reschedule(self, job_id: str, next_retry_at: datetime, error: str,
                         now: Optional[datetime] = None) -> Job:
        """Processing → Scheduled, counting the failed attempt."""
        ...

    @abstractmethod
    async def defer(self, job_id: str, next_retry_at: datetime, reason: str,
                    now: Optional[datetime] = None) -> Job:
        """Processing → Scheduled without counting an attempt (flow control)."""
        ...

    @abstractmethod
    async def find_stale(self, stale_before: datetime, limit: int = 100) -> list[Job]:
        """Jobs in Processing whose claim started before stale_before."""
        ...

    @abstractmethod
    async def reclaim_stale(
        self,
        job_id: str,
        started_at: datetime,
        next_retry_at: Optional[datetime],
        error: str,
        now: Optional[datetime] = None,
    ) -> Optional[Job]:
        """
        Conditionally take back a stalled claim: only if the job is still
        Processing under the same started_at. next_retry_at=None fails it.
        Returns the updated job, or None if another actor got there first.
        """
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def count_by_status(self, workspace_id: Optional[str] = None) -> dict[str, int]:
        ...

    @abstractmethod
    async def list_failed(self, workspace_id: Optional[str] = None, limit: int = 50) -> list[Job]:
        ...


class BaseRateWindowStore(ABC):
    """Persistence for RateWindows. Owned by the rate limiter."""

    @abstractmethod
    async def reserve(
        self,
        resource_key: str,
        window_start: datetime,
        window_end: datetime,
        limit: int,
    ) -> tuple[bool, RateWindow]:
        """
        Read-or-create the window and increment it if count < limit, as one
        atomic step. Returns (allowed, window after the operation).
        """
        ...

    @abstractmethod
    async def get_window(self, resource_key: str, window_start: datetime) -> Optional[RateWindow]:
        ...


class BaseMetricsStore(ABC):
    """Usage counters and the deduplicated job event log."""

    @abstractmethod
    async def increment_usage(
        self,
        workspace_id: str,
        metric_type: str,
        amount: int,
        period_start: date,
        period_end: date,
        marker: Optional[JobEvent] = None,
    ) -> int:
        """
        Add to a usage counter; returns the new count.

        With a marker event, the marker and the increment are stored as one
        atomic step, and a marker whose dedupe_key already exists makes the
        call a no-op that returns the current count.
        """
        ...

    @abstractmethod
    async def get_usage(self, workspace_id: str, metric_type: str, period_start: date) -> int:
        ...

    @abstractmethod
    async def record_event(self, event: JobEvent) -> bool:
        """Store an event unless its dedupe_key exists. True if newly stored."""
        ...

    @abstractmethod
    async def list_events(self, job_id: Optional[str] = None,
                          event_type: Optional[str] = None) -> list[JobEvent]:
        ...
