"""
Sql stores — Portable SQL for PostgreSQL, MySQL, SQLite.

Atomicity without PG-only features:
  - claim_next      → SELECT candidate id (FOR UPDATE SKIP LOCKED where the
                      dialect supports it) + conditional UPDATE that re-checks
                      claimability; rowcount 0 means another worker won
  - reserve         → conditional UPDATE ... WHERE count < limit, falling back
                      to INSERT on the unique (resource_key, window_start) key
  - record_event    → INSERT guarded by the unique dedupe_key

SQLite returns naive datetimes; every row is normalized back to UTC.
"""
from __future__ import annotations

import json
import uuid
import structlog
from datetime import date, datetime, timezone
from typing import Any, Optional, Sequence

from sqlalchemy import select, update, and_, or_, case, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from database.models import JobRow, RateWindowRow, UsageMetricRow, JobEventRow
from database.session import SessionScope, get_session
from database.store_base import BaseJobStore, BaseMetricsStore, BaseRateWindowStore
from job_queue.errors import InvalidTransition, JobNotFound, PersistenceError
from models.schemas import Job, JobEvent, JobEventType, JobStatus, RateWindow

logger = structlog.get_logger()

# Attempts at claiming before reporting "nothing claimable" under contention
_CLAIM_CONTENTION_RETRIES = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _claimable(now: datetime):
    return or_(
        JobRow.status == JobStatus.PENDING.value,
        and_(
            JobRow.status == JobStatus.SCHEDULED.value,
            JobRow.next_retry_at.is_not(None),
            JobRow.next_retry_at <= now,
        ),
    )


class SqlJobStore(BaseJobStore):
    """
    Persistent job store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, session_scope: SessionScope = get_session):
        self._scope = session_scope

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
        job_id = uuid.uuid4().hex
        try:
            async with self._scope() as db:
                db.add(JobRow(
                    id=job_id,
                    job_type=str(getattr(job_type, "value", job_type)),
                    payload=dict(payload or {}),
                    status=JobStatus.PENDING.value,
                    attempt_count=0,
                    max_attempts=max_attempts,
                    workspace_id=workspace_id,
                    resource_key=resource_key,
                    created_at=now,
                    updated_at=now,
                ))
        except SQLAlchemyError as e:
            raise PersistenceError(f"enqueue failed: {e}") from e
        return job_id

    # ── Claiming ──────────────────────────────────────────

    async def claim_next(
        self,
        eligible_types: Optional[Sequence[str]],
        worker_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[Job]:
        now = now or _utcnow()
        try:
            for _ in range(_CLAIM_CONTENTION_RETRIES):
                async with self._scope() as db:
                    stmt = select(JobRow.id).where(_claimable(now))
                    if eligible_types:
                        stmt = stmt.where(JobRow.job_type.in_(list(eligible_types)))
                    stmt = (
                        stmt.order_by(
                            case((JobRow.status == JobStatus.SCHEDULED.value, 0), else_=1),
                            JobRow.created_at,
                        )
                        .limit(1)
                        .with_for_update(skip_locked=True)
                    )
                    job_id = (await db.execute(stmt)).scalar_one_or_none()
                    if job_id is None:
                        return None

                    result = await db.execute(
                        update(JobRow)
                        .where(JobRow.id == job_id, _claimable(now))
                        .values(
                            status=JobStatus.PROCESSING.value,
                            started_at=now,
                            claimed_by=worker_id,
                            next_retry_at=None,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        logger.debug("claim_contention", job_id=job_id, worker_id=worker_id)
                        continue

                    row = await db.get(JobRow, job_id)
                    return self._row_to_job(row)
        except SQLAlchemyError as e:
            raise PersistenceError(f"claim failed: {e}") from e
        return None

    # ── Outcomes ──────────────────────────────────────────

    async def mark_completed(self, job_id: str, now: Optional[datetime] = None) -> Job:
        now = now or _utcnow()
        return await self._transition(job_id, JobStatus.COMPLETED, {
            JobRow.status: JobStatus.COMPLETED.value,
            JobRow.completed_at: now,
            JobRow.claimed_by: None,
            JobRow.updated_at: now,
        })

    async def mark_failed_terminal(self, job_id: str, error: str,
                                   now: Optional[datetime] = None) -> Job:
        now = now or _utcnow()
        return await self._transition(job_id, JobStatus.FAILED, {
            JobRow.status: JobStatus.FAILED.value,
            JobRow.attempt_count: case(
                (JobRow.attempt_count + 1 > JobRow.max_attempts, JobRow.max_attempts),
                else_=JobRow.attempt_count + 1,
            ),
            JobRow.last_error: error,
            JobRow.completed_at: now,
            JobRow.claimed_by: None,
            JobRow.updated_at: now,
        })

    async def reschedule(self, job_id: str, next_retry_at: datetime, error: str,
                         now: Optional[datetime] = None) -> Job:
        now = now or _utcnow()
        if next_retry_at <= now:
            raise ValueError("next_retry_at must be in the future")
        return await self._transition(job_id, JobStatus.SCHEDULED, {
            JobRow.status: JobStatus.SCHEDULED.value,
            JobRow.attempt_count: JobRow.attempt_count + 1,
            JobRow.next_retry_at: next_retry_at,
            JobRow.last_error: error,
            JobRow.claimed_by: None,
            JobRow.updated_at: now,
        })

    async def defer(self, job_id: str, next_retry_at: datetime, reason: str,
                    now: Optional[datetime] = None) -> Job:
        now = now or _utcnow()
        if next_retry_at <= now:
            raise ValueError("next_retry_at must be in the future")
        return await self._transition(job_id, JobStatus.SCHEDULED, {
            JobRow.status: JobStatus.SCHEDULED.value,
            JobRow.next_retry_at: next_retry_at,
            JobRow.last_error: reason,
            JobRow.claimed_by: None,
            JobRow.updated_at: now,
        })

    async def _transition(self, job_id: str, target: JobStatus, values: dict) -> Job:
        """Apply values only if the job is still Processing."""
        try:
            async with self._scope() as db:
                result = await db.execute(
                    update(JobRow)
                    .where(JobRow.id == job_id, JobRow.status == JobStatus.PROCESSING.value)
                    .values(values)
                    .execution_options(synchronize_session=False)
                )
                row = await db.get(JobRow, job_id)
                if row is None:
                    raise JobNotFound(job_id)
                if result.rowcount != 1:
                    raise InvalidTransition(job_id, row.status, target.value)
                return self._row_to_job(row)
        except SQLAlchemyError as e:
            raise PersistenceError(f"transition to {target.value} failed: {e}") from e

    # ── Reaper support ────────────────────────────────────

    async def find_stale(self, stale_before: datetime, limit: int = 100) -> list[Job]:
        try:
            async with self._scope() as db:
                stmt = (
                    select(JobRow)
                    .where(
                        JobRow.status == JobStatus.PROCESSING.value,
                        JobRow.started_at.is_not(None),
                        JobRow.started_at < stale_before,
                    )
                    .order_by(JobRow.started_at)
                    .limit(limit)
                )
                result = await db.execute(stmt)
                return [self._row_to_job(r) for r in result.scalars()]
        except SQLAlchemyError as e:
            raise PersistenceError(f"find_stale failed: {e}") from e

    async def reclaim_stale(
        self,
        job_id: str,
        started_at: datetime,
        next_retry_at: Optional[datetime],
        error: str,
        now: Optional[datetime] = None,
    ) -> Optional[Job]:
        now = now or _utcnow()
        values: dict = {
            JobRow.attempt_count: case(
                (JobRow.attempt_count + 1 > JobRow.max_attempts, JobRow.max_attempts),
                else_=JobRow.attempt_count + 1,
            ),
            JobRow.last_error: error,
            JobRow.claimed_by: None,
            JobRow.updated_at: now,
        }
        if next_retry_at is None:
            values[JobRow.status] = JobStatus.FAILED.value
            values[JobRow.completed_at] = now
        else:
            values[JobRow.status] = JobStatus.SCHEDULED.value
            values[JobRow.next_retry_at] = next_retry_at

        try:
            async with self._scope() as db:
                result = await db.execute(
                    update(JobRow)
                    .where(
                        JobRow.id == job_id,
                        JobRow.status == JobStatus.PROCESSING.value,
                        JobRow.started_at == started_at,
                    )
                    .values(values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None
                row = await db.get(JobRow, job_id)
                return self._row_to_job(row)
        except SQLAlchemyError as e:
            raise PersistenceError(f"reclaim failed: {e}") from e

    # ── Queries ───────────────────────────────────────────

    async def get_job(self, job_id: str) -> Optional[Job]:
        try:
            async with self._scope() as db:
                row = await db.get(JobRow, job_id)
                return self._row_to_job(row) if row else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"get_job failed: {e}") from e

    async def count_by_status(self, workspace_id: Optional[str] = None) -> dict[str, int]:
        stmt = select(JobRow.status, func.count()).group_by(JobRow.status)
        if workspace_id is not None:
            stmt = stmt.where(JobRow.workspace_id == workspace_id)
        try:
            async with self._scope() as db:
                result = await db.execute(stmt)
                return {status: int(n) for status, n in result.all()}
        except SQLAlchemyError as e:
            raise PersistenceError(f"count_by_status failed: {e}") from e

    async def list_failed(self, workspace_id: Optional[str] = None, limit: int = 50) -> list[Job]:
        stmt = select(JobRow).where(JobRow.status == JobStatus.FAILED.value)
        if workspace_id is not None:
            stmt = stmt.where(JobRow.workspace_id == workspace_id)
        stmt = stmt.order_by(JobRow.updated_at.desc()).limit(limit)
        try:
            async with self._scope() as db:
                result = await db.execute(stmt)
                return [self._row_to_job(r) for r in result.scalars()]
        except SQLAlchemyError as e:
            raise PersistenceError(f"list_failed failed: {e}") from e

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _row_to_job(row: JobRow) -> Job:
        payload = row.payload or {}
        # Handle both dict and string (SQLite stores JSON as text)
        if isinstance(payload, str):
            payload = json.loads(payload)
        return Job(
            id=row.id,
            job_type=row.job_type,
            payload=payload,
            status=JobStatus(row.status),
            attempt_count=row.attempt_count,
            max_attempts=row.max_attempts,
            workspace_id=row.workspace_id,
            resource_key=row.resource_key,
            claimed_by=row.claimed_by,
            next_retry_at=_as_utc(row.next_retry_at),
            last_error=row.last_error,
            created_at=_as_utc(row.created_at),
            started_at=_as_utc(row.started_at),
            completed_at=_as_utc(row.completed_at),
            updated_at=_as_utc(row.updated_at),
        )


class SqlRateWindowStore(BaseRateWindowStore):
    """Rate windows keyed by (resource_key, window_start)."""

    def __init__(self, session_scope: SessionScope = get_session):
        self._scope = session_scope

    async def reserve(
        self,
        resource_key: str,
        window_start: datetime,
        window_end: datetime,
        limit: int,
    ) -> tuple[bool, RateWindow]:
        try:
            try:
                return await self._reserve_once(resource_key, window_start, window_end, limit)
            except IntegrityError:
                # Another process created the window first; it exists now
                logger.debug("rate_window_insert_race", resource_key=resource_key)
                return await self._reserve_once(resource_key, window_start, window_end, limit)
        except SQLAlchemyError as e:
            raise PersistenceError(f"reserve failed: {e}") from e

    async def _reserve_once(self, resource_key, window_start, window_end, limit):
        now = _utcnow()
        key = and_(
            RateWindowRow.resource_key == resource_key,
            RateWindowRow.window_start == window_start,
        )
        async with self._scope() as db:
            result = await db.execute(
                update(RateWindowRow)
                .where(key, RateWindowRow.count < limit)
                .values({
                    RateWindowRow.count: RateWindowRow.count + 1,
                    RateWindowRow.limit: limit,
                    RateWindowRow.updated_at: now,
                })
                .execution_options(synchronize_session=False)
            )
            allowed = result.rowcount == 1

            row = (await db.execute(select(RateWindowRow).where(key))).scalar_one_or_none()
            if row is None:
                allowed = limit > 0
                row = RateWindowRow(
                    id=uuid.uuid4().hex,
                    resource_key=resource_key,
                    window_start=window_start,
                    window_end=window_end,
                    count=1 if allowed else 0,
                    limit=limit,
                    updated_at=now,
                )
                db.add(row)
                await db.flush()

            window = self._row_to_window(row)
            window.limit = limit
            return allowed, window

    async def get_window(self, resource_key: str, window_start: datetime) -> Optional[RateWindow]:
        try:
            async with self._scope() as db:
                row = (await db.execute(
                    select(RateWindowRow).where(
                        RateWindowRow.resource_key == resource_key,
                        RateWindowRow.window_start == window_start,
                    )
                )).scalar_one_or_none()
                return self._row_to_window(row) if row else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"get_window failed: {e}") from e

    @staticmethod
    def _row_to_window(row: RateWindowRow) -> RateWindow:
        return RateWindow(
            resource_key=row.resource_key,
            window_start=_as_utc(row.window_start),
            window_end=_as_utc(row.window_end),
            count=row.count,
            limit=row.limit,
        )


class SqlMetricsStore(BaseMetricsStore):
    """Usage counters and job events."""

    def __init__(self, session_scope: SessionScope = get_session):
        self._scope = session_scope

    # ── Usage ─────────────────────────────────────────────

    async def increment_usage(
        self,
        workspace_id: str,
        metric_type: str,
        amount: int,
        period_start: date,
        period_end: date,
        marker: Optional[JobEvent] = None,
    ) -> int:
        metric_type = str(getattr(metric_type, "value", metric_type))
        args = (workspace_id, metric_type, amount, period_start, period_end, marker)
        try:
            try:
                return await self._increment_once(*args)
            except IntegrityError:
                # Lost a race on the usage row or the marker; the retry sees it
                return await self._increment_once(*args)
        except SQLAlchemyError as e:
            raise PersistenceError(f"increment_usage failed: {e}") from e

    async def _increment_once(self, workspace_id, metric_type, amount, period_start, period_end,
                              marker):
        key = and_(
            UsageMetricRow.workspace_id == workspace_id,
            UsageMetricRow.metric_type == metric_type,
            UsageMetricRow.period_start == period_start,
        )
        async with self._scope() as db:
            if marker is not None:
                seen = (await db.execute(
                    select(JobEventRow.id).where(JobEventRow.dedupe_key == marker.dedupe_key)
                )).scalar_one_or_none()
                if seen is not None:
                    count = (await db.execute(
                        select(UsageMetricRow.count).where(key)
                    )).scalar_one_or_none()
                    return int(count or 0)
                db.add(self._event_row(marker))
                await db.flush()

            result = await db.execute(
                update(UsageMetricRow)
                .where(key)
                .values({UsageMetricRow.count: UsageMetricRow.count + amount})
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                db.add(UsageMetricRow(
                    id=uuid.uuid4().hex,
                    workspace_id=workspace_id,
                    metric_type=metric_type,
                    count=amount,
                    period_start=period_start,
                    period_end=period_end,
                ))
                await db.flush()
                return amount
            count = (await db.execute(select(UsageMetricRow.count).where(key))).scalar_one()
            return int(count)

    async def get_usage(self, workspace_id: str, metric_type: str, period_start: date) -> int:
        metric_type = str(getattr(metric_type, "value", metric_type))
        try:
            async with self._scope() as db:
                count = (await db.execute(
                    select(UsageMetricRow.count).where(
                        UsageMetricRow.workspace_id == workspace_id,
                        UsageMetricRow.metric_type == metric_type,
                        UsageMetricRow.period_start == period_start,
                    )
                )).scalar_one_or_none()
                return int(count or 0)
        except SQLAlchemyError as e:
            raise PersistenceError(f"get_usage failed: {e}") from e

    # ── Events ────────────────────────────────────────────

    async def record_event(self, event: JobEvent) -> bool:
        try:
            async with self._scope() as db:
                existing = (await db.execute(
                    select(JobEventRow.id).where(JobEventRow.dedupe_key == event.dedupe_key)
                )).scalar_one_or_none()
                if existing is not None:
                    return False
                db.add(self._event_row(event))
                await db.flush()
            return True
        except IntegrityError:
            return False
        except SQLAlchemyError as e:
            raise PersistenceError(f"record_event failed: {e}") from e

    @staticmethod
    def _event_row(event: JobEvent) -> JobEventRow:
        return JobEventRow(
            id=uuid.uuid4().hex,
            job_id=event.job_id,
            workspace_id=event.workspace_id,
            event_type=event.event_type.value,
            dedupe_key=event.dedupe_key,
            data=event.data,
            created_at=event.created_at,
        )

    async def list_events(self, job_id: Optional[str] = None,
                          event_type: Optional[str] = None) -> list[JobEvent]:
        stmt = select(JobEventRow).order_by(JobEventRow.created_at)
        if job_id is not None:
            stmt = stmt.where(JobEventRow.job_id == job_id)
        if event_type is not None:
            stmt = stmt.where(JobEventRow.event_type == str(getattr(event_type, "value", event_type)))
        try:
            async with self._scope() as db:
                result = await db.execute(stmt)
                return [
                    JobEvent(
                        job_id=r.job_id,
                        workspace_id=r.workspace_id,
                        event_type=JobEventType(r.event_type),
                        dedupe_key=r.dedupe_key,
                        data=json.loads(r.data) if isinstance(r.data, str) else (r.data or {}),
                        created_at=_as_utc(r.created_at),
                    )
                    for r in result.scalars()
                ]
        except SQLAlchemyError as e:
            raise PersistenceError(f"list_events failed: {e}") from e
