"""
Outcome Recorder — usage metrics, lifecycle events and the auto-pause trigger.

Called after every state change the engine makes to a job. Each change
becomes one JobEvent with a dedupe key, so recording the same change twice
(e.g. after a retried persistence call) is a no-op. The usage increment is
written together with its own usage_counted marker, so it also happens at
most once per job even when record() is retried halfway through.

Auto-pause thresholds live outside this engine. On terminal failure of a
campaign job the recorder writes a campaign_health_check event (the outbox
the campaign-health subsystem consumes) and, the first time only, calls the
optional hook so the check can run immediately.
"""
from __future__ import annotations

import structlog
from datetime import date, datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from database.store_base import BaseMetricsStore
from job_queue.dispatcher import Outcome
from models.schemas import Job, JobEvent, JobEventType, JobStatus, JobType, UsageMetricType

logger = structlog.get_logger()

# (workspace_id, campaign_id) → None
AutoPauseHook = Callable[[str, str], Awaitable[None]]

USAGE_METRICS: dict[JobType, UsageMetricType] = {
    JobType.SEND_EMAIL: UsageMetricType.EMAILS_SENT,
    JobType.VERIFY_EMAIL: UsageMetricType.VERIFICATIONS,
    JobType.WARMUP_EMAIL: UsageMetricType.WARMUP_EMAILS_SENT,
}

_STATUS_EVENTS = {
    JobStatus.COMPLETED: JobEventType.COMPLETED,
    JobStatus.FAILED: JobEventType.FAILED,
    JobStatus.SCHEDULED: JobEventType.RESCHEDULED,
}


def usage_period(now: datetime) -> tuple[date, date]:
    """Daily billing period [start, end) containing now (UTC)."""
    day = now.astimezone(timezone.utc).date()
    return day, day + timedelta(days=1)


class OutcomeRecorder:

    def __init__(self, metrics: BaseMetricsStore, auto_pause_hook: Optional[AutoPauseHook] = None):
        self.metrics = metrics
        self.auto_pause_hook = auto_pause_hook

    async def record(
        self,
        job: Job,
        outcome: Optional[Outcome] = None,
        event_type: Optional[JobEventType] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Record the state the job was just moved to.

        job is the job as returned by the store after the transition.
        event_type defaults from job.status; pass DEFERRED or RECLAIMED for
        the flow-control and reaper paths.
        """
        now = now or datetime.now(timezone.utc)
        event_type = event_type or _STATUS_EVENTS.get(job.status)
        if event_type is None:
            logger.warning("outcome_unrecordable_status", job_id=job.id, status=job.status.value)
            return

        created = await self.metrics.record_event(JobEvent(
            job_id=job.id,
            workspace_id=job.workspace_id,
            event_type=event_type,
            dedupe_key=self._dedupe_key(job, event_type),
            data=self._event_data(job, outcome),
            created_at=now,
        ))
        if not created:
            logger.debug("outcome_already_recorded", job_id=job.id, event_type=event_type.value)

        # Side effects are deduped by their own keys, not by this event
        if event_type == JobEventType.COMPLETED:
            await self._count_usage(job, now)

        if job.status == JobStatus.FAILED and job.campaign_id:
            await self._trigger_health_check(job, now)

    # ── Usage ─────────────────────────────────────────────

    async def _count_usage(self, job: Job, now: datetime) -> None:
        metric = USAGE_METRICS.get(job.kind)
        if metric is None:
            return
        period_start, period_end = usage_period(now)
        marker = JobEvent(
            job_id=job.id,
            workspace_id=job.workspace_id,
            event_type=JobEventType.USAGE_COUNTED,
            dedupe_key=f"{job.id}:{JobEventType.USAGE_COUNTED.value}",
            data={"metric": metric.value, "amount": 1,
                  "period_start": period_start.isoformat()},
            created_at=now,
        )
        total = await self.metrics.increment_usage(
            job.workspace_id, metric.value, 1, period_start, period_end, marker=marker,
        )
        logger.debug("usage_incremented", workspace_id=job.workspace_id,
                     metric=metric.value, total=total)

    # ── Auto-pause trigger ────────────────────────────────

    async def _trigger_health_check(self, job: Job, now: datetime) -> None:
        created = await self.metrics.record_event(JobEvent(
            job_id=job.id,
            workspace_id=job.workspace_id,
            event_type=JobEventType.CAMPAIGN_HEALTH_CHECK,
            dedupe_key=f"{job.id}:{JobEventType.CAMPAIGN_HEALTH_CHECK.value}",
            data={"campaign_id": job.campaign_id, "job_type": job.job_type,
                  "last_error": job.last_error},
            created_at=now,
        ))
        if not created:
            return

        logger.info("campaign_health_check_triggered",
                    job_id=job.id, campaign_id=job.campaign_id,
                    workspace_id=job.workspace_id)
        if self.auto_pause_hook is None:
            return
        try:
            await self.auto_pause_hook(job.workspace_id, job.campaign_id)
        except Exception as e:
            logger.error("auto_pause_hook_failed",
                         campaign_id=job.campaign_id, error=str(e), exc_info=True)

    # ── Helpers ───────────────────────────────────────────

    @staticmethod
    def _dedupe_key(job: Job, event_type: JobEventType) -> str:
        if event_type in (JobEventType.COMPLETED, JobEventType.FAILED):
            return f"{job.id}:{event_type.value}"
        # A job can be rescheduled or deferred many times; key on the transition
        return f"{job.id}:{event_type.value}:{job.attempt_count}:{job.updated_at.isoformat()}"

    @staticmethod
    def _event_data(job: Job, outcome: Optional[Outcome]) -> dict:
        data = {
            "job_type": job.job_type,
            "status": job.status.value,
            "attempt_count": job.attempt_count,
            "max_attempts": job.max_attempts,
        }
        if job.resource_key:
            data["resource_key"] = job.resource_key
        if job.next_retry_at:
            data["next_retry_at"] = job.next_retry_at.isoformat()
        if job.last_error:
            data["last_error"] = job.last_error
        if outcome is not None:
            data["duration"] = round(outcome.duration, 3)
            if outcome.error_kind:
                data["error_kind"] = outcome.error_kind.value
        return data
