"""
Core data models for the job engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class JobType(str, Enum):
    SEND_EMAIL = "SendEmail"
    VERIFY_EMAIL = "VerifyEmail"
    WARMUP_EMAIL = "WarmupEmail"
    PROCESS_CAMPAIGN = "ProcessCampaign"

    @classmethod
    def parse(cls, value: Any) -> Optional[JobType]:
        """Return the member for a stored value, or None for unknown types."""
        if isinstance(value, cls):
            return value
        # Legacy rows stored the serialized enum name, quotes included
        raw = str(value).strip().strip('"')
        for member in cls:
            if raw == member.value:
                return member
        return None


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SCHEDULED = "scheduled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CONFIGURATION = "configuration"


# ──────────────────────────────────────────────────────────────
#  Job — one unit of background work
# ──────────────────────────────────────────────────────────────

class Job(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    job_type: str                             # JobType value; unknown values survive for the dispatcher to reject
    payload: dict[str, Any] = {}
    status: JobStatus = JobStatus.PENDING
    attempt_count: int = 0
    max_attempts: int = 3
    workspace_id: str
    resource_key: Optional[str] = None        # rate-limit scope, e.g. "inbox:<id>"
    claimed_by: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def kind(self) -> Optional[JobType]:
        return JobType.parse(self.job_type)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def campaign_id(self) -> Optional[str]:
        value = self.payload.get("campaign_id")
        return str(value) if value else None


# ──────────────────────────────────────────────────────────────
#  Payloads — one per job type
# ──────────────────────────────────────────────────────────────

class SendEmailPayload(BaseModel):
    campaign_id: str
    campaign_lead_id: str = ""
    lead_id: str
    inbox_id: str
    inbox_email: str = ""                     # sending address, used for provider detection
    to_email: str
    to_name: Optional[str] = None
    subject: str
    body_html: str
    daily_limit: Optional[int] = None         # overrides the provider default


class VerifyEmailPayload(BaseModel):
    lead_id: str
    email: str


class WarmupEmailPayload(BaseModel):
    email_account_id: str
    inbox_email: str = ""
    target_email: str
    daily_limit: Optional[int] = None         # warmup ramp limit for the day


class ProcessCampaignPayload(BaseModel):
    campaign_id: str
    batch_size: Optional[int] = None          # handlers.campaign_batch_size when unset


PAYLOAD_MODELS: dict[JobType, type[BaseModel]] = {
    JobType.SEND_EMAIL: SendEmailPayload,
    JobType.VERIFY_EMAIL: VerifyEmailPayload,
    JobType.WARMUP_EMAIL: WarmupEmailPayload,
    JobType.PROCESS_CAMPAIGN: ProcessCampaignPayload,
}


# ──────────────────────────────────────────────────────────────
#  RateWindow — counted allowance for a resource over a day
# ──────────────────────────────────────────────────────────────

class RateWindow(BaseModel):
    resource_key: str
    window_start: datetime
    window_end: datetime
    count: int = 0
    limit: int

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)


# ──────────────────────────────────────────────────────────────
#  Usage & events — what the outcome recorder emits
# ──────────────────────────────────────────────────────────────

class UsageMetricType(str, Enum):
    EMAILS_SENT = "emails_sent"
    VERIFICATIONS = "verifications"
    WARMUP_EMAILS_SENT = "warmup_emails_sent"


class JobEventType(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    RESCHEDULED = "rescheduled"
    DEFERRED = "deferred"
    RECLAIMED = "reclaimed"
    CAMPAIGN_HEALTH_CHECK = "campaign_health_check"
    USAGE_COUNTED = "usage_counted"


class JobEvent(BaseModel):
    job_id: str
    workspace_id: str
    event_type: JobEventType
    dedupe_key: str
    data: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=_utcnow)
