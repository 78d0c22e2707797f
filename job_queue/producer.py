"""
Job Producer — typed helpers for putting work on the queue.

Payloads are validated up front, so a malformed job is rejected at the
producer instead of failing permanently inside a worker.

    producer = JobProducer(stores.jobs)
    await producer.enqueue_send_email(workspace_id, SendEmailPayload(...))
"""
from __future__ import annotations

import structlog
from typing import Any, Optional, Union

from pydantic import BaseModel

from database.store_base import BaseJobStore
from models.schemas import (
    JobType, PAYLOAD_MODELS,
    SendEmailPayload, VerifyEmailPayload, WarmupEmailPayload, ProcessCampaignPayload,
)

logger = structlog.get_logger()


def inbox_resource_key(inbox_id: str) -> str:
    return f"inbox:{inbox_id}"


class JobProducer:

    def __init__(self, jobs: BaseJobStore, default_max_attempts: int = 3):
        self.jobs = jobs
        self.default_max_attempts = default_max_attempts

    async def enqueue(
        self,
        job_type: JobType,
        payload: Union[BaseModel, dict[str, Any]],
        workspace_id: str,
        resource_key: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> str:
        job_type = JobType(job_type)
        model = PAYLOAD_MODELS[job_type]
        if not isinstance(payload, model):
            payload = model.model_validate(payload)

        job_id = await self.jobs.enqueue(
            job_type.value,
            payload.model_dump(mode="json", exclude_none=True),
            workspace_id,
            resource_key=resource_key,
            max_attempts=max_attempts or self.default_max_attempts,
        )
        logger.info("job_enqueued", job_id=job_id, job_type=job_type.value,
                    workspace_id=workspace_id, resource_key=resource_key)
        return job_id

    async def enqueue_send_email(self, workspace_id: str, payload: SendEmailPayload,
                                 max_attempts: Optional[int] = None) -> str:
        return await self.enqueue(
            JobType.SEND_EMAIL, payload, workspace_id,
            resource_key=inbox_resource_key(payload.inbox_id),
            max_attempts=max_attempts,
        )

    async def enqueue_verify_email(self, workspace_id: str, payload: VerifyEmailPayload,
                                   max_attempts: Optional[int] = None) -> str:
        return await self.enqueue(JobType.VERIFY_EMAIL, payload, workspace_id,
                                  max_attempts=max_attempts)

    async def enqueue_warmup_email(self, workspace_id: str, payload: WarmupEmailPayload,
                                   max_attempts: Optional[int] = None) -> str:
        return await self.enqueue(
            JobType.WARMUP_EMAIL, payload, workspace_id,
            resource_key=inbox_resource_key(payload.email_account_id),
            max_attempts=max_attempts,
        )

    async def enqueue_process_campaign(self, workspace_id: str, payload: ProcessCampaignPayload,
                                       max_attempts: Optional[int] = None) -> str:
        return await self.enqueue(JobType.PROCESS_CAMPAIGN, payload, workspace_id,
                                  max_attempts=max_attempts)
