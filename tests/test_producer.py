"""Tests — JobProducer."""
import pytest
from pydantic import ValidationError

from job_queue.producer import JobProducer, inbox_resource_key
from models.schemas import (
    JobStatus, JobType, ProcessCampaignPayload, SendEmailPayload, VerifyEmailPayload,
    WarmupEmailPayload,
)

from conftest import send_email_payload


class TestJobProducer:

    def test_inbox_resource_key(self):
        assert inbox_resource_key("inbox-7") == "inbox:inbox-7"

    @pytest.mark.asyncio
    async def test_send_email_scoped_to_inbox(self, stores):
        producer = JobProducer(stores.jobs, default_max_attempts=4)
        job_id = await producer.enqueue_send_email(
            "ws-1", SendEmailPayload.model_validate(send_email_payload()))
        job = await stores.jobs.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.resource_key == "inbox:inbox-1"
        assert job.max_attempts == 4
        assert "daily_limit" not in job.payload

    @pytest.mark.asyncio
    async def test_warmup_scoped_to_account(self, stores):
        producer = JobProducer(stores.jobs)
        job_id = await producer.enqueue_warmup_email(
            "ws-1", WarmupEmailPayload(email_account_id="acc-1", target_email="seed@example.com"))
        assert (await stores.jobs.get_job(job_id)).resource_key == "inbox:acc-1"

    @pytest.mark.asyncio
    async def test_verify_and_campaign_unscoped(self, stores):
        producer = JobProducer(stores.jobs)
        verify_id = await producer.enqueue_verify_email(
            "ws-1", VerifyEmailPayload(lead_id="lead-1", email="p@example.com"), max_attempts=2)
        campaign_id = await producer.enqueue_process_campaign(
            "ws-1", ProcessCampaignPayload(campaign_id="camp-1"))

        verify = await stores.jobs.get_job(verify_id)
        campaign = await stores.jobs.get_job(campaign_id)
        assert verify.resource_key is None
        assert verify.max_attempts == 2
        assert campaign.job_type == JobType.PROCESS_CAMPAIGN.value
        assert campaign.payload == {"campaign_id": "camp-1"}

    @pytest.mark.asyncio
    async def test_dict_payload_validated(self, stores):
        producer = JobProducer(stores.jobs)
        with pytest.raises(ValidationError):
            await producer.enqueue(JobType.VERIFY_EMAIL, {"lead_id": "lead-1"}, "ws-1")
        assert await stores.jobs.count_by_status() == {}

    @pytest.mark.asyncio
    async def test_unknown_job_type_rejected(self, stores):
        producer = JobProducer(stores.jobs)
        with pytest.raises(ValueError):
            await producer.enqueue("SendFax", {}, "ws-1")
