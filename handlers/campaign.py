"""
ProcessCampaign handler — fans a campaign batch out into SendEmail jobs.

The mail service hands back pending leads already assigned to an inbox
with capacity (suppressed addresses excluded). For each lead:
  1. re-check the campaign is still active (manual or auto pause)
  2. enqueue a SendEmail job scoped to the inbox's rate window
  3. mark the lead queued so the next batch skips it

A pause stops the batch between leads; the job itself still completes.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from pydantic import ValidationError

from backend.connector import MailServiceConnector
from job_queue.errors import PermanentError
from job_queue.producer import JobProducer
from models.schemas import ProcessCampaignPayload, SendEmailPayload

logger = structlog.get_logger()

ACTIVE = "active"


class ProcessCampaignHandler:

    def __init__(self, connector: MailServiceConnector, producer: JobProducer, batch_size: int = 50):
        self.connector = connector
        self.producer = producer
        self.batch_size = batch_size

    async def __call__(self, payload: dict[str, Any]) -> None:
        p = ProcessCampaignPayload.model_validate(payload)

        campaign = await self._active_campaign(p.campaign_id)
        if campaign is None:
            return

        leads = await self.connector.get_pending_leads(p.campaign_id, p.batch_size or self.batch_size)
        queued = 0
        for lead in leads:
            if queued and await self._active_campaign(p.campaign_id) is None:
                logger.info("campaign_paused_mid_batch",
                            campaign_id=p.campaign_id, queued=queued, remaining=len(leads) - queued)
                return

            try:
                send = SendEmailPayload(
                    campaign_id=p.campaign_id,
                    campaign_lead_id=str(lead["campaign_lead_id"]),
                    lead_id=str(lead["lead_id"]),
                    inbox_id=str(lead["inbox_id"]),
                    inbox_email=lead.get("inbox_email", ""),
                    to_email=lead["email"],
                    to_name=lead.get("name"),
                    subject=lead["subject"],
                    body_html=lead["body_html"],
                    daily_limit=lead.get("daily_limit"),
                )
            except (KeyError, ValidationError) as e:
                logger.warning("campaign_lead_skipped", campaign_id=p.campaign_id,
                               lead=lead.get("campaign_lead_id"), error=str(e))
                continue

            await self.producer.enqueue_send_email(campaign["workspace_id"], send)
            await self.connector.mark_lead_queued(p.campaign_id, send.campaign_lead_id)
            queued += 1

        logger.info("campaign_batch_queued", campaign_id=p.campaign_id,
                    queued=queued, fetched=len(leads))

    async def _active_campaign(self, campaign_id: str) -> Optional[dict[str, Any]]:
        campaign = await self.connector.get_campaign(campaign_id)
        if campaign is None:
            raise PermanentError(f"Campaign {campaign_id} not found")
        if campaign.get("status") != ACTIVE:
            logger.info("campaign_not_active", campaign_id=campaign_id,
                        status=campaign.get("status"))
            return None
        return campaign
