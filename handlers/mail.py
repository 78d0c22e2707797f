"""
SendEmail and WarmupEmail handlers.

Both hand the message to the mail service and map a rejection to the
retry taxonomy: SMTP 4xx (greylisting, mailbox busy) is transient,
SMTP 5xx (unknown user, policy block) is permanent.
"""
from __future__ import annotations

import structlog
from typing import Any

from backend.connector import MailServiceConnector, classify_smtp_code
from models.schemas import SendEmailPayload, WarmupEmailPayload

logger = structlog.get_logger()


class SendEmailHandler:

    def __init__(self, connector: MailServiceConnector):
        self.connector = connector

    async def __call__(self, payload: dict[str, Any]) -> None:
        p = SendEmailPayload.model_validate(payload)
        result = await self.connector.send_email(
            p.inbox_id, p.to_email, p.to_name, p.subject, p.body_html,
            metadata={
                "campaign_id": p.campaign_id,
                "campaign_lead_id": p.campaign_lead_id,
                "lead_id": p.lead_id,
            },
        )
        if not result.get("accepted", False):
            raise classify_smtp_code(result.get("smtp_code"), result.get("message", ""))

        logger.info("campaign_email_sent",
                    campaign_id=p.campaign_id,
                    inbox_id=p.inbox_id,
                    lead_id=p.lead_id,
                    message_id=result.get("message_id"))


class WarmupEmailHandler:

    def __init__(self, connector: MailServiceConnector):
        self.connector = connector

    async def __call__(self, payload: dict[str, Any]) -> None:
        p = WarmupEmailPayload.model_validate(payload)
        result = await self.connector.send_warmup(p.email_account_id, p.target_email)
        if not result.get("accepted", False):
            raise classify_smtp_code(result.get("smtp_code"), result.get("message", ""))
        logger.debug("warmup_email_sent", email_account_id=p.email_account_id)
