"""VerifyEmail handler."""
from __future__ import annotations

import structlog
from typing import Any

from backend.connector import MailServiceConnector
from job_queue.errors import TransientError
from models.schemas import VerifyEmailPayload

logger = structlog.get_logger()

VERIFIED_STATUSES = {"valid", "invalid", "risky"}


class VerifyEmailHandler:

    def __init__(self, connector: MailServiceConnector):
        self.connector = connector

    async def __call__(self, payload: dict[str, Any]) -> None:
        p = VerifyEmailPayload.model_validate(payload)
        result = await self.connector.verify_email(p.email)
        status = (result or {}).get("status", "unknown")
        if status not in VERIFIED_STATUSES:
            # Provider could not decide (MX timeout, catch-all probe failed)
            raise TransientError(f"verification inconclusive for lead {p.lead_id}: {status}")

        await self.connector.record_verification(p.lead_id, result)
        logger.info("email_verified", lead_id=p.lead_id, status=status)
