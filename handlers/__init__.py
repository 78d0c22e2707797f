"""
Job handlers — one per JobType.

    registry = build_registry(connector, producer, settings.handlers.timeouts,
                              settings.handlers.campaign_batch_size)
"""
from backend.connector import MailServiceConnector
from handlers.campaign import ProcessCampaignHandler
from handlers.mail import SendEmailHandler, WarmupEmailHandler
from handlers.verify import VerifyEmailHandler
from job_queue.dispatcher import HandlerRegistry
from job_queue.producer import JobProducer
from models.schemas import JobType


def build_registry(
    connector: MailServiceConnector,
    producer: JobProducer,
    timeouts: dict[str, float] = None,
    campaign_batch_size: int = 50,
) -> HandlerRegistry:
    """Register the default handler for every job type."""
    registry = HandlerRegistry(timeouts)
    registry.register(JobType.SEND_EMAIL, SendEmailHandler(connector))
    registry.register(JobType.VERIFY_EMAIL, VerifyEmailHandler(connector))
    registry.register(JobType.WARMUP_EMAIL, WarmupEmailHandler(connector))
    registry.register(JobType.PROCESS_CAMPAIGN,
                      ProcessCampaignHandler(connector, producer, campaign_batch_size))
    return registry


__all__ = [
    "build_registry",
    "SendEmailHandler", "WarmupEmailHandler",
    "VerifyEmailHandler", "ProcessCampaignHandler",
]
