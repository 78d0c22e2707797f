"""
Mail Service Connector — adapter for the services the job handlers drive.

The engine itself never talks to SMTP, verification providers or the
campaign database; handlers go through this connector. REST is the
production implementation, the mock keeps everything in memory.

Errors surface already classified for the retry policy:
  transport errors, timeouts, HTTP 408/425/429/5xx  → TransientError
  other HTTP 4xx                                    → PermanentError

Only idempotent calls are retried here. Sends make a single attempt and
carry an Idempotency-Key, so the provider can drop a resend from a job retry.
"""
from __future__ import annotations

import abc
import re
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import ConnectorConfig, get_settings
from job_queue.errors import PermanentError, TransientError

logger = structlog.get_logger()

DEFAULT_ENDPOINTS = {
    "send_email": "/v1/send",
    "send_warmup": "/v1/warmup",
    "verify_email": "/v1/verify",
    "get_campaign": "/v1/campaigns/{campaign_id}",
    "pending_leads": "/v1/campaigns/{campaign_id}/pending-leads",
    "mark_lead_queued": "/v1/campaigns/{campaign_id}/leads/{campaign_lead_id}/queued",
    "record_verification": "/v1/leads/{lead_id}/verification",
}

_RETRYABLE_STATUS = {408, 425, 429}


def classify_smtp_code(code: Optional[int], message: str = "") -> Exception:
    """SMTP 4xx is a temporary rejection, 5xx a hard bounce."""
    text = f"SMTP {code}: {message}" if code else (message or "send rejected")
    if code is not None and 400 <= int(code) < 500:
        return TransientError(text)
    return PermanentError(text)


def send_idempotency_key(metadata: dict[str, Any]) -> Optional[str]:
    """One key per campaign lead, stable across job retries."""
    campaign_id = metadata.get("campaign_id")
    lead = metadata.get("campaign_lead_id") or metadata.get("lead_id")
    if not campaign_id or not lead:
        return None
    return f"send:{campaign_id}:{lead}"


class MailServiceConnector(abc.ABC):
    """Abstract base for mail/verification/campaign collaborators."""

    @abc.abstractmethod
    async def send_email(self, inbox_id: str, to_email: str, to_name: Optional[str],
                         subject: str, body_html: str, metadata: dict[str, Any] = None) -> dict[str, Any]:
        """Send one email. Returns {"accepted": bool, "message_id"?, "smtp_code"?, "message"?}."""
        ...

    @abc.abstractmethod
    async def send_warmup(self, email_account_id: str, target_email: str) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def verify_email(self, email: str) -> dict[str, Any]:
        """Returns {"status": "valid" | "invalid" | "risky" | "unknown", ...}."""
        ...

    @abc.abstractmethod
    async def record_verification(self, lead_id: str, result: dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    async def get_campaign(self, campaign_id: str) -> Optional[dict[str, Any]]:
        """Campaign record with at least "status" and "workspace_id", or None."""
        ...

    @abc.abstractmethod
    async def get_pending_leads(self, campaign_id: str, limit: int) -> list[dict[str, Any]]:
        """
        Leads ready to send, each already assigned to an inbox with capacity:
        campaign_lead_id, lead_id, email, name, subject, body_html, inbox_id,
        inbox_email and optionally daily_limit.
        """
        ...

    @abc.abstractmethod
    async def mark_lead_queued(self, campaign_id: str, campaign_lead_id: str) -> None:
        ...

    async def close(self):
        pass


class RESTMailServiceConnector(MailServiceConnector):
    """
    REST implementation. Endpoints come from connector.endpoints in
    settings.yaml, falling back to DEFAULT_ENDPOINTS.
    """

    def __init__(self, config: ConnectorConfig = None):
        self.config = config or get_settings().connector
        self.endpoints = {**DEFAULT_ENDPOINTS, **(self.config.endpoints or {})}
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout,
            )
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(TransientError),
        reraise=True,
    )
    async def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        """Idempotent calls: transient failures are retried here."""
        return await self._send(method, endpoint, **kwargs)

    async def _send(self, method: str, endpoint: str, **kwargs) -> Any:
        """
        Single attempt. Mail sends go straight through this: a timeout can
        arrive after the provider accepted the message, so they are retried
        only by the job's own retry policy, under the same Idempotency-Key.
        """
        client = await self._get_client()
        url = self.endpoints.get(endpoint, endpoint)
        # Replace path parameters
        for k, v in kwargs.pop("path_params", {}).items():
            url = url.replace(f"{{{k}}}", str(v))

        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise TransientError(f"{endpoint}: {type(e).__name__}: {e}") from e

        if response.status_code in _RETRYABLE_STATUS or response.status_code >= 500:
            raise TransientError(f"{endpoint}: HTTP {response.status_code}")
        if response.status_code == 404 and method == "GET":
            return None
        if response.status_code >= 400:
            raise PermanentError(f"{endpoint}: HTTP {response.status_code}: {response.text[:200]}")
        if not response.content:
            return {}
        return response.json()

    async def send_email(self, inbox_id, to_email, to_name, subject, body_html, metadata=None):
        metadata = metadata or {}
        headers = {}
        key = send_idempotency_key(metadata)
        if key:
            headers["Idempotency-Key"] = key
        return await self._send("POST", "send_email", headers=headers, json={
            "inbox_id": inbox_id,
            "to_email": to_email,
            "to_name": to_name,
            "subject": subject,
            "body_html": body_html,
            "metadata": metadata,
        })

    async def send_warmup(self, email_account_id, target_email):
        return await self._send("POST", "send_warmup", json={
            "email_account_id": email_account_id,
            "target_email": target_email,
        })

    async def verify_email(self, email):
        return await self._request("POST", "verify_email", json={"email": email})

    async def record_verification(self, lead_id, result):
        await self._request("PUT", "record_verification",
                            path_params={"lead_id": lead_id}, json=result)

    async def get_campaign(self, campaign_id):
        return await self._request("GET", "get_campaign",
                                   path_params={"campaign_id": campaign_id})

    async def get_pending_leads(self, campaign_id, limit):
        result = await self._request("GET", "pending_leads",
                                     path_params={"campaign_id": campaign_id},
                                     params={"limit": limit})
        if result is None:
            return []
        return result if isinstance(result, list) else result.get("data", result.get("results", []))

    async def mark_lead_queued(self, campaign_id, campaign_lead_id):
        await self._request("POST", "mark_lead_queued", path_params={
            "campaign_id": campaign_id, "campaign_lead_id": campaign_lead_id,
        })

    async def close(self):
        if self.client:
            await self.client.aclose()


_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class MockMailServiceConnector(MailServiceConnector):
    """
    In-memory collaborator for development and tests.
    Records everything it is asked to do.
    """

    def __init__(self, campaigns: dict[str, dict] = None, leads: dict[str, list[dict]] = None):
        self.campaigns: dict[str, dict] = dict(campaigns or {})
        self.leads: dict[str, list[dict]] = {k: list(v) for k, v in (leads or {}).items()}
        self.sent: list[dict[str, Any]] = []
        self.warmups: list[dict[str, Any]] = []
        self.verifications: dict[str, dict[str, Any]] = {}
        self.queued: list[tuple[str, str]] = []
        self.rejections: dict[str, tuple[int, str]] = {}    # to_email → (smtp_code, message)

    def reject(self, to_email: str, smtp_code: int, message: str = "rejected") -> None:
        self.rejections[to_email] = (smtp_code, message)

    async def send_email(self, inbox_id, to_email, to_name, subject, body_html, metadata=None):
        if to_email in self.rejections:
            code, message = self.rejections[to_email]
            return {"accepted": False, "smtp_code": code, "message": message}
        message_id = f"mock-{len(self.sent) + 1}"
        self.sent.append({
            "inbox_id": inbox_id, "to_email": to_email, "to_name": to_name,
            "subject": subject, "message_id": message_id, "metadata": metadata or {},
        })
        logger.info("mock_mail_sent", inbox_id=inbox_id, to_email=to_email)
        return {"accepted": True, "message_id": message_id}

    async def send_warmup(self, email_account_id, target_email):
        self.warmups.append({"email_account_id": email_account_id, "target_email": target_email})
        return {"accepted": True}

    async def verify_email(self, email):
        status = "valid" if _EMAIL_RE.match(email or "") else "invalid"
        return {"status": status, "email": email}

    async def record_verification(self, lead_id, result):
        self.verifications[lead_id] = result

    async def get_campaign(self, campaign_id):
        return self.campaigns.get(campaign_id)

    async def get_pending_leads(self, campaign_id, limit):
        queued = {lead_id for cid, lead_id in self.queued if cid == campaign_id}
        pending = [l for l in self.leads.get(campaign_id, [])
                   if l["campaign_lead_id"] not in queued]
        return pending[:limit]

    async def mark_lead_queued(self, campaign_id, campaign_lead_id):
        self.queued.append((campaign_id, campaign_lead_id))


def create_mail_connector(config: ConnectorConfig = None) -> MailServiceConnector:
    """Factory function to create the appropriate mail service connector."""
    config = config or get_settings().connector
    if config.type == "rest" and config.base_url:
        return RESTMailServiceConnector(config)
    logger.warning("using_mock_mail_connector", reason="no connector configured or base_url empty")
    return MockMailServiceConnector()
