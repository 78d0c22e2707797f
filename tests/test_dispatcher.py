"""
Tests — Dispatcher & HandlerRegistry

Every handler failure mode must come back as a classified Outcome.
"""
import asyncio

import pytest

from job_queue.dispatcher import Dispatcher, HandlerRegistry, Outcome
from job_queue.errors import ConfigurationError, PermanentError, TransientError
from models.schemas import ErrorKind, Job, JobType

from conftest import verify_payload


def _job(job_type="VerifyEmail", payload=None) -> Job:
    return Job(job_type=job_type, workspace_id="ws-1",
               payload=verify_payload() if payload is None else payload)


def _registry_with(handler, timeout=None) -> HandlerRegistry:
    reg = HandlerRegistry()
    reg.register(JobType.VERIFY_EMAIL, handler, timeout=timeout)
    return reg


class TestHandlerRegistry:

    def test_default_timeouts(self):
        async def h(payload):
            pass
        reg = HandlerRegistry()
        reg.register(JobType.SEND_EMAIL, h)
        reg.register(JobType.PROCESS_CAMPAIGN, h)
        assert reg.get(JobType.SEND_EMAIL).timeout == 30
        assert reg.get(JobType.PROCESS_CAMPAIGN).timeout == 300

    def test_configured_timeouts(self):
        async def h(payload):
            pass
        reg = HandlerRegistry(timeouts={"SendEmail": 12})
        reg.register(JobType.SEND_EMAIL, h)
        assert reg.get(JobType.SEND_EMAIL).timeout == 12

    def test_unknown_timeout_key_rejected(self):
        with pytest.raises(ConfigurationError):
            HandlerRegistry(timeouts={"SendFax": 10})

    def test_missing_lists_unregistered_types(self):
        async def h(payload):
            pass
        reg = HandlerRegistry()
        assert set(reg.missing()) == set(JobType)
        reg.register(JobType.SEND_EMAIL, h)
        assert JobType.SEND_EMAIL not in reg.missing()
        assert "SendEmail" in reg
        assert len(reg.missing()) == 3

    def test_full_registry_has_nothing_missing(self, registry):
        assert registry.missing() == []


class TestDispatch:

    @pytest.mark.asyncio
    async def test_success(self):
        seen = []

        async def handler(payload):
            seen.append(payload)

        outcome = await Dispatcher(_registry_with(handler)).dispatch(_job())
        assert outcome.success
        assert outcome.error_kind is None
        assert outcome.duration >= 0
        assert seen == [verify_payload()]

    @pytest.mark.asyncio
    async def test_permanent_error(self):
        async def handler(payload):
            raise PermanentError("550 5.1.1 user unknown")

        outcome = await Dispatcher(_registry_with(handler)).dispatch(_job())
        assert not outcome.success
        assert outcome.error_kind == ErrorKind.PERMANENT
        assert "user unknown" in outcome.error

    @pytest.mark.asyncio
    async def test_transient_error(self):
        async def handler(payload):
            raise TransientError("421 try again later")

        outcome = await Dispatcher(_registry_with(handler)).dispatch(_job())
        assert outcome.error_kind == ErrorKind.TRANSIENT

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        async def handler(payload):
            await asyncio.sleep(5)

        outcome = await Dispatcher(_registry_with(handler, timeout=0.05)).dispatch(_job())
        assert outcome.error_kind == ErrorKind.TRANSIENT
        assert "timed out" in outcome.error
        assert outcome.duration < 5

    @pytest.mark.asyncio
    async def test_unclassified_exception_is_transient(self):
        async def handler(payload):
            raise RuntimeError("socket reset")

        outcome = await Dispatcher(_registry_with(handler)).dispatch(_job())
        assert outcome.error_kind == ErrorKind.TRANSIENT
        assert "RuntimeError" in outcome.error

    @pytest.mark.asyncio
    async def test_handler_configuration_error(self):
        async def handler(payload):
            raise ConfigurationError("no SMTP credentials for inbox")

        outcome = await Dispatcher(_registry_with(handler)).dispatch(_job())
        assert outcome.error_kind == ErrorKind.CONFIGURATION

    @pytest.mark.asyncio
    async def test_unknown_job_type_is_configuration_error(self, registry):
        outcome = await Dispatcher(registry).dispatch(_job(job_type="SendFax"))
        assert outcome.error_kind == ErrorKind.CONFIGURATION
        assert "SendFax" in outcome.error

    @pytest.mark.asyncio
    async def test_missing_handler_is_configuration_error(self):
        async def handler(payload):
            pass
        outcome = await Dispatcher(_registry_with(handler)).dispatch(
            _job(job_type="ProcessCampaign", payload={"campaign_id": "c1"}))
        assert outcome.error_kind == ErrorKind.CONFIGURATION

    @pytest.mark.asyncio
    async def test_invalid_payload_is_permanent(self):
        called = []

        async def handler(payload):
            called.append(payload)

        outcome = await Dispatcher(_registry_with(handler)).dispatch(
            _job(payload={"lead_id": "lead-1"}))
        assert outcome.error_kind == ErrorKind.PERMANENT
        assert called == []

    @pytest.mark.asyncio
    async def test_payload_defaults_filled(self, registry):
        seen = []

        async def handler(payload):
            seen.append(payload)

        registry.register(JobType.PROCESS_CAMPAIGN, handler)
        await Dispatcher(registry).dispatch(
            _job(job_type="ProcessCampaign", payload={"campaign_id": "c1"}))
        assert seen[0] == {"campaign_id": "c1", "batch_size": None}


class TestOutcome:

    def test_constructors(self):
        assert Outcome.ok(1.5).success
        failed = Outcome.failed(ErrorKind.PERMANENT, "bad", 0.2)
        assert not failed.success
        assert failed.error == "bad"
