"""
Dispatcher — routes a claimed job to its handler and classifies the result.

Handlers are plain coroutines taking the validated payload dict:

    async def send_email(payload: dict) -> None:
        ...                                   # raise TransientError / PermanentError

    registry = HandlerRegistry(timeouts={"SendEmail": 30})
    registry.register(JobType.SEND_EMAIL, send_email)
    outcome = await Dispatcher(registry).dispatch(job)

The dispatcher never raises for handler failures; everything ends up in
an Outcome with an ErrorKind.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from job_queue.errors import ClassifiedError, ConfigurationError
from models.schemas import PAYLOAD_MODELS, ErrorKind, Job, JobType

logger = structlog.get_logger()

Handler = Callable[[dict[str, Any]], Awaitable[None]]

DEFAULT_TIMEOUTS: dict[JobType, float] = {
    JobType.SEND_EMAIL: 30.0,
    JobType.VERIFY_EMAIL: 30.0,
    JobType.WARMUP_EMAIL: 30.0,
    JobType.PROCESS_CAMPAIGN: 300.0,
}


@dataclass(frozen=True)
class RegisteredHandler:
    handler: Handler
    timeout: float


@dataclass
class Outcome:
    success: bool
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    duration: float = 0.0

    @classmethod
    def ok(cls, duration: float = 0.0) -> Outcome:
        return cls(success=True, duration=duration)

    @classmethod
    def failed(cls, kind: ErrorKind, error: str, duration: float = 0.0) -> Outcome:
        return cls(success=False, error_kind=kind, error=error, duration=duration)


class HandlerRegistry:
    """Registration table: JobType → (handler, timeout)."""

    def __init__(self, timeouts: dict[str, float] = None):
        self._handlers: dict[JobType, RegisteredHandler] = {}
        self._timeouts = dict(DEFAULT_TIMEOUTS)
        for name, seconds in (timeouts or {}).items():
            job_type = JobType.parse(name)
            if job_type is None:
                raise ConfigurationError(f"Timeout configured for unknown job type: {name}")
            self._timeouts[job_type] = float(seconds)

    def register(self, job_type: JobType, handler: Handler, timeout: float = None) -> None:
        job_type = JobType(job_type)
        self._handlers[job_type] = RegisteredHandler(
            handler=handler,
            timeout=float(timeout) if timeout is not None else self._timeouts[job_type],
        )
        logger.debug("handler_registered", job_type=job_type.value,
                     timeout=self._handlers[job_type].timeout)

    def get(self, job_type: JobType) -> Optional[RegisteredHandler]:
        return self._handlers.get(job_type)

    def missing(self) -> list[JobType]:
        """Job types with no handler. A worker must not start while any are missing."""
        return [t for t in JobType if t not in self._handlers]

    def __contains__(self, job_type) -> bool:
        return JobType.parse(job_type) in self._handlers


class Dispatcher:

    def __init__(self, registry: HandlerRegistry):
        self.registry = registry

    async def dispatch(self, job: Job) -> Outcome:
        started = time.monotonic()

        def elapsed() -> float:
            return time.monotonic() - started

        job_type = JobType.parse(job.job_type)
        if job_type is None:
            logger.error("unknown_job_type", job_id=job.id, job_type=job.job_type)
            return Outcome.failed(ErrorKind.CONFIGURATION,
                                  f"Unknown job type: {job.job_type}", elapsed())

        registered = self.registry.get(job_type)
        if registered is None:
            logger.error("handler_not_registered", job_id=job.id, job_type=job_type.value)
            return Outcome.failed(ErrorKind.CONFIGURATION,
                                  f"No handler registered for {job_type.value}", elapsed())

        try:
            payload = PAYLOAD_MODELS[job_type].model_validate(job.payload).model_dump()
        except ValidationError as e:
            logger.warning("invalid_job_payload", job_id=job.id,
                           job_type=job_type.value, errors=e.error_count())
            return Outcome.failed(ErrorKind.PERMANENT, f"Invalid payload: {e}", elapsed())

        try:
            await asyncio.wait_for(registered.handler(payload), timeout=registered.timeout)
        except asyncio.TimeoutError:
            logger.warning("handler_timeout", job_id=job.id,
                           job_type=job_type.value, timeout=registered.timeout)
            return Outcome.failed(ErrorKind.TRANSIENT,
                                  f"Handler timed out after {registered.timeout:g}s", elapsed())
        except ConfigurationError as e:
            logger.error("handler_configuration_error", job_id=job.id, error=str(e))
            return Outcome.failed(ErrorKind.CONFIGURATION, str(e), elapsed())
        except ClassifiedError as e:
            return Outcome.failed(ErrorKind(e.kind), str(e) or type(e).__name__, elapsed())
        except Exception as e:
            logger.error("handler_unclassified_error", job_id=job.id,
                         job_type=job_type.value, error=str(e), exc_info=True)
            return Outcome.failed(ErrorKind.TRANSIENT,
                                  f"{type(e).__name__}: {e}", elapsed())

        return Outcome.ok(elapsed())
