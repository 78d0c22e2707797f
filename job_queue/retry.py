"""
Retry policy — decides whether a failed attempt is retried and when.

Backoff: base_delay * 2^(attempts - 1), capped at max_delay, then ±jitter.
  attempt 1 →  30s   attempt 2 →  60s   attempt 3 → 120s   ...   cap → 1h

Also hosts with_persistence_retry(), the tenacity wrapper every engine
loop puts around store calls. That is infrastructure retry: it never
touches a job's attempt_count.
"""
from __future__ import annotations

import random
import structlog
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar, Union

from tenacity import (
    AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from job_queue.errors import PersistenceError
from models.schemas import ErrorKind

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RetryAfter:
    delay: float            # seconds


@dataclass(frozen=True)
class Terminal:
    reason: str


RetryDecision = Union[RetryAfter, Terminal]


class RetryPolicy:
    """
    Usage:
        policy = RetryPolicy(base_delay=30, max_delay=3600, jitter=0.2)
        decision = policy.decide(attempts_made, job.max_attempts, ErrorKind.TRANSIENT)
    """

    def __init__(
        self,
        base_delay: float = 30.0,
        max_delay: float = 3600.0,
        jitter: float = 0.2,
        rng: Optional[random.Random] = None,
    ):
        if base_delay <= 0 or max_delay < base_delay:
            raise ValueError("require 0 < base_delay <= max_delay")
        if not 0 <= jitter < 1:
            raise ValueError("jitter must be in [0, 1)")
        self.base = base_delay
        self.cap = max_delay
        self.jitter = jitter
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, retry_config) -> RetryPolicy:
        return cls(
            base_delay=retry_config.base_delay,
            max_delay=retry_config.max_delay,
            jitter=retry_config.jitter,
        )

    def base_delay(self, attempt_count: int) -> float:
        """Pre-jitter delay after the given number of attempts."""
        exponent = max(attempt_count - 1, 0)
        # 2**exponent overflows float range long before it matters
        if exponent >= 64:
            return self.cap
        return min(self.base * (2 ** exponent), self.cap)

    def decide(self, attempt_count: int, max_attempts: int, error_kind) -> RetryDecision:
        """
        attempt_count counts attempts made, including the one that just failed.
        """
        kind = ErrorKind(getattr(error_kind, "value", error_kind))

        if kind == ErrorKind.PERMANENT:
            return Terminal("permanent error")
        if kind == ErrorKind.CONFIGURATION:
            return Terminal("configuration error")
        if attempt_count >= max_attempts:
            return Terminal(f"max attempts reached ({attempt_count}/{max_attempts})")

        delay = self.base_delay(attempt_count)
        if self.jitter:
            delay *= self._rng.uniform(1 - self.jitter, 1 + self.jitter)
        return RetryAfter(delay=min(delay, self.cap))


# ──────────────────────────────────────────────────────────────
#  Persistence retry (tenacity)
# ──────────────────────────────────────────────────────────────

async def with_persistence_retry(
    call: Callable[[], Awaitable[T]],
    operation: str,
    attempts: int = 5,
    max_wait: float = 10.0,
) -> T:
    """
    Run a store call, retrying PersistenceError with exponential backoff.
    Any other exception (InvalidTransition, ValueError, ...) propagates at once.
    Re-raises the last PersistenceError once attempts are exhausted.
    """
    def _log_retry(retry_state) -> None:
        logger.warning("persistence_retry",
                       operation=operation,
                       attempt=retry_state.attempt_number,
                       error=str(retry_state.outcome.exception()))

    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max(attempts, 1)),
        wait=wait_exponential(multiplier=0.2, max=max_wait),
        retry=retry_if_exception_type(PersistenceError),
        before_sleep=_log_retry,
        reraise=True,
    ):
        with attempt:
            return await call()
