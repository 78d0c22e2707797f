"""
Job engine exceptions.

Handlers must raise one of the ClassifiedError subclasses; anything else
reaching the dispatcher is logged and treated as transient.
"""
from __future__ import annotations


class JobQueueError(Exception):
    """Base exception for the job engine."""
    pass


class PersistenceError(JobQueueError):
    """Storage layer unavailable or constraint violated."""
    pass


class InvalidTransition(JobQueueError):
    """A job was asked to move between states the state machine forbids."""

    def __init__(self, job_id: str, current_status: str, target_status: str):
        self.job_id = job_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Job {job_id}: cannot transition from {current_status} to {target_status}"
        )


class JobNotFound(JobQueueError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class ConfigurationError(JobQueueError):
    """Unknown job type or missing handler. Never retried."""
    pass


class ClassifiedError(JobQueueError):
    """An error a handler has already classified as transient or permanent."""
    kind = "transient"


class TransientError(ClassifiedError):
    """Network timeout, provider throttling, SMTP 4xx. Retried."""
    kind = "transient"


class PermanentError(ClassifiedError):
    """Invalid recipient, SMTP 5xx hard bounce, malformed payload. Terminal."""
    kind = "permanent"
