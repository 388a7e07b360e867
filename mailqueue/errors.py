"""
Exception hierarchy for queue, store and execution errors.
"""

from uuid import UUID


class QueueError(Exception):
    """Base exception for mailqueue errors."""


class StoreUnavailable(QueueError):
    """The queue store could not be reached. Callers may retry."""


class NotFound(QueueError):
    """The job does not exist or is not leased by the caller."""

    def __init__(self, job_id: UUID, reason: str = "not found"):
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Job {job_id} {reason}")


class ExecutionError(QueueError):
    """Base class for errors raised while executing a job."""

    retryable: bool = False


class UnknownJobKind(ExecutionError):
    """No handler is registered for the job kind."""

    retryable = False

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"No handler registered for job kind: {kind}")


class TransientError(ExecutionError):
    """A temporary failure (network, rate limit); the job is retried."""

    retryable = True


class PermanentError(ExecutionError):
    """A failure that will not go away on retry, such as a malformed address."""

    retryable = False
