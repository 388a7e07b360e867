"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from mailqueue.constants import JobStatus

# Loose address check; delivery-level validation is the transport's concern.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class JobRecord(BaseModel):
    """
    Immutable snapshot of a job row.

    Returned by every queue store operation. The store remains the owner
    of the durable state; holding a record grants nothing beyond what
    the lease owner field says.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: UUID
    kind: str
    payload: dict[str, str]
    status: JobStatus
    attempts: int
    max_attempts: int
    available_at: datetime
    created_at: datetime
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None

    @property
    def is_retryable(self) -> bool:
        """Check if another attempt is allowed after a failure."""
        return self.attempts < self.max_attempts


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by the executor after running a handler.
    """

    success: bool
    error: str | None = None
    retryable: bool = True
    duration_ms: float | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and the payload for the handler.
    """

    job_id: UUID
    kind: str
    attempt: int
    max_attempts: int
    payload: dict[str, str]
    lease_owner: str
    lease_expires_at: datetime | None

    @classmethod
    def from_record(cls, record: JobRecord) -> "JobContext":
        """Build a context for the attempt about to run on a leased record."""
        return cls(
            job_id=record.id,
            kind=record.kind,
            attempt=record.attempts + 1,
            max_attempts=record.max_attempts,
            payload=dict(record.payload),
            lease_owner=record.lease_owner or "",
            lease_expires_at=record.lease_expires_at,
        )

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)


class EmailPayload(BaseModel):
    """Payload of an ``email`` job."""

    model_config = ConfigDict(extra="ignore")

    to: str = Field(pattern=EMAIL_PATTERN, max_length=320)
    subject: str = Field(min_length=1, max_length=998)
    title: str = ""
    body: str = ""

    def to_payload(self) -> dict[str, str]:
        """Serialize to the string mapping stored on the job."""
        return self.model_dump()


class EmailMessage(BaseModel):
    """A message ready to hand to a mail transport."""

    sender: str
    to: str
    subject: str
    text: str
