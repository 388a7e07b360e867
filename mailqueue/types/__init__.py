"""
Type definitions for the mail queue.
"""

from mailqueue.types.job import (
    EmailMessage,
    EmailPayload,
    JobContext,
    JobRecord,
    JobResult,
)

__all__ = [
    "JobRecord",
    "JobResult",
    "JobContext",
    "EmailPayload",
    "EmailMessage",
]
