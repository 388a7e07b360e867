"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> LEASED (lease acquired)
    - LEASED -> SUCCEEDED (complete)
    - LEASED -> PENDING (retryable failure, or lease expired - crash recovery)
    - LEASED -> FAILED (permanent failure or max attempts reached)
    """

    PENDING = "pending"
    LEASED = "leased"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class MissedTickPolicy(StrEnum):
    """What the scheduler does with ticks that passed while it was not running."""

    SKIP = "skip"
    BACKFILL = "backfill"


class MailTransportKind(StrEnum):
    """Available mail transport implementations."""

    LOG = "log"
    HTTP = "http"


# Job kinds
JOB_KIND_EMAIL = "email"

# Metrics names
METRIC_QUEUE_DEPTH = "mailqueue_queue_depth"
METRIC_JOBS_ENQUEUED = "mailqueue_jobs_enqueued_total"
METRIC_JOBS_COMPLETED = "mailqueue_jobs_completed_total"
METRIC_JOB_DURATION = "mailqueue_job_duration_seconds"
METRIC_LEASE_ACQUIRED = "mailqueue_lease_acquired_total"
METRIC_LEASE_RECLAIMED = "mailqueue_lease_reclaimed_total"
METRIC_SCHEDULER_TICKS = "mailqueue_scheduler_ticks_total"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_ACQUIRE_LEASE = "acquire_lease"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_SEND_EMAIL = "send_email"

# Job outcomes reported by workers
OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_RETRY = "retry"
OUTCOME_FAILED = "failed"
OUTCOME_LOST = "lease_lost"
