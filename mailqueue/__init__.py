"""
Scheduled Mail Queue

A scheduler that enqueues email jobs on a fixed cadence, a durable queue store with
atomic leases, and a worker pool that executes jobs with retry/backoff semantics.
"""

__version__ = "1.0.0"
