"""
Worker module.
Contains the worker pool, the job executor and the mail transports.
"""

from mailqueue.worker.handlers import execute_job, get_handler, list_handlers, register_handler
from mailqueue.worker.main import Worker, WorkerPool, run

__all__ = [
    "Worker",
    "WorkerPool",
    "run",
    "execute_job",
    "register_handler",
    "get_handler",
    "list_handlers",
]
