"""
Database module.
Contains database connection, models, and the queue store.
"""

from mailqueue.db.connection import (
    close_db,
    create_engine_for_url,
    create_schema,
    create_session_factory,
    get_engine,
    init_db,
)
from mailqueue.db.models import Base, Job, ScheduleState
from mailqueue.db.store import QueueStore

__all__ = [
    "get_engine",
    "create_engine_for_url",
    "create_session_factory",
    "create_schema",
    "init_db",
    "close_db",
    "Job",
    "ScheduleState",
    "Base",
    "QueueStore",
]
