"""
SQLAlchemy database models.
Defines the jobs table and the scheduler state table.
"""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from mailqueue.constants import JobStatus
from mailqueue.utils import utcnow


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of work in the queue.

    This is the authoritative source of truth for job state.
    All job lifecycle transitions are managed through this table.

    Key constraints:
    - id is unique and never reused
    - seq orders jobs by creation when available_at ties
    - lease_owner and lease_expires_at track job leasing for at-least-once delivery
    """

    __tablename__ = "jobs"

    # SQLite only autoincrements INTEGER PRIMARY KEY
    seq: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )

    id: Mapped[UUID] = mapped_column(
        Uuid,
        unique=True,
        nullable=False,
        default=uuid4,
    )

    kind: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )

    payload: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            native_enum=False,
            length=16,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=3,
    )

    # Scheduling
    available_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )

    # Lease management
    lease_owner: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
        index=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    # Error tracking
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    __table_args__ = (
        # Index for efficient queue polling
        Index("ix_jobs_queue_poll", "status", "available_at", "seq"),
    )

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, kind={self.kind}, "
            f"status={self.status}, attempts={self.attempts}/{self.max_attempts})"
        )


class ScheduleState(Base):
    """Last tick recorded by each named scheduler."""

    __tablename__ = "schedule_state"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    last_tick_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"ScheduleState(name={self.name}, last_tick_at={self.last_tick_at})"
