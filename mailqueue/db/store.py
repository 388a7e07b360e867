"""
Queue store for job persistence.
Implements the atomic operations that move jobs through their lifecycle.
"""

import logging
from collections.abc import AsyncGenerator, Callable, Mapping
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailqueue.config import Settings, get_settings
from mailqueue.constants import JobStatus
from mailqueue.db.backoff import compute_backoff
from mailqueue.db.models import Job, ScheduleState
from mailqueue.errors import NotFound, StoreUnavailable
from mailqueue.observability.metrics import get_metrics
from mailqueue.types.job import JobRecord
from mailqueue.utils import utcnow

logger = logging.getLogger(__name__)


class QueueStore:
    """
    Durable holding area for job records.

    Every public method runs in its own transaction and returns immutable
    JobRecord snapshots. Implements atomic operations for:
    - Enqueue with an optional delay
    - Lease acquisition via a conditional UPDATE (compare-and-swap on status)
    - Completion and failure with exponential backoff
    - Lease expiry handling
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the store.

        Args:
            session_factory: Factory producing sessions bound to the queue database.
            settings: Settings to read queue defaults from.
            clock: Returns the current naive UTC time. Injectable for tests.
        """
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._clock = clock
        self._metrics = get_metrics()

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession]:
        """Open a session, commit on success and translate driver errors."""
        try:
            async with self._session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except (OperationalError, InterfaceError, OSError) as e:
            raise StoreUnavailable(f"Queue store unavailable: {e}") from e

    async def enqueue(
        self,
        kind: str,
        payload: Mapping[str, str],
        delay: timedelta | None = None,
        max_attempts: int | None = None,
    ) -> UUID:
        """
        Insert a new pending job.

        Args:
            kind: Tag selecting the handler that executes the job.
            payload: String mapping handed to the handler.
            delay: Time before the job becomes eligible for leasing.
            max_attempts: Override for the configured maximum attempts.

        Returns:
            The id assigned to the new job.

        Raises:
            ValueError: On an empty kind, negative delay or max_attempts below 1.
            StoreUnavailable: If the database cannot be reached.
        """
        if not kind:
            raise ValueError("job kind must not be empty")
        if delay is not None and delay < timedelta(0):
            raise ValueError("delay must not be negative")

        attempts_limit = (
            max_attempts if max_attempts is not None else self._settings.queue_max_attempts
        )
        if attempts_limit < 1:
            raise ValueError("max_attempts must be at least 1")

        now = self._clock()
        job = Job(
            id=uuid4(),
            kind=kind,
            payload={str(k): str(v) for k, v in payload.items()},
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=attempts_limit,
            available_at=now + (delay or timedelta(0)),
            created_at=now,
            updated_at=now,
        )

        async with self._session() as session:
            session.add(job)

        self._metrics.record_job_enqueued(kind)
        logger.info(
            "Enqueued job",
            extra={"job_id": str(job.id), "kind": kind, "available_at": job.available_at.isoformat()},
        )
        return job.id

    async def lease(
        self,
        worker_id: str,
        lease_duration: timedelta | None = None,
    ) -> JobRecord | None:
        """
        Lease the next eligible job.

        Expired leases are reclaimed first. The oldest eligible job (by
        available_at, then creation order) is then claimed with a single
        UPDATE whose WHERE clause re-checks the pending status, so two
        concurrent callers can never both win the same row. Backends that
        support it also skip rows locked by a concurrent claim.

        Args:
            worker_id: The worker identifier recorded as lease owner.
            lease_duration: How long the lease lasts before it can be reclaimed.

        Returns:
            The leased job, or None if nothing is eligible.
        """
        if lease_duration is None:
            lease_duration = timedelta(seconds=self._settings.worker_lease_duration_seconds)

        now = self._clock()

        async with self._session() as session:
            await self._reclaim_expired(session, now)

            candidate = (
                select(Job.seq)
                .where(
                    Job.status == JobStatus.PENDING,
                    Job.available_at <= now,
                )
                .order_by(Job.available_at.asc(), Job.seq.asc())
                .limit(1)
                .with_for_update(skip_locked=True)
                .scalar_subquery()
            )

            stmt = (
                update(Job)
                .where(
                    Job.seq == candidate,
                    Job.status == JobStatus.PENDING,
                )
                .values(
                    status=JobStatus.LEASED,
                    lease_owner=worker_id,
                    lease_expires_at=now + lease_duration,
                    updated_at=now,
                )
                .returning(Job)
                .execution_options(synchronize_session=False)
            )

            result = await session.execute(stmt)
            job = result.scalar_one_or_none()
            record = JobRecord.model_validate(job) if job is not None else None

        if record is not None:
            self._metrics.record_lease_acquired(worker_id)
            logger.info(
                "Acquired lease",
                extra={"job_id": str(record.id), "worker_id": worker_id, "attempt": record.attempts + 1},
            )

        return record

    async def complete(self, job_id: UUID, worker_id: str) -> JobRecord:
        """
        Mark a leased job as succeeded.

        The row is kept as an archive with status SUCCEEDED and no lease.

        Raises:
            NotFound: If the job is unknown or not leased by this worker.
        """
        now = self._clock()

        async with self._session() as session:
            stmt = (
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status == JobStatus.LEASED,
                    Job.lease_owner == worker_id,
                )
                .values(
                    status=JobStatus.SUCCEEDED,
                    completed_at=now,
                    updated_at=now,
                    lease_owner=None,
                    lease_expires_at=None,
                )
                .returning(Job)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            job = result.scalar_one_or_none()

            if job is None:
                raise NotFound(job_id, f"is not leased by {worker_id}")

            record = JobRecord.model_validate(job)

        logger.info("Job completed successfully", extra={"job_id": str(job_id)})
        return record

    async def fail(
        self,
        job_id: UUID,
        worker_id: str,
        retry: bool,
        error: str | None = None,
    ) -> JobRecord:
        """
        Record a failed attempt. Either schedule a retry or fail terminally.

        attempts is incremented. With retry set and attempts still below
        max_attempts the job returns to PENDING, delayed by exponential
        backoff; otherwise it becomes FAILED and is never leased again.

        Args:
            job_id: The job UUID.
            worker_id: The worker identifier (must match lease owner).
            retry: Whether the failure is eligible for retry.
            error: Error message stored on the job.

        Returns:
            The job after the transition.

        Raises:
            NotFound: If the job is unknown or not leased by this worker.
        """
        now = self._clock()

        async with self._session() as session:
            claim = (
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status == JobStatus.LEASED,
                    Job.lease_owner == worker_id,
                )
                .values(
                    attempts=Job.attempts + 1,
                    last_error=error,
                    updated_at=now,
                    lease_owner=None,
                    lease_expires_at=None,
                )
                .returning(Job)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(claim)
            job = result.scalar_one_or_none()

            if job is None:
                raise NotFound(job_id, f"is not leased by {worker_id}")

            record = JobRecord.model_validate(job)

            if retry and record.is_retryable:
                delay = compute_backoff(
                    record.attempts,
                    base_seconds=self._settings.queue_backoff_base_seconds,
                    max_seconds=self._settings.queue_backoff_max_seconds,
                    jitter=self._settings.queue_backoff_jitter,
                )
                values = {"status": JobStatus.PENDING, "available_at": now + delay}
            else:
                values = {"status": JobStatus.FAILED, "completed_at": now}

            await session.execute(
                update(Job)
                .where(Job.seq == job.seq)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            record = record.model_copy(update=values)

        if record.status == JobStatus.PENDING:
            logger.info(
                "Job queued for retry",
                extra={
                    "job_id": str(job_id),
                    "attempts": record.attempts,
                    "available_at": record.available_at.isoformat(),
                },
            )
        else:
            logger.warning(
                f"Job failed permanently after {record.attempts} attempts",
                extra={"job_id": str(job_id), "error": error},
            )

        return record

    async def extend_lease(
        self,
        job_id: UUID,
        worker_id: str,
        lease_duration: timedelta | None = None,
    ) -> bool:
        """
        Extend the lease on a job (heartbeat).

        Returns:
            True if lease was extended, False if the worker no longer holds it.
        """
        if lease_duration is None:
            lease_duration = timedelta(seconds=self._settings.worker_lease_duration_seconds)

        now = self._clock()

        async with self._session() as session:
            stmt = (
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status == JobStatus.LEASED,
                    Job.lease_owner == worker_id,
                )
                .values(lease_expires_at=now + lease_duration, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            return result.rowcount > 0

    async def reclaim_expired_leases(self) -> int:
        """
        Return jobs whose lease expired to the queue.

        Handles worker crashes. lease() does this on every call, so a
        separate sweep only matters for keeping stats accurate.

        Returns:
            Number of reclaimed jobs.
        """
        async with self._session() as session:
            return await self._reclaim_expired(session, self._clock())

    async def _reclaim_expired(self, session: AsyncSession, now: datetime) -> int:
        stmt = (
            update(Job)
            .where(
                Job.status == JobStatus.LEASED,
                Job.lease_expires_at < now,
            )
            .values(
                status=JobStatus.PENDING,
                lease_owner=None,
                lease_expires_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        count = result.rowcount

        if count > 0:
            self._metrics.record_lease_reclaimed(count)
            logger.info(f"Reclaimed {count} jobs with expired leases")

        return count

    async def get_job(self, job_id: UUID) -> JobRecord | None:
        """Get a job by ID."""
        async with self._session() as session:
            result = await session.execute(select(Job).where(Job.id == job_id))
            job = result.scalar_one_or_none()
            return JobRecord.model_validate(job) if job is not None else None

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[JobRecord]:
        """
        List jobs, newest first, with optional status filtering.

        Args:
            status: Optional status filter.
            limit: Maximum number of jobs to return.
            offset: Offset for pagination.
        """
        stmt = select(Job).order_by(Job.seq.desc()).limit(limit).offset(offset)
        if status is not None:
            stmt = stmt.where(Job.status == status)

        async with self._session() as session:
            result = await session.execute(stmt)
            return [JobRecord.model_validate(job) for job in result.scalars().all()]

    async def get_stats(self) -> dict[str, int]:
        """
        Get job counts by status.

        Returns:
            Dictionary of status -> count, with every status present.
        """
        stmt = select(Job.status, func.count()).group_by(Job.status)

        async with self._session() as session:
            result = await session.execute(stmt)
            counts = {status.value: 0 for status in JobStatus}
            for status, count in result.all():
                counts[JobStatus(status).value] = count
            return counts

    async def queue_depth(self) -> int:
        """Get the number of pending jobs, eligible or delayed."""
        stmt = select(func.count()).select_from(Job).where(Job.status == JobStatus.PENDING)

        async with self._session() as session:
            result = await session.execute(stmt)
            return result.scalar() or 0

    async def retry_failed(self, job_id: UUID) -> JobRecord:
        """
        Put a terminally failed job back in the queue.

        The attempt counter is kept, so a job that exhausted its attempts
        gets exactly one more before failing again.

        Raises:
            NotFound: If the job is unknown or not in FAILED status.
        """
        now = self._clock()
        values = {
            "status": JobStatus.PENDING,
            "available_at": now,
            "updated_at": now,
            "completed_at": None,
            "last_error": None,
        }

        async with self._session() as session:
            stmt = (
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.FAILED)
                .values(**values)
                .returning(Job)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            job = result.scalar_one_or_none()

            if job is None:
                raise NotFound(job_id, "is not in failed status")

            record = JobRecord.model_validate(job)

        logger.info("Failed job requeued", extra={"job_id": str(job_id)})
        return record

    async def get_last_tick(self, name: str) -> datetime | None:
        """Get the last tick recorded by the named scheduler."""
        async with self._session() as session:
            state = await session.get(ScheduleState, name)
            return state.last_tick_at if state is not None else None

    async def record_tick(self, name: str, at: datetime) -> None:
        """Record the latest tick of the named scheduler."""
        async with self._session() as session:
            await session.merge(ScheduleState(name=name, last_tick_at=at))
