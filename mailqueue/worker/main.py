"""
Worker process for executing jobs.

Workers lease jobs from the queue store, execute them, and report the
outcome back so the store can complete, retry or fail each job.
"""

import asyncio
import contextlib
import logging
import os
import signal
from datetime import timedelta

from mailqueue.config import get_settings
from mailqueue.constants import (
    OUTCOME_FAILED,
    OUTCOME_LOST,
    OUTCOME_RETRY,
    OUTCOME_SUCCEEDED,
    SPAN_ACQUIRE_LEASE,
    SPAN_EXECUTE_JOB,
    JobStatus,
)
from mailqueue.db import QueueStore, close_db, init_db
from mailqueue.errors import NotFound, StoreUnavailable
from mailqueue.observability.logging import bind_context, clear_context, setup_logging
from mailqueue.observability.metrics import get_metrics, setup_metrics
from mailqueue.observability.tracing import get_tracer, setup_tracing
from mailqueue.types.job import JobContext, JobRecord
from mailqueue.worker.handlers import execute_job
from mailqueue.worker.transport import MailTransport, create_mail_transport, set_mail_transport

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    """Hostname plus PID, unique per worker process."""
    return f"{os.uname().nodename}-{os.getpid()}"


class Worker:
    """
    Job worker that polls for and executes jobs.

    Features:
    - Atomic lease acquisition through the queue store
    - Heartbeat to extend leases for long-running jobs
    - Graceful stop: no new leases, the in-flight job finishes
    - Executor errors become store transitions, never worker crashes
    """

    def __init__(
        self,
        store: QueueStore,
        worker_id: str | None = None,
        poll_interval: float | None = None,
        lease_duration: timedelta | None = None,
        heartbeat_interval: float | None = None,
        stop_event: asyncio.Event | None = None,
    ):
        """
        Initialize the worker.

        Args:
            store: The queue store shared with other workers.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            poll_interval: Seconds between polls when the queue is empty.
            lease_duration: Lease length requested for each job.
            heartbeat_interval: Seconds between lease extensions; 0 disables.
            stop_event: Event shared by a pool to stop all its workers.
        """
        settings = get_settings()

        self.store = store
        self.worker_id = worker_id or default_worker_id()
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.worker_poll_interval_seconds
        )
        self.lease_duration = lease_duration or timedelta(
            seconds=settings.worker_lease_duration_seconds
        )
        self.heartbeat_interval = (
            heartbeat_interval
            if heartbeat_interval is not None
            else settings.worker_heartbeat_interval_seconds
        )

        self._stop = stop_event or asyncio.Event()
        self._metrics = get_metrics()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def run(self) -> None:
        """Run the lease/execute loop until stop() is called."""
        logger.info("Worker starting", extra={"worker_id": self.worker_id})

        while not self.stopping:
            try:
                processed = await self.run_once()
                if not processed:
                    await self._idle()

            except StoreUnavailable as e:
                logger.warning(
                    f"Queue store unavailable: {e}",
                    extra={"worker_id": self.worker_id},
                )
                await self._idle()

            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id},
                )
                await self._idle()

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    def stop(self) -> None:
        """Stop leasing new jobs. The in-flight job, if any, finishes first."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._stop.set()

    async def run_once(self) -> bool:
        """
        Lease and process at most one job.

        Returns:
            True if a job was processed, False if none was eligible.
        """
        with get_tracer().start_as_current_span(SPAN_ACQUIRE_LEASE) as span:
            span.set_attribute("worker_id", self.worker_id)
            record = await self.store.lease(self.worker_id, self.lease_duration)
        if record is None:
            return False

        await self._process(record)
        return True

    async def _idle(self) -> None:
        """Sleep for one poll interval, waking early on stop."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)

    async def _process(self, record: JobRecord) -> str:
        """
        Execute a leased job and report its outcome to the store.

        Returns:
            The outcome: succeeded, retry, failed or lease_lost.
        """
        context = JobContext.from_record(record)
        bind_context(worker_id=self.worker_id, job_id=str(record.id))

        try:
            logger.info(
                "Executing job",
                extra={
                    "kind": record.kind,
                    "attempt": context.attempt,
                    "remaining_attempts": context.remaining_attempts,
                },
            )

            heartbeat = self._start_heartbeat(record)
            try:
                with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                    span.set_attribute("job_id", str(record.id))
                    span.set_attribute("kind", record.kind)
                    span.set_attribute("attempt", context.attempt)

                    result = await execute_job(context)
            finally:
                if heartbeat is not None:
                    heartbeat.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await heartbeat

            outcome = await self._report(record, result.success, result.retryable, result.error)

            self._metrics.record_job_outcome(
                kind=record.kind,
                outcome=outcome,
                duration_seconds=(result.duration_ms or 0.0) / 1000,
            )
            return outcome
        finally:
            clear_context()

    async def _report(
        self,
        record: JobRecord,
        success: bool,
        retryable: bool,
        error: str | None,
    ) -> str:
        try:
            if success:
                await self.store.complete(record.id, self.worker_id)
                logger.info("Job succeeded", extra={"kind": record.kind})
                return OUTCOME_SUCCEEDED

            updated = await self.store.fail(
                record.id,
                self.worker_id,
                retry=retryable,
                error=error or "Unknown error",
            )
        except NotFound:
            # Lease expired and the job was reclaimed; another attempt will run.
            logger.warning(
                "Lost lease before reporting outcome",
                extra={"kind": record.kind, "success": success},
            )
            return OUTCOME_LOST

        if updated.status == JobStatus.PENDING:
            logger.warning(
                "Job failed, retry scheduled",
                extra={
                    "kind": record.kind,
                    "attempts": updated.attempts,
                    "available_at": updated.available_at.isoformat(),
                    "error": error,
                },
            )
            return OUTCOME_RETRY

        logger.error(
            "Job failed permanently",
            extra={"kind": record.kind, "attempts": updated.attempts, "error": error},
        )
        return OUTCOME_FAILED

    def _start_heartbeat(self, record: JobRecord) -> asyncio.Task | None:
        if self.heartbeat_interval <= 0:
            return None
        return asyncio.create_task(self._heartbeat_loop(record))

    async def _heartbeat_loop(self, record: JobRecord) -> None:
        """
        Periodically extend the lease on the running job.

        This prevents the job from being reclaimed while it is still
        being executed.
        """
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                extended = await self.store.extend_lease(
                    record.id, self.worker_id, self.lease_duration
                )
            except Exception as e:
                logger.warning(f"Heartbeat failed: {e}", extra={"job_id": str(record.id)})
                continue

            if not extended:
                logger.warning("Lease no longer held", extra={"job_id": str(record.id)})
                return

            logger.debug("Extended lease", extra={"job_id": str(record.id)})


class WorkerPool:
    """
    Runs several workers concurrently against one queue store.

    Workers do not coordinate with each other; the store's lease is the
    only serialization point.
    """

    def __init__(
        self,
        store: QueueStore,
        concurrency: int | None = None,
        worker_id: str | None = None,
        **worker_options,
    ):
        """
        Args:
            store: The shared queue store.
            concurrency: Number of workers. Defaults to the configured value.
            worker_id: Prefix for worker ids. Defaults to hostname + PID.
            **worker_options: Passed to each Worker.
        """
        settings = get_settings()
        self.concurrency = concurrency if concurrency is not None else settings.worker_concurrency
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        base_id = worker_id or settings.worker_id or default_worker_id()
        self._stop = asyncio.Event()
        self.workers = [
            Worker(
                store,
                worker_id=base_id if self.concurrency == 1 else f"{base_id}-{i}",
                stop_event=self._stop,
                **worker_options,
            )
            for i in range(self.concurrency)
        ]

    async def run(self) -> None:
        """Run all workers until stop() is called and in-flight jobs finish."""
        logger.info(f"Worker pool starting with {self.concurrency} workers")
        await asyncio.gather(*(worker.run() for worker in self.workers))
        logger.info("Worker pool stopped")

    def stop(self) -> None:
        """Ask every worker to finish its current job and exit."""
        logger.info("Worker pool stopping")
        self._stop.set()


async def prepare_worker(
    log_level: str | None = None,
    log_format: str | None = None,
) -> tuple[QueueStore, MailTransport]:
    """
    Set up logging, metrics, tracing, the mail transport and the database.

    log_level and log_format override the configured logging, as given
    on the command line.

    Raises:
        StoreUnavailable: If the database cannot be reached.
        ValueError: If the mail transport is misconfigured.
    """
    settings = get_settings()
    setup_logging(log_level=log_level, log_format=log_format)
    setup_metrics(settings.prometheus_port)
    setup_tracing()

    transport = create_mail_transport(settings)
    set_mail_transport(transport)

    try:
        session_factory = await init_db()
    except StoreUnavailable:
        await transport.aclose()
        raise
    return QueueStore(session_factory, settings), transport


async def run_async(
    concurrency: int | None = None,
    worker_id: str | None = None,
    log_level: str | None = None,
    log_format: str | None = None,
) -> None:
    """Run the worker pool until SIGINT/SIGTERM."""
    store, transport = await prepare_worker(log_level=log_level, log_format=log_format)

    try:
        pool = WorkerPool(store, concurrency=concurrency, worker_id=worker_id)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, pool.stop)

        await pool.run()
    finally:
        await transport.aclose()
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
