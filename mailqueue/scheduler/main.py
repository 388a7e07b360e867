"""
Scheduler process for enqueuing jobs on a fixed cadence.

The scheduler only produces jobs. It never waits for their execution;
workers pick them up from the queue store independently.
"""

import asyncio
import contextlib
import logging
import math
import signal
from collections.abc import Callable
from datetime import datetime, timedelta
from uuid import UUID

from mailqueue.config import get_settings
from mailqueue.constants import JOB_KIND_EMAIL, SPAN_ENQUEUE_JOB, MissedTickPolicy
from mailqueue.db import QueueStore, close_db, init_db
from mailqueue.observability.logging import setup_logging
from mailqueue.observability.metrics import get_metrics, setup_metrics
from mailqueue.observability.tracing import get_tracer, setup_tracing
from mailqueue.utils import utcnow

logger = logging.getLogger(__name__)

# Builds the payload for the tick scheduled at the given time
PayloadFactory = Callable[[datetime], dict[str, str]]


def compute_missed_ticks(
    last_tick: datetime,
    now: datetime,
    interval: timedelta,
) -> tuple[list[datetime], datetime]:
    """
    Split the cadence anchored at last_tick into missed and upcoming ticks.

    Ticks fall at last_tick + k * interval for k >= 1.

    Returns:
        (missed, next_tick): the ticks strictly before now, oldest first,
        and the first tick at or after now.
    """
    if interval <= timedelta(0):
        raise ValueError("interval must be positive")

    elapsed = now - last_tick
    steps = max(1, math.ceil(elapsed / interval))
    missed = [last_tick + k * interval for k in range(1, steps)]
    return missed, last_tick + steps * interval


def default_email_payload(scheduled_for: datetime) -> dict[str, str]:
    """Email payload built from the scheduler settings."""
    settings = get_settings()
    return {
        "to": settings.scheduler_email_to,
        "subject": settings.scheduler_email_subject,
        "title": settings.scheduler_email_title,
        "body": settings.scheduler_email_body,
        "scheduled_for": scheduled_for.isoformat(),
    }


class Scheduler:
    """
    Enqueues a job every interval.

    Ticks are anchored to wall-clock time: after a tick at T the next one
    is due at T + interval, regardless of how long enqueuing took. Ticks
    missed while the process was down are dropped (SKIP) or enqueued on
    startup (BACKFILL), up to max_backfill of the most recent ones.
    """

    def __init__(
        self,
        store: QueueStore,
        interval: float | None = None,
        name: str | None = None,
        kind: str = JOB_KIND_EMAIL,
        payload_factory: PayloadFactory = default_email_payload,
        missed_ticks: MissedTickPolicy | None = None,
        max_backfill: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the scheduler.

        Args:
            store: The queue store to enqueue into.
            interval: Seconds between ticks.
            name: Key under which the last tick is recorded.
            kind: Kind of the enqueued jobs.
            payload_factory: Builds each job's payload from its tick time.
            missed_ticks: Policy for ticks missed during downtime.
            max_backfill: Upper bound on backfilled ticks.
            clock: Returns the current naive UTC time.

        Raises:
            ValueError: If the interval is not positive.
        """
        settings = get_settings()

        self.store = store
        self.interval = (
            interval if interval is not None else settings.scheduler_interval_seconds
        )
        if self.interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name or settings.scheduler_name
        self.kind = kind
        self.payload_factory = payload_factory
        self.missed_ticks = missed_ticks or settings.scheduler_missed_ticks
        self.max_backfill = (
            max_backfill if max_backfill is not None else settings.scheduler_max_backfill
        )

        self._clock = clock
        self._stop = asyncio.Event()
        self._metrics = get_metrics()

    async def tick(self, scheduled_for: datetime | None = None) -> UUID | None:
        """
        Enqueue one job.

        Failures are logged and swallowed so a single missed enqueue never
        stops the scheduler.

        Returns:
            The enqueued job id, or None if enqueuing failed.
        """
        scheduled_for = scheduled_for or self._clock()

        try:
            with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB) as span:
                span.set_attribute("scheduler", self.name)
                span.set_attribute("kind", self.kind)
                job_id = await self.store.enqueue(self.kind, self.payload_factory(scheduled_for))
        except Exception as e:
            logger.error(
                f"Scheduled enqueue failed: {e}",
                extra={"scheduler": self.name, "scheduled_for": scheduled_for.isoformat()},
            )
            self._metrics.record_scheduler_tick(self.name, "error")
            return None

        self._metrics.record_scheduler_tick(self.name, "enqueued")
        logger.info(
            "Scheduled job enqueued",
            extra={
                "scheduler": self.name,
                "job_id": str(job_id),
                "scheduled_for": scheduled_for.isoformat(),
            },
        )

        await self._record_tick(scheduled_for)
        return job_id

    async def run_forever(self, interval: float | None = None) -> None:
        """Tick on the configured cadence until stop() is called."""
        if interval is not None:
            if interval <= 0:
                raise ValueError("interval must be positive")
            self.interval = interval
        step = timedelta(seconds=self.interval)

        logger.info(
            f"Scheduler starting with interval {self.interval}s",
            extra={"scheduler": self.name, "missed_ticks": str(self.missed_ticks)},
        )

        next_tick = await self._catch_up(step)

        while not self._stop.is_set():
            await self._sleep_until(next_tick)
            if self._stop.is_set():
                break

            await self.tick(next_tick)

            next_tick += step
            now = self._clock()
            if next_tick < now:
                skipped, next_tick = compute_missed_ticks(next_tick - step, now, step)
                logger.warning(
                    f"Tick overran, skipping {len(skipped)} ticks",
                    extra={"scheduler": self.name},
                )

        logger.info("Scheduler stopped", extra={"scheduler": self.name})

    def stop(self) -> None:
        """Stop the scheduler after the current tick."""
        logger.info("Scheduler stopping", extra={"scheduler": self.name})
        self._stop.set()

    async def _catch_up(self, step: timedelta) -> datetime:
        """
        Apply the missed tick policy on startup.

        Returns:
            When the first regular tick is due.
        """
        now = self._clock()

        try:
            last_tick = await self.store.get_last_tick(self.name)
        except Exception as e:
            logger.warning(
                f"Could not read last tick: {e}",
                extra={"scheduler": self.name},
            )
            return now

        if last_tick is None:
            return now

        missed, next_tick = compute_missed_ticks(last_tick, now, step)
        if not missed:
            return next_tick

        if self.missed_ticks == MissedTickPolicy.BACKFILL:
            to_backfill = missed[-self.max_backfill:] if self.max_backfill > 0 else []
            logger.info(
                f"Backfilling {len(to_backfill)} of {len(missed)} missed ticks",
                extra={"scheduler": self.name},
            )
            for scheduled_for in to_backfill:
                await self.tick(scheduled_for)
        else:
            logger.info(
                f"Skipping {len(missed)} missed ticks",
                extra={"scheduler": self.name},
            )

        return next_tick

    async def _sleep_until(self, when: datetime) -> None:
        delay = (when - self._clock()).total_seconds()
        if delay <= 0:
            return
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop.wait(), timeout=delay)

    async def _record_tick(self, scheduled_for: datetime) -> None:
        try:
            await self.store.record_tick(self.name, scheduled_for)
        except Exception as e:
            logger.warning(
                f"Could not record tick: {e}",
                extra={"scheduler": self.name},
            )

        try:
            self._metrics.update_queue_depth(await self.store.queue_depth())
        except Exception as e:
            logger.debug(f"Could not read queue depth: {e}")


async def prepare_scheduler(
    log_level: str | None = None,
    log_format: str | None = None,
) -> QueueStore:
    """
    Set up logging, metrics, tracing and the database.

    log_level and log_format override the configured logging, as given
    on the command line.

    Raises:
        StoreUnavailable: If the database cannot be reached.
    """
    settings = get_settings()
    setup_logging(log_level=log_level, log_format=log_format)
    setup_metrics(settings.prometheus_port)
    setup_tracing()

    session_factory = await init_db()
    return QueueStore(session_factory, settings)


async def run_async(
    interval: float | None = None,
    missed_ticks: MissedTickPolicy | None = None,
    log_level: str | None = None,
    log_format: str | None = None,
) -> None:
    """Run the scheduler until SIGINT/SIGTERM."""
    store = await prepare_scheduler(log_level=log_level, log_format=log_format)

    try:
        scheduler = Scheduler(store, interval=interval, missed_ticks=missed_ticks)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, scheduler.stop)

        await scheduler.run_forever()
    finally:
        await close_db()


def run() -> None:
    """Run the scheduler."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
