"""
Unit tests for the scheduler.
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from mailqueue.constants import JobStatus, MissedTickPolicy
from mailqueue.db import QueueStore
from mailqueue.errors import StoreUnavailable
from mailqueue.scheduler import Scheduler, compute_missed_ticks
from mailqueue.scheduler.main import default_email_payload

T0 = datetime(2024, 1, 1, 12, 0, 0)
MINUTE = timedelta(minutes=1)


async def wait_for(predicate, timeout: float = 5.0) -> None:
    """Poll an async predicate until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class FlakyStore:
    """Store stand-in whose first enqueues fail."""

    def __init__(self, failures: int):
        self.failures = failures
        self.enqueued: list[tuple[str, dict]] = []
        self.attempts = 0

    async def enqueue(self, kind, payload, delay=None, max_attempts=None):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise StoreUnavailable("database is down")
        self.enqueued.append((kind, payload))
        return self.attempts

    async def get_last_tick(self, name):
        return None

    async def record_tick(self, name, at):
        pass

    async def queue_depth(self):
        return len(self.enqueued)


class TestComputeMissedTicks:
    """Tests for compute_missed_ticks."""

    def test_nothing_missed_within_interval(self):
        missed, next_tick = compute_missed_ticks(T0, T0 + timedelta(seconds=10), MINUTE)
        assert missed == []
        assert next_tick == T0 + MINUTE

    def test_missed_ticks_during_downtime(self):
        missed, next_tick = compute_missed_ticks(T0, T0 + 3.5 * MINUTE, MINUTE)
        assert missed == [T0 + MINUTE, T0 + 2 * MINUTE, T0 + 3 * MINUTE]
        assert next_tick == T0 + 4 * MINUTE

    def test_tick_due_exactly_now(self):
        missed, next_tick = compute_missed_ticks(T0, T0 + 2 * MINUTE, MINUTE)
        assert missed == [T0 + MINUTE]
        assert next_tick == T0 + 2 * MINUTE

    def test_clock_behind_last_tick(self):
        missed, next_tick = compute_missed_ticks(T0, T0 - MINUTE, MINUTE)
        assert missed == []
        assert next_tick == T0 + MINUTE

    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            compute_missed_ticks(T0, T0, timedelta(0))


class TestSchedulerTick:
    """Tests for Scheduler.tick."""

    async def test_tick_enqueues_email_job(self, store: QueueStore, clock):
        scheduler = Scheduler(store, interval=60, name="report", clock=clock)

        job_id = await scheduler.tick()

        job = await store.get_job(job_id)
        assert job.kind == "email"
        assert job.status == JobStatus.PENDING
        assert job.payload["to"] == "admin@example.com"
        assert job.payload["scheduled_for"] == clock.now.isoformat()
        assert await store.get_last_tick("report") == clock.now

    async def test_tick_uses_payload_factory(self, store: QueueStore, clock):
        scheduler = Scheduler(
            store,
            interval=60,
            kind="email",
            payload_factory=lambda at: {"to": "ops@x.com", "subject": f"Report {at:%H:%M}"},
            clock=clock,
        )

        job_id = await scheduler.tick()

        job = await store.get_job(job_id)
        assert job.payload == {"to": "ops@x.com", "subject": "Report 12:00"}

    async def test_tick_failure_is_logged_not_raised(self):
        store = FlakyStore(failures=1)
        scheduler = Scheduler(store, interval=60)

        assert await scheduler.tick() is None
        assert await scheduler.tick() is not None
        assert len(store.enqueued) == 1

    @pytest.mark.parametrize("interval", [0, -5])
    def test_rejects_non_positive_interval(self, interval):
        with pytest.raises(ValueError):
            Scheduler(FlakyStore(failures=0), interval=interval)

    async def test_run_forever_rejects_non_positive_interval(self):
        scheduler = Scheduler(FlakyStore(failures=0), interval=60)
        with pytest.raises(ValueError):
            await scheduler.run_forever(interval=0)

    def test_default_payload_is_a_valid_email(self):
        payload = default_email_payload(T0)
        assert set(payload) == {"to", "subject", "title", "body", "scheduled_for"}


class TestSchedulerLoop:
    """Tests for Scheduler.run_forever."""

    async def test_runs_on_cadence(self, session_factory, test_settings):
        store = QueueStore(session_factory, test_settings)
        scheduler = Scheduler(store, interval=0.05, name="fast")

        task = asyncio.create_task(scheduler.run_forever())

        async def enough_jobs() -> bool:
            return await store.queue_depth() >= 3

        await wait_for(enough_jobs)
        scheduler.stop()
        await asyncio.wait_for(task, timeout=5)

    async def test_continues_after_enqueue_failure(self):
        store = FlakyStore(failures=2)
        scheduler = Scheduler(store, interval=0.02)

        task = asyncio.create_task(scheduler.run_forever())

        async def recovered() -> bool:
            return len(store.enqueued) >= 2

        await wait_for(recovered)
        scheduler.stop()
        await asyncio.wait_for(task, timeout=5)

        assert store.attempts >= 4

    async def test_stop_before_first_tick(self, store: QueueStore, clock):
        await store.record_tick("email", clock.now)
        scheduler = Scheduler(store, interval=3600, clock=clock)

        task = asyncio.create_task(scheduler.run_forever())
        await asyncio.sleep(0.05)
        scheduler.stop()
        await asyncio.wait_for(task, timeout=5)

        assert await store.queue_depth() == 0

    async def test_backfills_missed_ticks(self, store: QueueStore, clock):
        """Test that BACKFILL enqueues one job per missed tick on startup."""
        last_tick = clock.now - 3.5 * MINUTE
        await store.record_tick("email", last_tick)
        scheduler = Scheduler(
            store,
            interval=60,
            missed_ticks=MissedTickPolicy.BACKFILL,
            max_backfill=10,
            clock=clock,
        )

        task = asyncio.create_task(scheduler.run_forever())

        async def backfilled() -> bool:
            return await store.queue_depth() >= 3

        await wait_for(backfilled)
        await asyncio.sleep(0.05)
        scheduler.stop()
        await asyncio.wait_for(task, timeout=5)

        jobs = await store.list_jobs()
        scheduled = sorted(job.payload["scheduled_for"] for job in jobs)
        assert scheduled == [
            (last_tick + k * MINUTE).isoformat() for k in (1, 2, 3)
        ]
        assert await store.get_last_tick("email") == last_tick + 3 * MINUTE

    async def test_backfill_is_capped(self, store: QueueStore, clock):
        last_tick = clock.now - 10.5 * MINUTE
        await store.record_tick("email", last_tick)
        scheduler = Scheduler(
            store,
            interval=60,
            missed_ticks=MissedTickPolicy.BACKFILL,
            max_backfill=2,
            clock=clock,
        )

        task = asyncio.create_task(scheduler.run_forever())

        async def backfilled() -> bool:
            return await store.queue_depth() >= 2

        await wait_for(backfilled)
        await asyncio.sleep(0.05)
        scheduler.stop()
        await asyncio.wait_for(task, timeout=5)

        jobs = await store.list_jobs()
        scheduled = sorted(job.payload["scheduled_for"] for job in jobs)
        assert scheduled == [
            (last_tick + 9 * MINUTE).isoformat(),
            (last_tick + 10 * MINUTE).isoformat(),
        ]

    async def test_skip_policy_drops_missed_ticks(self, store: QueueStore, clock):
        await store.record_tick("email", clock.now - 3.5 * MINUTE)
        scheduler = Scheduler(
            store,
            interval=60,
            missed_ticks=MissedTickPolicy.SKIP,
            clock=clock,
        )

        task = asyncio.create_task(scheduler.run_forever())
        await asyncio.sleep(0.1)
        scheduler.stop()
        await asyncio.wait_for(task, timeout=5)

        assert await store.queue_depth() == 0
