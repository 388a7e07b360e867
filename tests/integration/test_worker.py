"""
Integration tests for worker functionality.
"""

import asyncio
from datetime import timedelta

import pytest

from mailqueue.constants import (
    OUTCOME_LOST,
    OUTCOME_SUCCEEDED,
    JobStatus,
)
from mailqueue.db import QueueStore
from mailqueue.errors import TransientError
from mailqueue.types.job import JobContext
from mailqueue.worker import Worker, WorkerPool, register_handler

LEASE = timedelta(seconds=30)


def make_worker(store: QueueStore, worker_id: str = "worker-1", **options) -> Worker:
    options.setdefault("poll_interval", 0.01)
    options.setdefault("heartbeat_interval", 0)
    return Worker(store, worker_id=worker_id, lease_duration=LEASE, **options)


class TestWorkerIntegration:
    """Integration tests for worker job processing."""

    @pytest.mark.asyncio
    async def test_email_job_lifecycle_success(
        self,
        store: QueueStore,
        mail_transport,
        sample_email_payload,
    ):
        """Test complete job lifecycle: enqueue -> lease -> send -> succeeded."""
        job_id = await store.enqueue("email", sample_email_payload)
        worker = make_worker(store)

        assert await worker.run_once() is True

        job = await store.get_job(job_id)
        assert job.status == JobStatus.SUCCEEDED
        assert job.attempts == 0
        assert job.lease_owner is None

        assert len(mail_transport.sent) == 1
        message = mail_transport.sent[0]
        assert message.to == "a@x.com"
        assert message.subject == "S"
        assert message.text == "T\n\nB"

        assert await worker.run_once() is False

    @pytest.mark.asyncio
    async def test_transient_failures_exhaust_attempts(
        self,
        store: QueueStore,
        clock,
        mail_transport,
        sample_email_payload,
    ):
        """Test that a job failing on every attempt stops after max_attempts."""
        mail_transport.errors = [TransientError("smtp down") for _ in range(3)]
        job_id = await store.enqueue("email", sample_email_payload, max_attempts=3)
        worker = make_worker(store)

        for expected_attempts in (1, 2):
            assert await worker.run_once() is True
            job = await store.get_job(job_id)
            assert job.status == JobStatus.PENDING
            assert job.attempts == expected_attempts
            assert job.last_error == "smtp down"

            # Not eligible until the backoff has elapsed
            assert await worker.run_once() is False
            clock.advance(seconds=60)

        assert await worker.run_once() is True
        job = await store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 3
        assert job.completed_at == clock.now

        clock.advance(hours=1)
        assert await worker.run_once() is False
        assert mail_transport.sent == []

    @pytest.mark.asyncio
    async def test_retry_then_success(
        self,
        store: QueueStore,
        clock,
        mail_transport,
        sample_email_payload,
    ):
        mail_transport.errors = [TransientError("rate limited")]
        job_id = await store.enqueue("email", sample_email_payload)
        worker = make_worker(store)

        await worker.run_once()
        clock.advance(seconds=1)
        await worker.run_once()

        job = await store.get_job(job_id)
        assert job.status == JobStatus.SUCCEEDED
        assert job.attempts == 1
        assert len(mail_transport.sent) == 1

    @pytest.mark.asyncio
    async def test_invalid_payload_fails_without_retry(self, store: QueueStore, mail_transport):
        job_id = await store.enqueue("email", {"to": "not-an-address", "subject": "Hi"})
        worker = make_worker(store)

        await worker.run_once()

        job = await store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
        assert "to" in job.last_error
        assert mail_transport.sent == []

    @pytest.mark.asyncio
    async def test_unknown_kind_fails_without_retry(self, store: QueueStore):
        job_id = await store.enqueue("fax", {"number": "555-0100"})
        worker = make_worker(store)

        await worker.run_once()

        job = await store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
        assert "fax" in job.last_error

    @pytest.mark.asyncio
    async def test_crashed_worker_job_is_reclaimed(
        self,
        store: QueueStore,
        clock,
        mail_transport,
        sample_email_payload,
    ):
        """Test that a job leased by a worker that died runs again after the lease expires."""
        job_id = await store.enqueue("email", sample_email_payload)
        crashed = await store.lease("crashed-worker", LEASE)
        assert crashed.id == job_id

        worker = make_worker(store)
        assert await worker.run_once() is False

        clock.advance(seconds=31)
        assert await worker.run_once() is True

        job = await store.get_job(job_id)
        assert job.status == JobStatus.SUCCEEDED
        assert len(mail_transport.sent) == 1

    @pytest.mark.asyncio
    async def test_lease_lost_during_execution(self, store: QueueStore, clock):
        """Test that a worker whose lease was reclaimed does not overwrite the new owner."""
        stolen = {}

        @register_handler("test-lease-lost")
        async def handler(context: JobContext) -> None:
            clock.advance(seconds=31)
            stolen["record"] = await store.lease("worker-2", LEASE)

        job_id = await store.enqueue("test-lease-lost", {})
        worker = make_worker(store)
        record = await store.lease(worker.worker_id, LEASE)

        outcome = await worker._process(record)

        assert outcome == OUTCOME_LOST
        assert stolen["record"].id == job_id

        job = await store.get_job(job_id)
        assert job.status == JobStatus.LEASED
        assert job.lease_owner == "worker-2"

    @pytest.mark.asyncio
    async def test_heartbeat_keeps_lease(self, store: QueueStore, clock):
        """Test that heartbeats extend the lease of a long-running job."""
        competing = {}

        @register_handler("test-long-running")
        async def handler(context: JobContext) -> None:
            clock.advance(seconds=20)
            await asyncio.sleep(0.2)
            clock.advance(seconds=20)
            competing["record"] = await store.lease("worker-2", LEASE)

        job_id = await store.enqueue("test-long-running", {})
        worker = make_worker(store, heartbeat_interval=0.05)
        record = await store.lease(worker.worker_id, LEASE)

        outcome = await worker._process(record)

        assert outcome == OUTCOME_SUCCEEDED
        assert competing["record"] is None

        job = await store.get_job(job_id)
        assert job.status == JobStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_stop_before_run_returns(self, store: QueueStore):
        worker = make_worker(store)
        worker.stop()

        await asyncio.wait_for(worker.run(), timeout=1)

    @pytest.mark.asyncio
    async def test_run_stops_gracefully(self, store: QueueStore, mail_transport, sample_email_payload):
        job_id = await store.enqueue("email", sample_email_payload)
        worker = make_worker(store)

        task = asyncio.create_task(worker.run())
        for _ in range(500):
            job = await store.get_job(job_id)
            if job.status == JobStatus.SUCCEEDED:
                break
            await asyncio.sleep(0.01)

        worker.stop()
        await asyncio.wait_for(task, timeout=5)

        assert (await store.get_job(job_id)).status == JobStatus.SUCCEEDED


class TestWorkerPool:
    """Tests for running several workers against one store."""

    @pytest.mark.asyncio
    async def test_each_job_runs_exactly_once(self, session_factory, test_settings, mail_transport):
        store = QueueStore(session_factory, test_settings)
        recipients = [f"user{i}@example.com" for i in range(6)]
        for to in recipients:
            await store.enqueue("email", {"to": to, "subject": "Hello"})

        pool = WorkerPool(store, concurrency=3, worker_id="pool", poll_interval=0.01, heartbeat_interval=0)
        assert [w.worker_id for w in pool.workers] == ["pool-0", "pool-1", "pool-2"]

        task = asyncio.create_task(pool.run())
        for _ in range(1000):
            stats = await store.get_stats()
            if stats["succeeded"] == len(recipients):
                break
            await asyncio.sleep(0.01)

        pool.stop()
        await asyncio.wait_for(task, timeout=10)

        stats = await store.get_stats()
        assert stats["succeeded"] == len(recipients)
        assert sorted(m.to for m in mail_transport.sent) == sorted(recipients)

    @pytest.mark.asyncio
    async def test_rejects_zero_concurrency(self, store: QueueStore):
        with pytest.raises(ValueError):
            WorkerPool(store, concurrency=0)
