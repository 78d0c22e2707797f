"""
Tests — Scheduler Loop & Worker Pool

End-to-end scenarios through claim → rate check → dispatch → record,
run against both store backends with a fake clock.
"""
import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest

from config.settings import Settings
from database.store_memory import InMemoryJobStore
from job_queue.errors import PermanentError, PersistenceError, TransientError
from job_queue.reaper import StaleJobReaper
from job_queue.scheduler import WorkerPool
from models.schemas import JobEventType, JobStatus, JobType

from conftest import memory_stores, send_email_payload, verify_payload

UTC = timezone.utc


class TestRateLimitedSends:

    @pytest.mark.asyncio
    async def test_third_send_deferred_to_window_end(self, stores, registry, make_loop, clock):
        loop = make_loop(stores, registry)
        ids = [
            await stores.jobs.enqueue("SendEmail", send_email_payload(daily_limit=2), "ws-1",
                                      resource_key="inbox:inbox-1")
            for _ in range(3)
        ]

        assert await loop.run_once()
        assert await loop.run_once()
        assert await loop.run_once()

        first, second, third = [await stores.jobs.get_job(i) for i in ids]
        assert first.status == JobStatus.COMPLETED
        assert second.status == JobStatus.COMPLETED
        assert third.status == JobStatus.SCHEDULED
        assert third.attempt_count == 0
        assert third.next_retry_at == datetime(2026, 3, 3, 0, 0, tzinfo=UTC)

        deferred = await stores.metrics.list_events(job_id=third.id)
        assert [e.event_type for e in deferred] == [JobEventType.DEFERRED]
        assert await stores.metrics.get_usage("ws-1", "emails_sent", date(2026, 3, 2)) == 2

    @pytest.mark.asyncio
    async def test_deferred_send_runs_after_rollover(self, stores, registry, make_loop, clock):
        loop = make_loop(stores, registry)
        for _ in range(2):
            await stores.jobs.enqueue("SendEmail", send_email_payload(daily_limit=1), "ws-1",
                                      resource_key="inbox:inbox-1")
        await loop.run_once()
        await loop.run_once()
        assert not await loop.run_once()

        clock.now = datetime(2026, 3, 3, 0, 0, 1, tzinfo=UTC)
        assert await loop.run_once()
        counts = await stores.jobs.count_by_status()
        assert counts.get("completed") == 2

    @pytest.mark.asyncio
    async def test_jobs_without_resource_key_skip_rate_limit(self, stores, registry, make_loop):
        loop = make_loop(stores, registry)
        for _ in range(3):
            await stores.jobs.enqueue("VerifyEmail", verify_payload(daily_limit=0), "ws-1")
        for _ in range(3):
            assert await loop.run_once()
        counts = await stores.jobs.count_by_status()
        assert counts.get("completed") == 3


class TestFailureHandling:

    @pytest.mark.asyncio
    async def test_permanent_failure_is_terminal(self, stores, registry, make_loop):
        async def bounce(payload):
            raise PermanentError("550 5.1.1 mailbox does not exist")

        registry.register(JobType.SEND_EMAIL, bounce)
        loop = make_loop(stores, registry)
        job_id = await stores.jobs.enqueue("SendEmail", send_email_payload(), "ws-1",
                                           resource_key="inbox:inbox-1", max_attempts=5)
        await loop.run_once()

        job = await stores.jobs.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempt_count == 1
        assert "mailbox does not exist" in job.last_error
        assert not await loop.run_once()

    @pytest.mark.asyncio
    async def test_transient_failures_back_off_then_fail(self, stores, registry, make_loop, clock):
        async def flaky(payload):
            raise TransientError("421 service not available")

        registry.register(JobType.VERIFY_EMAIL, flaky)
        loop = make_loop(stores, registry)
        job_id = await stores.jobs.enqueue("VerifyEmail", verify_payload(), "ws-1", max_attempts=3)

        await loop.run_once()
        job = await stores.jobs.get_job(job_id)
        assert job.status == JobStatus.SCHEDULED
        assert job.attempt_count == 1
        first_delay = job.next_retry_at - clock()
        assert first_delay == timedelta(seconds=30)

        # not due yet
        assert not await loop.run_once()

        clock.advance(31)
        await loop.run_once()
        job = await stores.jobs.get_job(job_id)
        assert job.status == JobStatus.SCHEDULED
        assert job.attempt_count == 2
        assert job.next_retry_at - clock() == timedelta(seconds=60)
        assert job.next_retry_at - clock() > first_delay

        clock.advance(61)
        await loop.run_once()
        job = await stores.jobs.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempt_count == 3

        events = await stores.metrics.list_events(job_id=job_id)
        assert [e.event_type for e in events].count(JobEventType.RESCHEDULED) == 2
        assert [e.event_type for e in events].count(JobEventType.FAILED) == 1

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, stores, registry, make_loop, clock):
        calls = []

        async def recovers(payload):
            calls.append(payload)
            if len(calls) == 1:
                raise TransientError("timeout talking to verifier")

        registry.register(JobType.VERIFY_EMAIL, recovers)
        loop = make_loop(stores, registry)
        job_id = await stores.jobs.enqueue("VerifyEmail", verify_payload(), "ws-1")
        await loop.run_once()
        clock.advance(31)
        await loop.run_once()

        job = await stores.jobs.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.attempt_count == 1
        assert job.completed_at is not None

    @pytest.mark.asyncio
    async def test_terminal_campaign_failure_triggers_health_check(self, stores, registry,
                                                                  make_loop):
        calls = []

        async def hook(workspace_id, campaign_id):
            calls.append((workspace_id, campaign_id))

        async def bounce(payload):
            raise PermanentError("550 rejected")

        registry.register(JobType.SEND_EMAIL, bounce)
        loop = make_loop(stores, registry, auto_pause_hook=hook)
        await stores.jobs.enqueue("SendEmail", send_email_payload(), "ws-1")
        await loop.run_once()
        assert calls == [("ws-1", "camp-1")]

    @pytest.mark.asyncio
    async def test_type_filter(self, stores, registry, make_loop):
        loop = make_loop(stores, registry, eligible_types=["SendEmail"])
        await stores.jobs.enqueue("VerifyEmail", verify_payload(), "ws-1")
        assert not await loop.run_once()


class _FailingCompleteStore(InMemoryJobStore):
    """Store whose mark_completed is always unavailable."""

    def __init__(self):
        super().__init__()
        self.complete_calls = 0

    async def mark_completed(self, job_id, now=None):
        self.complete_calls += 1
        raise PersistenceError("connection refused")


class TestPersistenceFailure:

    @pytest.mark.asyncio
    async def test_job_left_processing_for_reaper(self, registry, make_loop, clock, policy):
        stores = memory_stores()
        stores.jobs = _FailingCompleteStore()
        loop = make_loop(stores, registry, persist_retry_attempts=3)
        job_id = await stores.jobs.enqueue("VerifyEmail", verify_payload(), "ws-1")

        assert await loop.run_once()
        assert stores.jobs.complete_calls == 3
        job = await stores.jobs.get_job(job_id)
        assert job.status == JobStatus.PROCESSING
        assert loop.in_flight == set()

        clock.advance(601)
        reaper = StaleJobReaper(stores.jobs, policy, stale_threshold=600,
                                persist_retry_max_wait=0, clock=clock)
        assert await reaper.sweep() == 1
        job = await stores.jobs.get_job(job_id)
        assert job.status == JobStatus.SCHEDULED
        assert job.attempt_count == 1


class TestConcurrentWorkers:

    @pytest.mark.asyncio
    async def test_one_job_two_workers(self, stores, make_loop):
        from job_queue.dispatcher import HandlerRegistry
        calls = []

        async def slow(payload):
            calls.append(payload)
            await asyncio.sleep(0.05)

        reg = HandlerRegistry()
        for job_type in JobType:
            reg.register(job_type, slow)

        loop_a = make_loop(stores, reg, worker_id="test:a")
        loop_b = make_loop(stores, reg, worker_id="test:b")
        job_id = await stores.jobs.enqueue("VerifyEmail", verify_payload(), "ws-1")

        results = await asyncio.gather(loop_a.run_once(), loop_b.run_once())
        assert sorted(results) == [False, True]
        assert len(calls) == 1
        job = await stores.jobs.get_job(job_id)
        assert job.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_many_jobs_many_workers_each_once(self, stores, make_loop):
        from job_queue.dispatcher import HandlerRegistry
        seen = []

        async def record(payload):
            seen.append(payload["lead_id"])
            await asyncio.sleep(0)

        reg = HandlerRegistry()
        for job_type in JobType:
            reg.register(job_type, record)

        loops = [make_loop(stores, reg, worker_id=f"test:{i}") for i in range(4)]
        for i in range(12):
            await stores.jobs.enqueue("VerifyEmail", verify_payload(lead_id=f"lead-{i}"), "ws-1")

        async def drain(loop):
            while await loop.run_once():
                pass

        await asyncio.gather(*(drain(loop) for loop in loops))
        assert sorted(seen) == sorted(f"lead-{i}" for i in range(12))
        counts = await stores.jobs.count_by_status()
        assert counts.get("completed") == 12


class TestLoopShutdown:

    @pytest.mark.asyncio
    async def test_stop_cancels_a_job_past_the_timeout(self, make_loop):
        from job_queue.dispatcher import HandlerRegistry
        started = asyncio.Event()
        cancelled = []

        async def hangs(payload):
            started.set()
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        reg = HandlerRegistry()
        for job_type in JobType:
            reg.register(job_type, hangs)

        stores = memory_stores()
        loop = make_loop(stores, reg)
        job_id = await stores.jobs.enqueue("VerifyEmail", verify_payload(), "ws-1")
        task = await loop.start_background()
        await asyncio.wait_for(started.wait(), timeout=2)

        await asyncio.wait_for(loop.stop(timeout=0.05), timeout=2)
        assert task.done()
        assert cancelled == [True]
        assert loop._task is None
        # left in processing for the reaper
        assert (await stores.jobs.get_job(job_id)).status == JobStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_stop_waits_for_a_quick_job(self, make_loop):
        from job_queue.dispatcher import HandlerRegistry
        started = asyncio.Event()

        async def quick(payload):
            started.set()
            await asyncio.sleep(0.05)

        reg = HandlerRegistry()
        for job_type in JobType:
            reg.register(job_type, quick)

        stores = memory_stores()
        loop = make_loop(stores, reg)
        job_id = await stores.jobs.enqueue("VerifyEmail", verify_payload(), "ws-1")
        await loop.start_background()
        await asyncio.wait_for(started.wait(), timeout=2)

        await loop.stop(timeout=2)
        assert (await stores.jobs.get_job(job_id)).status == JobStatus.COMPLETED


class TestWorkerPool:

    @pytest.mark.asyncio
    async def test_pool_processes_and_stops(self, registry):
        settings = Settings()
        settings.worker.worker_count = 2
        settings.worker.poll_interval = 0.01
        stores = memory_stores()

        pool = WorkerPool.from_settings(settings, stores, registry, worker_prefix="pool")
        assert [loop.worker_id for loop in pool.loops] == ["pool:0", "pool:1"]
        assert pool.reaper is not None

        await pool.start()
        try:
            job_id = await stores.jobs.enqueue("VerifyEmail", verify_payload(), "ws-1")
            for _ in range(200):
                job = await stores.jobs.get_job(job_id)
                if job.status == JobStatus.COMPLETED:
                    break
                await asyncio.sleep(0.01)
            assert job.status == JobStatus.COMPLETED
        finally:
            await pool.stop(timeout=2)

        assert all(loop._task is None for loop in pool.loops)

    @pytest.mark.asyncio
    async def test_loops_share_in_flight_with_reaper(self, registry):
        pool = WorkerPool.from_settings(Settings(), memory_stores(), registry, worker_prefix="p")
        assert len(pool.loops) == 4
        assert all(loop.in_flight is pool.in_flight for loop in pool.loops)
        assert pool.reaper.in_flight is pool.in_flight
