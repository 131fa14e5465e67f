"""
Tests for stale job recovery and claim fencing.
"""

from datetime import timedelta

from jobqueue.jobs.models import JobStatus


class TestSweepStaleJobs:
    """Test the liveness sweep."""

    async def test_stale_job_is_requeued_with_backoff(
        self, service, session, worker, fetch_job, clock
    ):
        created = await service.enqueue(session, "report", {})
        assert await worker._claim_job(created.id) is not None

        clock.advance(seconds=61)
        assert await worker.sweep_stale_jobs() == 1

        job = await fetch_job(created.id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 1
        assert job.error_code == "WORKER_TIMEOUT"
        assert job.last_error == "Job abandoned: no outcome within 60s"
        assert job.scheduled_at == clock.now + timedelta(seconds=300)
        assert job.locked_by is None

    async def test_job_within_visibility_timeout_is_left_alone(
        self, service, session, worker, fetch_job, clock
    ):
        created = await service.enqueue(session, "report", {})
        await worker._claim_job(created.id)

        clock.advance(seconds=59)
        assert await worker.sweep_stale_jobs() == 0

        job = await fetch_job(created.id)
        assert job.status == JobStatus.PROCESSING
        assert job.locked_by == "worker-1"

    async def test_stale_job_on_last_attempt_fails(
        self, service, session, worker, fetch_job, clock
    ):
        created = await service.enqueue(session, "report", {}, {"max_attempts": 1})
        await worker._claim_job(created.id)

        clock.advance(minutes=5)
        assert await worker.sweep_stale_jobs() == 1

        job = await fetch_job(created.id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
        assert job.error_code == "WORKER_TIMEOUT"
        assert job.completed_at == clock.now

    async def test_abandoned_attempts_count_toward_max(
        self, service, session, worker, fetch_job, clock
    ):
        created = await service.enqueue(session, "report", {}, {"max_attempts": 2})

        for _ in range(2):
            assert await worker._claim_job(created.id) is not None
            clock.advance(seconds=61)
            assert await worker.sweep_stale_jobs() == 1
            clock.advance(hours=1)

        job = await fetch_job(created.id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 2
        assert await worker._claim_job(created.id) is None

    async def test_pending_and_terminal_jobs_are_ignored(
        self, service, session, worker, registry, clock
    ):
        class Handler:
            async def handle(self, context, payload):
                return {"ok": True}

        registry.register("report", Handler())
        await service.enqueue(session, "report", {})
        done = await service.enqueue(session, "report", {})
        await worker._process_job(await worker._claim_job(done.id), Handler())

        clock.advance(hours=1)
        assert await worker.sweep_stale_jobs() == 0

    async def test_requeued_job_runs_again(
        self, service, session, worker, make_worker, registry, fetch_job, clock
    ):
        calls = []

        class Handler:
            async def handle(self, context, payload):
                calls.append(context.attempt)
                return {"attempt": context.attempt}

        registry.register("report", Handler())
        created = await service.enqueue(session, "report", {})
        await worker._claim_job(created.id)

        clock.advance(seconds=61)
        await make_worker("worker-2").sweep_stale_jobs()
        clock.advance(seconds=300)
        assert await make_worker("worker-3").run_once() == 1

        job = await fetch_job(created.id)
        assert job.status == JobStatus.COMPLETED
        assert job.attempts == 2
        assert job.result == {"attempt": 2}
        assert calls == [2]


class TestClaimFencing:
    """A worker whose claim was taken over cannot overwrite the newer outcome."""

    async def test_late_success_from_old_claim_is_discarded(
        self, service, session, worker, make_worker, fetch_job, clock
    ):
        created = await service.enqueue(session, "report", {})
        first_claim = await worker._claim_job(created.id)

        clock.advance(seconds=61)
        assert await worker.sweep_stale_jobs() == 1
        clock.advance(seconds=300)

        other = make_worker("worker-2")
        second_claim = await other._claim_job(created.id)
        assert second_claim.attempts == 2

        await worker._mark_completed(first_claim, {"stale": True})

        job = await fetch_job(created.id)
        assert job.status == JobStatus.PROCESSING
        assert job.attempts == 2
        assert job.locked_by == "worker-2"
        assert job.result is None

        await other._mark_completed(second_claim, {"fresh": True})

        job = await fetch_job(created.id)
        assert job.status == JobStatus.COMPLETED
        assert job.result == {"fresh": True}

    async def test_late_failure_after_sweep_is_discarded(
        self, service, session, worker, fetch_job, clock
    ):
        created = await service.enqueue(session, "report", {}, {"max_attempts": 1})
        claim = await worker._claim_job(created.id)

        clock.advance(seconds=61)
        await worker.sweep_stale_jobs()

        await worker._record_failure(
            claim, retryable=False, error_code="FATAL_ERROR", message="late"
        )

        job = await fetch_job(created.id)
        assert job.status == JobStatus.FAILED
        assert job.error_code == "WORKER_TIMEOUT"
        assert job.last_error != "late"
