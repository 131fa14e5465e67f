"""
Tests for the producer-facing job service.
"""

from datetime import UTC, datetime, timedelta, timezone
from uuid import uuid4

import pytest

from jobqueue.core.exceptions import (
    InvalidStateError,
    JobQueueException,
    NotFoundError,
    ValidationError,
)
from jobqueue.jobs.models import CANCELLED_ERROR, JobStatus
from jobqueue.jobs.schemas import JobListFilters, JobOptions


class TestEnqueue:
    """Test enqueue and get."""

    async def test_enqueue_then_get_returns_pending_job(self, service, session, clock):
        """A freshly enqueued job is pending with no attempts and the exact payload."""
        payload = {"project": "alpha", "nested": {"items": [1, 2, 3]}, "flag": True}

        created = await service.enqueue(session, "send_email", payload)
        job = await service.get(session, created.id)

        assert created.status == JobStatus.PENDING
        assert created.type == "send_email"
        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.max_attempts == 3
        assert job.payload == payload
        assert job.scheduled_at == clock.now
        assert job.started_at is None
        assert job.completed_at is None
        assert job.last_error is None

    async def test_enqueue_applies_options(self, service, session, clock):
        created = await service.enqueue(
            session,
            "report",
            {},
            JobOptions(delay_seconds=120, max_attempts=5, priority=10, project_id="p1"),
        )
        job = await service.get(session, created.id)

        assert job.scheduled_at == clock.now + timedelta(seconds=120)
        assert job.max_attempts == 5
        assert job.priority == 10
        assert job.project_id == "p1"

    async def test_enqueue_accepts_options_dict(self, service, session):
        created = await service.enqueue(session, "report", {}, {"max_attempts": 7})
        job = await service.get(session, created.id)
        assert job.max_attempts == 7

    async def test_default_max_attempts_follows_settings(self, settings, clock, session):
        from jobqueue.jobs.service import JobService

        service = JobService(
            settings.model_copy(update={"job_default_max_attempts": 6}), clock=clock
        )
        created = await service.enqueue(session, "report", {})
        job = await service.get(session, created.id)
        assert job.max_attempts == 6

    async def test_payload_is_detached_from_caller(self, service, session):
        """Mutating the caller's dict after enqueue does not change the stored job."""
        payload = {"items": [1, 2]}
        created = await service.enqueue(session, "report", payload)
        payload["items"].append(3)

        job = await service.get(session, created.id)
        assert job.payload == {"items": [1, 2]}

    async def test_array_payload_round_trips(self, service, session):
        payload = [1, "two", {"three": [3.0, None, True]}]
        created = await service.enqueue(session, "report", payload)

        job = await service.get(session, created.id)
        assert job.payload == [1, "two", {"three": [3.0, None, True]}]

    async def test_unregistered_type_can_be_enqueued(self, service, session):
        created = await service.enqueue(session, "not_registered_anywhere", {})
        assert created.status == JobStatus.PENDING

    async def test_enqueue_hides_store_errors(self, service, session, monkeypatch):
        from sqlalchemy.exc import OperationalError

        async def broken_commit():
            raise OperationalError(
                "INSERT", {}, Exception("postgresql://admin:hunter2@db/jobs refused")
            )

        monkeypatch.setattr(session, "commit", broken_commit)

        with pytest.raises(JobQueueException) as exc_info:
            await service.enqueue(session, "report", {})

        assert exc_info.value.message == "Failed to enqueue job"
        assert "hunter2" not in str(exc_info.value)


class TestEnqueueValidation:
    """Test input validation on enqueue."""

    @pytest.mark.parametrize(
        "job_type",
        ["", "   ", "has space", "semi;colon", "x" * 101, "dot.type"],
    )
    async def test_invalid_type_rejected(self, service, session, job_type):
        with pytest.raises(ValidationError):
            await service.enqueue(session, job_type, {})

    async def test_type_at_max_length_accepted(self, service, session):
        created = await service.enqueue(session, "a" * 100, {})
        assert created.type == "a" * 100

    async def test_missing_payload_rejected(self, service, session):
        with pytest.raises(ValidationError, match="payload is required"):
            await service.enqueue(session, "report", None)

    @pytest.mark.parametrize("payload", ["text", 42, True])
    async def test_scalar_payload_rejected(self, service, session, payload):
        with pytest.raises(ValidationError, match="object or an array"):
            await service.enqueue(session, "report", payload)

    async def test_non_string_keys_rejected(self, service, session):
        with pytest.raises(ValidationError, match="keys must be strings") as exc_info:
            await service.enqueue(session, "report", {"ok": {1: "a"}})
        assert exc_info.value.details == {"path": "payload.ok", "key": "1"}

    async def test_tuple_values_rejected(self, service, session):
        with pytest.raises(ValidationError, match="JSON-serializable"):
            await service.enqueue(session, "report", {"point": (1, 2)})

    async def test_non_serializable_payload_rejected(self, service, session):
        with pytest.raises(ValidationError, match="JSON-serializable"):
            await service.enqueue(session, "report", {"when": datetime.now(UTC)})

    async def test_oversized_payload_rejected(self, service, session):
        with pytest.raises(ValidationError, match="1MB"):
            await service.enqueue(session, "report", {"blob": "x" * (1024 * 1024)})

    @pytest.mark.parametrize(
        "options",
        [
            {"max_attempts": 0},
            {"max_attempts": 101},
            {"delay_seconds": -1},
            {"delay_seconds": 86401},
            {"priority": -1},
            {"priority": 1001},
            {"unknown_option": True},
        ],
    )
    async def test_invalid_options_rejected(self, service, session, options):
        with pytest.raises(ValidationError, match="Invalid job options") as exc_info:
            await service.enqueue(session, "report", {}, options)
        assert exc_info.value.status_code == 400
        assert exc_info.value.details["errors"]

    async def test_rejected_enqueue_writes_nothing(self, service, session):
        with pytest.raises(ValidationError):
            await service.enqueue(session, "bad type", {})

        jobs = await service.list_jobs(session)
        assert jobs.total == 0


class TestSchedule:
    """Test scheduling at an explicit time."""

    async def test_schedule_sets_scheduled_at(self, service, session, clock):
        at = clock.now + timedelta(hours=2)
        created = await service.schedule(session, "report", {"a": 1}, at)
        job = await service.get(session, created.id)

        assert job.scheduled_at == at
        assert job.status == JobStatus.PENDING

    async def test_schedule_stores_offset_time_in_utc(self, service, session, clock):
        at = (clock.now + timedelta(minutes=10)).astimezone(timezone(timedelta(hours=2)))
        created = await service.schedule(session, "report", {}, at)
        job = await service.get(session, created.id)

        assert job.scheduled_at == datetime(2026, 1, 15, 12, 10, tzinfo=UTC)
        assert job.scheduled_at.utcoffset() == timedelta(0)

    async def test_schedule_now_is_allowed(self, service, session, clock):
        created = await service.schedule(session, "report", {}, clock.now)
        assert created.scheduled_at == clock.now

    async def test_schedule_in_past_rejected(self, service, session, clock):
        with pytest.raises(ValidationError, match="in the past"):
            await service.schedule(
                session, "report", {}, clock.now - timedelta(seconds=1)
            )

    async def test_schedule_too_far_ahead_rejected(self, service, session, clock):
        with pytest.raises(ValidationError, match="365 days"):
            await service.schedule(
                session, "report", {}, clock.now + timedelta(days=366)
            )

    async def test_schedule_naive_datetime_rejected(self, service, session):
        with pytest.raises(ValidationError, match="timezone-aware"):
            await service.schedule(session, "report", {}, datetime(2030, 1, 1))

    async def test_schedule_rejects_delay_option(self, service, session, clock):
        with pytest.raises(ValidationError, match="delay_seconds"):
            await service.schedule(
                session, "report", {}, clock.now, {"delay_seconds": 10}
            )


class TestGet:
    async def test_get_unknown_id_raises_not_found(self, service, session):
        with pytest.raises(NotFoundError) as exc_info:
            await service.get(session, uuid4())
        assert exc_info.value.status_code == 404

    async def test_get_malformed_id_raises_not_found(self, service, session):
        with pytest.raises(NotFoundError):
            await service.get(session, "not-a-uuid")

    async def test_get_accepts_string_id(self, service, session):
        created = await service.enqueue(session, "report", {})
        job = await service.get(session, str(created.id))
        assert job.id == created.id


class TestCancel:
    """Test cancellation of pending jobs."""

    async def test_cancel_pending_job(self, service, session, clock):
        created = await service.enqueue(session, "report", {})

        job = await service.cancel(session, created.id)

        assert job.status == JobStatus.FAILED
        assert job.last_error == CANCELLED_ERROR
        assert job.error_code == "CANCELLED"
        assert job.completed_at == clock.now
        assert job.attempts == 0

    async def test_cancelled_job_is_never_claimed(
        self, service, session, worker, registry
    ):
        calls = []

        class Handler:
            async def handle(self, context, payload):
                calls.append(context.job_id)

        registry.register("report", Handler())
        created = await service.enqueue(session, "report", {})
        await service.cancel(session, created.id)

        assert await worker.run_once() == 0
        assert calls == []

    async def test_cancel_twice_raises_invalid_state(self, service, session):
        created = await service.enqueue(session, "report", {})
        await service.cancel(session, created.id)

        with pytest.raises(InvalidStateError) as exc_info:
            await service.cancel(session, created.id)
        assert exc_info.value.status_code == 409
        assert exc_info.value.details["status"] == "failed"

    async def test_cancel_processing_job_raises_invalid_state(
        self, service, session, worker
    ):
        created = await service.enqueue(session, "report", {})
        assert await worker._claim_job(created.id) is not None

        with pytest.raises(InvalidStateError, match="processing"):
            await service.cancel(session, created.id)

    async def test_cancel_unknown_job_raises_not_found(self, service, session):
        with pytest.raises(NotFoundError):
            await service.cancel(session, uuid4())


class TestListAndStats:
    """Test read-side helpers."""

    async def test_list_jobs_filters_and_paginates(self, service, session, clock):
        for index in range(3):
            await service.enqueue(session, "report", {"i": index}, {"project_id": "p1"})
            clock.advance(seconds=1)
        await service.enqueue(session, "email", {}, {"project_id": "p2"})

        reports = await service.list_jobs(session, JobListFilters(type="report"))
        assert reports.total == 3
        # Newest first
        assert [job.payload["i"] for job in reports.jobs] == [2, 1, 0]

        page = await service.list_jobs(session, JobListFilters(limit=2, offset=0))
        assert page.total == 4
        assert len(page.jobs) == 2
        assert page.has_more is True

        p2 = await service.list_jobs(session, JobListFilters(project_id="p2"))
        assert [job.type for job in p2.jobs] == ["email"]

    async def test_list_jobs_by_status(self, service, session):
        first = await service.enqueue(session, "report", {})
        await service.enqueue(session, "report", {})
        await service.cancel(session, first.id)

        failed = await service.list_jobs(
            session, JobListFilters(status=[JobStatus.FAILED])
        )
        assert [job.id for job in failed.jobs] == [first.id]

    async def test_get_stats(self, service, session):
        first = await service.enqueue(session, "report", {}, {"project_id": "p1"})
        await service.enqueue(session, "report", {}, {"project_id": "p1"})
        await service.enqueue(session, "email", {}, {"project_id": "p2"})
        await service.cancel(session, first.id)

        stats = await service.get_stats(session)
        assert stats.total_jobs == 3
        assert stats.by_status == {"pending": 2, "failed": 1}
        assert stats.by_type == {"report": 2, "email": 1}
        assert stats.queue_depth == 2
        assert stats.failed_last_hour == 1

        scoped = await service.get_stats(session, project_id="p2")
        assert scoped.total_jobs == 1
        assert scoped.by_type == {"email": 1}


class TestCleanup:
    """Test retention cleanup."""

    async def test_cleanup_deletes_only_old_terminal_jobs(
        self, service, session, clock
    ):
        old = await service.enqueue(session, "report", {})
        await service.cancel(session, old.id)
        pending = await service.enqueue(session, "report", {})

        clock.advance(days=31)
        recent = await service.enqueue(session, "report", {})
        await service.cancel(session, recent.id)

        assert await service.cleanup_old_jobs(session, dry_run=True) == 1
        assert await service.cleanup_old_jobs(session) == 1

        with pytest.raises(NotFoundError):
            await service.get(session, old.id)
        assert (await service.get(session, pending.id)).status == JobStatus.PENDING
        assert (await service.get(session, recent.id)).status == JobStatus.FAILED

    async def test_cleanup_with_custom_window(self, service, session, clock):
        job = await service.enqueue(session, "report", {})
        await service.cancel(session, job.id)
        clock.advance(days=3)

        assert await service.cleanup_old_jobs(session, older_than_days=7) == 0
        assert await service.cleanup_old_jobs(session, older_than_days=2) == 1
