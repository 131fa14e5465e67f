"""
Job service for enqueueing, scheduling and inspecting background jobs.
"""

import json
import re
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

import pydantic
from sqlalchemy import and_, delete, desc, func, select, true, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import Settings
from jobqueue.core.clock import Clock, utcnow
from jobqueue.core.exceptions import (
    InvalidStateError,
    JobQueueException,
    NotFoundError,
    ValidationError,
)
from jobqueue.core.registries import JobPayload
from jobqueue.jobs.models import CANCELLED_ERROR, Job, JobErrorCode, JobStatus
from jobqueue.jobs.schemas import (
    MAX_PAYLOAD_BYTES,
    MAX_SCHEDULE_AHEAD_DAYS,
    MAX_TYPE_LENGTH,
    JobEnqueueResponse,
    JobListFilters,
    JobListResponse,
    JobOptions,
    JobResponse,
    JobStatsResponse,
)

logger = get_logger(__name__)

JOB_TYPE_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
JSON_SCALAR_TYPES = (str, int, float, bool, type(None))


class JobService:
    """Producer-facing queue API: enqueue, schedule, get, cancel."""

    def __init__(self, settings: Settings, clock: Clock = utcnow):
        self.settings = settings
        self.clock = clock

    async def enqueue(
        self,
        session: AsyncSession,
        job_type: str,
        payload: JobPayload,
        options: JobOptions | dict[str, Any] | None = None,
    ) -> JobEnqueueResponse:
        """
        Enqueue a job that becomes claimable after ``options.delay_seconds``.

        Args:
            session: Database session
            job_type: Handler selector; need not be registered yet
            payload: JSON object or array handed unchanged to the handler
            options: Delay, attempt ceiling, priority and owning project

        Returns:
            Identity of the created job

        Raises:
            ValidationError: invalid type, payload or options
        """
        opts = self._resolve_options(options)
        self._validate_type(job_type)
        stored_payload = self._validate_payload(payload)

        scheduled_at = self.clock() + timedelta(seconds=opts.delay_seconds)
        return await self._insert(session, job_type, stored_payload, scheduled_at, opts)

    async def schedule(
        self,
        session: AsyncSession,
        job_type: str,
        payload: JobPayload,
        at: datetime,
        options: JobOptions | dict[str, Any] | None = None,
    ) -> JobEnqueueResponse:
        """
        Enqueue a job that becomes claimable at ``at``.

        Timestamps in the past are rejected rather than clamped to now. The
        time is stored in UTC whatever offset it was given in.
        """
        opts = self._resolve_options(options)
        if opts.delay_seconds:
            raise ValidationError(
                "delay_seconds cannot be combined with an explicit schedule time",
                details={"delay_seconds": opts.delay_seconds},
            )
        self._validate_type(job_type)
        stored_payload = self._validate_payload(payload)
        self._validate_schedule_time(at)

        return await self._insert(
            session, job_type, stored_payload, at.astimezone(UTC), opts
        )

    async def get(self, session: AsyncSession, job_id: UUID | str) -> JobResponse:
        """Return the current state of a job."""
        job = await self._load(session, job_id)
        return JobResponse.model_validate(job)

    async def cancel(self, session: AsyncSession, job_id: UUID | str) -> JobResponse:
        """
        Cancel a job that has not been claimed yet.

        The job ends ``failed`` with ``last_error = "CANCELLED"``. Jobs that
        are processing or already terminal cannot be cancelled.
        """
        job_uuid = self._parse_id(job_id)
        now = self.clock()

        result = await session.execute(
            update(Job)
            .where(and_(Job.id == job_uuid, Job.status == JobStatus.PENDING.value))
            .values(
                status=JobStatus.FAILED.value,
                last_error=CANCELLED_ERROR,
                error_code=JobErrorCode.CANCELLED.value,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        cancelled = result.rowcount == 1
        await session.commit()

        if not cancelled:
            job = await self._load(session, job_uuid)
            raise InvalidStateError(
                f"Cannot cancel job in status '{job.status}'",
                details={"job_id": str(job_uuid), "status": job.status},
            )

        logger.info("Job cancelled", job_id=str(job_uuid))
        return await self.get(session, job_uuid)

    async def list_jobs(
        self, session: AsyncSession, filters: JobListFilters | None = None
    ) -> JobListResponse:
        """List jobs with filtering and pagination, newest first."""
        filters = filters or JobListFilters()

        base_query = select(Job)
        if filters.status:
            base_query = base_query.where(
                Job.status.in_([s.value for s in filters.status])
            )
        if filters.type:
            base_query = base_query.where(Job.type == filters.type)
        if filters.project_id:
            base_query = base_query.where(Job.project_id == filters.project_id)

        # Get total count
        count_query = select(func.count()).select_from(base_query.subquery())
        total = (await session.execute(count_query)).scalar() or 0

        jobs_query = (
            base_query.order_by(desc(Job.created_at))
            .offset(filters.offset)
            .limit(filters.limit)
            .execution_options(populate_existing=True)
        )
        jobs = (await session.execute(jobs_query)).scalars().all()

        return JobListResponse(
            jobs=[JobResponse.model_validate(job) for job in jobs],
            total=total,
            limit=filters.limit,
            offset=filters.offset,
        )

    async def get_stats(
        self, session: AsyncSession, project_id: str | None = None
    ) -> JobStatsResponse:
        """Get job statistics, optionally scoped to a project."""
        base_filter = Job.project_id == project_id if project_id else true()

        total_jobs = (
            await session.execute(select(func.count(Job.id)).where(base_filter))
        ).scalar() or 0

        # Jobs by status
        status_result = await session.execute(
            select(Job.status, func.count(Job.id))
            .where(base_filter)
            .group_by(Job.status)
        )
        by_status = {status: count for status, count in status_result.all()}

        # Jobs by type
        type_result = await session.execute(
            select(Job.type, func.count(Job.id)).where(base_filter).group_by(Job.type)
        )
        by_type = {job_type: count for job_type, count in type_result.all()}

        queue_depth = by_status.get(JobStatus.PENDING.value, 0) + by_status.get(
            JobStatus.PROCESSING.value, 0
        )

        one_hour_ago = self.clock() - timedelta(hours=1)
        failed_last_hour = (
            await session.execute(
                select(func.count(Job.id)).where(
                    and_(
                        base_filter,
                        Job.status == JobStatus.FAILED.value,
                        Job.completed_at >= one_hour_ago,
                    )
                )
            )
        ).scalar() or 0

        return JobStatsResponse(
            total_jobs=total_jobs,
            by_status=by_status,
            by_type=by_type,
            queue_depth=queue_depth,
            failed_last_hour=failed_last_hour,
        )

    async def cleanup_old_jobs(
        self,
        session: AsyncSession,
        older_than_days: int | None = None,
        dry_run: bool = False,
    ) -> int:
        """Delete terminal jobs that finished before the retention window."""
        retention_days = older_than_days or self.settings.job_cleanup_after_days
        if retention_days < 1:
            raise ValidationError(
                "older_than_days must be at least 1",
                details={"older_than_days": retention_days},
            )
        cutoff = self.clock() - timedelta(days=retention_days)
        condition = and_(
            Job.status.in_([s.value for s in JobStatus.terminal()]),
            Job.completed_at < cutoff,
        )

        if dry_run:
            return (
                await session.execute(select(func.count(Job.id)).where(condition))
            ).scalar() or 0

        result = await session.execute(
            delete(Job).where(condition).execution_options(synchronize_session=False)
        )
        deleted_count = result.rowcount
        await session.commit()

        if deleted_count > 0:
            logger.info(
                "Cleaned up old jobs",
                deleted_count=deleted_count,
                retention_days=retention_days,
            )
        return deleted_count

    async def _insert(
        self,
        session: AsyncSession,
        job_type: str,
        payload: JobPayload,
        scheduled_at: datetime,
        opts: JobOptions,
    ) -> JobEnqueueResponse:
        now = self.clock()
        job = Job(
            id=uuid4(),
            project_id=opts.project_id,
            type=job_type,
            payload=payload,
            status=JobStatus.PENDING.value,
            priority=opts.priority,
            attempts=0,
            max_attempts=opts.max_attempts or self.settings.job_default_max_attempts,
            scheduled_at=scheduled_at,
            created_at=now,
            updated_at=now,
        )

        try:
            session.add(job)
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.exception("Failed to enqueue job", type=job_type)
            # Driver messages can carry connection details
            raise JobQueueException("Failed to enqueue job") from e

        logger.info(
            "Job enqueued",
            job_id=str(job.id),
            type=job.type,
            project_id=job.project_id,
            priority=job.priority,
            max_attempts=job.max_attempts,
            scheduled_at=scheduled_at.isoformat(),
        )
        return JobEnqueueResponse.model_validate(job)

    async def _load(self, session: AsyncSession, job_id: UUID | str) -> Job:
        job_uuid = self._parse_id(job_id)
        result = await session.execute(
            select(Job)
            .where(Job.id == job_uuid)
            .execution_options(populate_existing=True)
        )
        job = result.scalar_one_or_none()
        if job is None:
            raise NotFoundError(
                f"Job not found: {job_uuid}", details={"job_id": str(job_uuid)}
            )
        return job

    @staticmethod
    def _parse_id(job_id: UUID | str) -> UUID:
        if isinstance(job_id, UUID):
            return job_id
        try:
            return UUID(str(job_id))
        except ValueError:
            raise NotFoundError(
                f"Job not found: {job_id}", details={"job_id": str(job_id)}
            )

    @staticmethod
    def _resolve_options(options: JobOptions | dict[str, Any] | None) -> JobOptions:
        if options is None:
            return JobOptions()
        if isinstance(options, JobOptions):
            return options
        try:
            return JobOptions.model_validate(options)
        except pydantic.ValidationError as e:
            raise ValidationError(
                "Invalid job options",
                details={
                    "errors": [
                        {"loc": list(err["loc"]), "msg": err["msg"]}
                        for err in e.errors()
                    ]
                },
            )

    @staticmethod
    def _validate_type(job_type: str) -> None:
        if not isinstance(job_type, str):
            raise ValidationError("Job type must be a string")
        if not job_type.strip():
            raise ValidationError("Job type cannot be empty")
        if len(job_type) > MAX_TYPE_LENGTH:
            raise ValidationError(
                f"Job type cannot exceed {MAX_TYPE_LENGTH} characters"
            )
        if not JOB_TYPE_PATTERN.match(job_type):
            raise ValidationError(
                "Job type can only contain alphanumeric characters, "
                "underscores, and hyphens",
                details={"type": job_type},
            )

    @classmethod
    def _validate_payload(cls, payload: Any) -> JobPayload:
        """Check the payload and return a detached JSON copy of it."""
        if payload is None:
            raise ValidationError("Job payload is required")
        if not isinstance(payload, (dict, list)):
            raise ValidationError(
                "Job payload must be an object or an array",
                details={"type": type(payload).__name__},
            )
        cls._check_json_value(payload, "payload")
        try:
            serialized = json.dumps(payload, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                "Job payload must be JSON-serializable", details={"error": str(e)}
            )
        if len(serialized.encode("utf-8")) > MAX_PAYLOAD_BYTES:
            raise ValidationError("Job payload size cannot exceed 1MB")
        return json.loads(serialized)

    @classmethod
    def _check_json_value(cls, value: Any, path: str) -> None:
        # json.dumps would coerce these silently: keys to str, tuples to lists
        if isinstance(value, dict):
            for key, item in value.items():
                if not isinstance(key, str):
                    raise ValidationError(
                        "Job payload object keys must be strings",
                        details={"path": path, "key": repr(key)},
                    )
                cls._check_json_value(item, f"{path}.{key}")
        elif isinstance(value, list):
            for index, item in enumerate(value):
                cls._check_json_value(item, f"{path}[{index}]")
        elif not isinstance(value, JSON_SCALAR_TYPES):
            raise ValidationError(
                "Job payload must be JSON-serializable",
                details={"path": path, "type": type(value).__name__},
            )

    def _validate_schedule_time(self, at: datetime) -> None:
        if not isinstance(at, datetime):
            raise ValidationError("Scheduled time must be a datetime")
        if at.tzinfo is None:
            raise ValidationError("Scheduled time must be timezone-aware")
        now = self.clock()
        if at < now:
            raise ValidationError(
                "Scheduled time is in the past",
                details={"scheduled_at": at.isoformat(), "now": now.isoformat()},
            )
        if at > now + timedelta(days=MAX_SCHEDULE_AHEAD_DAYS):
            raise ValidationError(
                f"Cannot schedule jobs more than {MAX_SCHEDULE_AHEAD_DAYS} days "
                "in the future"
            )
