"""
Job system Pydantic schemas.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from jobqueue.core.clock import ensure_utc
from jobqueue.core.registries import JobPayload
from jobqueue.jobs.models import JobStatus

MAX_TYPE_LENGTH = 100
MAX_PAYLOAD_BYTES = 1024 * 1024
MAX_DELAY_SECONDS = 24 * 60 * 60
MAX_SCHEDULE_AHEAD_DAYS = 365
MIN_MAX_ATTEMPTS = 1
MAX_MAX_ATTEMPTS = 100
MIN_PRIORITY = 0
MAX_PRIORITY = 1000


class JobOptions(BaseModel):
    """Per-job options accepted by enqueue and schedule."""

    model_config = ConfigDict(extra="forbid")

    delay_seconds: float = Field(
        default=0,
        ge=0,
        le=MAX_DELAY_SECONDS,
        description="Delay before the job becomes claimable (enqueue only)",
    )
    max_attempts: int | None = Field(
        default=None,
        ge=MIN_MAX_ATTEMPTS,
        le=MAX_MAX_ATTEMPTS,
        description="Attempt ceiling, defaults to JOB_DEFAULT_MAX_ATTEMPTS",
    )
    priority: int = Field(
        default=0,
        ge=MIN_PRIORITY,
        le=MAX_PRIORITY,
        description="Priority hint, higher first among equally due jobs",
    )
    project_id: str | None = Field(
        default=None, min_length=1, description="Owning project"
    )


class _TimestampsUTC(BaseModel):
    @field_validator(
        "scheduled_at",
        "created_at",
        "started_at",
        "completed_at",
        "updated_at",
        mode="after",
        check_fields=False,
    )
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)


class JobEnqueueResponse(_TimestampsUTC):
    """Identity of a newly created job."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    status: JobStatus
    scheduled_at: datetime
    created_at: datetime


class JobResponse(_TimestampsUTC):
    """Snapshot of a job row."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    project_id: str | None = None
    type: str
    payload: JobPayload
    status: JobStatus
    priority: int
    attempts: int
    max_attempts: int
    last_error: str | None = None
    error_code: str | None = None
    result: dict[str, Any] | None = None
    locked_by: str | None = None
    scheduled_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class JobListFilters(BaseModel):
    """Schema for job listing filters."""

    status: list[JobStatus] | None = Field(
        default=None, description="Filter by job status"
    )
    type: str | None = Field(default=None, description="Filter by job type")
    project_id: str | None = Field(default=None, description="Filter by project")
    limit: int = Field(
        default=50, ge=1, le=1000, description="Maximum results to return"
    )
    offset: int = Field(default=0, ge=0, description="Results offset for pagination")


class JobListResponse(BaseModel):
    """Schema for job list response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.jobs) < self.total


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    queue_depth: int  # pending + processing
    failed_last_hour: int
