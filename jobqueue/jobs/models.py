"""
Job record model.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    SmallInteger,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from jobqueue.core.clock import utcnow
from jobqueue.infra.database import Base


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def terminal(cls) -> tuple["JobStatus", ...]:
        return (cls.COMPLETED, cls.FAILED)


class JobErrorCode(str, Enum):
    """Values written to ``error_code`` by the queue itself."""

    PROCESSING_ERROR = "PROCESSING_ERROR"
    TIMEOUT = "TIMEOUT"
    WORKER_TIMEOUT = "WORKER_TIMEOUT"
    NO_HANDLER = "NO_HANDLER"
    CANCELLED = "CANCELLED"


CANCELLED_ERROR = "CANCELLED"
NO_HANDLER_ERROR = "no handler for type"


class Job(Base):
    """
    Durable unit of work.

    Worker coordination happens only through conditional updates on this
    row: a claim flips ``pending`` to ``processing`` and bumps ``attempts``,
    and every outcome write is guarded by the status and attempt number
    of that claim.
    """

    __tablename__ = "jobs"

    # Core fields
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    project_id: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Owning project, null for system jobs"
    )
    type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Job type identifier"
    )
    # JSON object or array
    payload: Mapped[Any] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Job-specific parameters",
    )

    # Job state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="Job status: pending|processing|completed|failed",
    )
    priority: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=0,
        comment="Priority hint 0-1000, higher runs first among due jobs",
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Executions started"
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=3, comment="Attempt ceiling"
    )

    # Worker coordination
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker ID holding the claim"
    )

    # Results and errors
    result: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Job result data"
    )
    error_code: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Structured error identifier"
    )
    last_error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Last error message"
    )

    # Timestamps
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="Earliest time the job can be claimed",
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Most recent claim"
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Terminal completion"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="jobs_status_check",
        ),
        CheckConstraint("attempts >= 0", name="jobs_attempts_not_negative"),
        CheckConstraint("max_attempts > 0", name="jobs_max_attempts_positive"),
        CheckConstraint(
            "attempts <= max_attempts", name="jobs_attempts_not_exceed_max"
        ),
        CheckConstraint("priority BETWEEN 0 AND 1000", name="jobs_priority_check"),
        Index("ix_jobs_status_scheduled_at", "status", "scheduled_at"),
        Index("ix_jobs_project_id", "project_id"),
        Index("ix_jobs_type_status", "type", "status"),
        Index("ix_jobs_created_at", "created_at"),
    )

    def can_retry(self) -> bool:
        """Whether another attempt fits under the ceiling."""
        return self.attempts < self.max_attempts

