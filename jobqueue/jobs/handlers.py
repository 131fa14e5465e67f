"""
Built-in job handlers.

Handlers implement the JobHandler protocol and are registered in the job
registry by ``registry_init``.
"""

from typing import Any

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import Settings
from jobqueue.core.clock import Clock, utcnow
from jobqueue.core.exceptions import FatalHandlerError
from jobqueue.core.registries import JobContext, JobPayload
from jobqueue.jobs.service import JobService

logger = get_logger(__name__)


class MaintenanceCleanupHandler:
    """
    Job handler that deletes terminal jobs past the retention window.

    Payload expected:
    {
        "older_than_days": 30,  # optional, defaults to JOB_CLEANUP_AFTER_DAYS
        "dry_run": false  # optional
    }
    """

    def __init__(self, settings: Settings, clock: Clock = utcnow):
        self.settings = settings
        self.clock = clock

    async def handle(
        self, context: JobContext, payload: JobPayload
    ) -> dict[str, Any] | None:
        """Run job cleanup through the worker's database."""
        if context.database is None:
            raise FatalHandlerError(
                "maintenance_cleanup requires a database on the job context",
                code="NO_DATABASE",
            )
        if not isinstance(payload, dict):
            raise FatalHandlerError(
                "maintenance_cleanup payload must be an object",
                code="INVALID_PAYLOAD",
            )

        older_than_days = payload.get("older_than_days")
        if older_than_days is not None and (
            not isinstance(older_than_days, int) or older_than_days < 1
        ):
            raise FatalHandlerError(
                f"older_than_days must be a positive integer, got: {older_than_days}",
                code="INVALID_PAYLOAD",
            )
        dry_run = bool(payload.get("dry_run", False))

        logger.info(
            "Starting maintenance cleanup",
            job_id=str(context.job_id),
            older_than_days=older_than_days,
            dry_run=dry_run,
        )

        job_service = JobService(self.settings, clock=self.clock)
        async with context.database.session() as session:
            count = await job_service.cleanup_old_jobs(
                session, older_than_days=older_than_days, dry_run=dry_run
            )

        logger.info(
            "Maintenance cleanup completed",
            job_id=str(context.job_id),
            count=count,
            dry_run=dry_run,
        )

        return {
            "status": "dry_run" if dry_run else "completed",
            "older_than_days": older_than_days or self.settings.job_cleanup_after_days,
            "deleted_count": 0 if dry_run else count,
            "matched_count": count,
        }
