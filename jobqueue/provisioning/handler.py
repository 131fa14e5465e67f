"""
Provision project job handler.

Provisions a tenant project in stages: database, schema, service
registrations and API keys. Stages are reported through structured logs only;
the job row's status is owned by the worker.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

import pydantic

from jobqueue.config.logging import get_logger
from jobqueue.core.clock import Clock, utcnow
from jobqueue.core.registries import JobContext, JobPayload
from jobqueue.provisioning.backend import ProvisioningBackend
from jobqueue.provisioning.errors import (
    InvalidPayloadError,
    ProjectNotFoundError,
    ProvisioningError,
    RegionUnavailableError,
    to_provisioning_error,
)
from jobqueue.provisioning.schemas import (
    AVAILABLE_REGIONS,
    ProvisionProjectPayload,
    ProvisionProjectResult,
)

logger = get_logger(__name__)


class ProvisionProjectStage(str, Enum):
    INITIALIZING = "initializing"
    CREATING_DATABASE = "creating_database"
    CREATING_SCHEMA = "creating_schema"
    REGISTERING_AUTH = "registering_auth"
    REGISTERING_REALTIME = "registering_realtime"
    REGISTERING_STORAGE = "registering_storage"
    GENERATING_API_KEYS = "generating_api_keys"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


SERVICE_STAGES = {
    "auth": ProvisionProjectStage.REGISTERING_AUTH,
    "realtime": ProvisionProjectStage.REGISTERING_REALTIME,
    "storage": ProvisionProjectStage.REGISTERING_STORAGE,
}


@dataclass
class StageTracker:
    """Records stage transitions for one handler invocation."""

    job_id: UUID
    project_id: str | None
    attempt: int
    clock: Clock = utcnow
    history: list[tuple[ProvisionProjectStage, datetime]] = field(default_factory=list)
    # Set once this invocation has marked the project in_progress
    status_claimed: bool = False

    @property
    def current(self) -> ProvisionProjectStage | None:
        return self.history[-1][0] if self.history else None

    def enter(self, stage: ProvisionProjectStage, **details: Any) -> None:
        previous = self.current
        self.history.append((stage, self.clock()))
        logger.info(
            "Provisioning stage",
            job_id=str(self.job_id),
            project_id=self.project_id,
            attempt=self.attempt,
            stage=stage.value,
            previous_stage=previous.value if previous else None,
            **details,
        )

    def fail(self, error: ProvisioningError) -> None:
        self.enter(
            ProvisionProjectStage.FAILED,
            failed_stage=self.current.value if self.current else None,
            error_type=error.code,
            retryable=error.retryable,
        )

    def stages(self) -> list[str]:
        return [stage.value for stage, _ in self.history]


class ProvisionProjectHandler:
    """
    Job handler for provisioning a tenant project.

    Payload expected:
    {
        "project_id": "proj-123",
        "region": "us-east-1",
        "services": {"auth": true, "realtime": false, "storage": true},  # optional
        "api_keys": {"count": 2, "prefix": "nm"},  # optional
        "owner_id": "user-1",  # optional
        "organization_id": "org-1",  # optional
        "metadata": {}  # optional
    }
    """

    def __init__(self, backend: ProvisioningBackend, clock: Clock = utcnow):
        self.backend = backend
        self.clock = clock
        # Most recent invocation, kept for inspection
        self.last_tracker: StageTracker | None = None

    async def handle(
        self, context: JobContext, payload: JobPayload
    ) -> dict[str, Any] | None:
        requested = payload.get("project_id") if isinstance(payload, dict) else None
        tracker = StageTracker(
            job_id=context.job_id,
            project_id=requested or context.project_id,
            attempt=context.attempt,
            clock=self.clock,
        )
        self.last_tracker = tracker

        try:
            params = self._parse_payload(payload)
            result = await self._provision(params, tracker)
        except Exception as e:
            error = to_provisioning_error(e)
            tracker.fail(error)
            if tracker.status_claimed and (not error.retryable or context.is_last_attempt):
                await self._update_provisioning_status(tracker.project_id, "failed")
            if error is e:
                raise
            raise error from e

        return result.model_dump(mode="json")

    @staticmethod
    def _parse_payload(payload: JobPayload) -> ProvisionProjectPayload:
        try:
            params = ProvisionProjectPayload.model_validate(payload)
        except pydantic.ValidationError as e:
            raise InvalidPayloadError(
                "Invalid provision_project payload",
                details={
                    "errors": [
                        {"loc": list(err["loc"]), "msg": err["msg"]}
                        for err in e.errors()
                    ]
                },
            )
        if params.region not in AVAILABLE_REGIONS:
            raise RegionUnavailableError(params.region)
        return params

    async def _provision(
        self, params: ProvisionProjectPayload, tracker: StageTracker
    ) -> ProvisionProjectResult:
        project_id = params.project_id

        tracker.enter(ProvisionProjectStage.INITIALIZING, region=params.region)
        project = await self.backend.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        if project.provisioning_status == "completed":
            raise InvalidPayloadError(f"Project already provisioned: {project_id}")
        if not project.is_eligible:
            raise InvalidPayloadError(
                f"Project is not eligible for provisioning: {project_id} "
                f"(status: {project.status})"
            )
        await self._update_provisioning_status(project_id, "in_progress")
        tracker.status_claimed = True

        tracker.enter(ProvisionProjectStage.CREATING_DATABASE)
        database = await self.backend.create_database(project_id, params.region)

        tracker.enter(
            ProvisionProjectStage.CREATING_SCHEMA, database=database.database_name
        )
        await self.backend.create_schema(project_id, database.database_name)

        services = {}
        for service_type in params.services.enabled():
            tracker.enter(SERVICE_STAGES[service_type])
            services[service_type] = await self.backend.register_service(
                project_id, service_type, params.region
            )

        tracker.enter(
            ProvisionProjectStage.GENERATING_API_KEYS, count=params.api_keys.count
        )
        api_keys = await self.backend.generate_api_keys(
            project_id, params.api_keys.count, params.api_keys.prefix
        )

        tracker.enter(ProvisionProjectStage.FINALIZING)
        await self._update_provisioning_status(project_id, "completed")
        tracker.enter(ProvisionProjectStage.COMPLETED)

        return ProvisionProjectResult(
            project_id=project_id,
            region=params.region,
            database=database,
            services=services,
            api_keys=api_keys,
            stages=tracker.stages(),
        )

    async def _update_provisioning_status(self, project_id: str, status: str) -> None:
        try:
            await self.backend.set_provisioning_status(project_id, status)
        except Exception as e:
            # Status bookkeeping does not decide the job outcome
            logger.warning(
                "Failed to update provisioning status",
                project_id=project_id,
                status=status,
                error=str(e),
            )
