"""
Infrastructure backends used by the provision project handler.
"""

from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Protocol

from jobqueue.config.logging import get_logger
from jobqueue.provisioning.errors import QuotaExceededError
from jobqueue.provisioning.schemas import ApiKeyInfo, DatabaseInfo, ServiceRegistration

logger = get_logger(__name__)

QUOTA_LIMITS = {
    "databases": 1,
    "api_keys": 10,
    "services": 3,
}

SERVICE_ENDPOINTS = {
    "auth": "https://auth.example.com/tenants/{tenant_id}",
    "realtime": "wss://realtime.example.com/tenants/{tenant_id}",
    "storage": "https://storage.example.com/tenants/{tenant_id}",
}


@dataclass
class ProjectRecord:
    project_id: str
    status: str = "active"
    provisioning_status: str | None = None

    @property
    def is_eligible(self) -> bool:
        return self.status not in ("suspended", "deleted")


class ProvisioningBackend(Protocol):
    """Protocol for the control plane a project is provisioned against."""

    async def get_project(self, project_id: str) -> ProjectRecord | None: ...

    async def set_provisioning_status(self, project_id: str, status: str) -> None: ...

    async def create_database(self, project_id: str, region: str) -> DatabaseInfo: ...

    async def create_schema(self, project_id: str, database_name: str) -> None: ...

    async def register_service(
        self, project_id: str, service_type: str, region: str
    ) -> ServiceRegistration: ...

    async def generate_api_keys(
        self, project_id: str, count: int, prefix: str
    ) -> list[ApiKeyInfo]: ...

    async def count_resources(self, project_id: str, resource_type: str) -> int: ...


class InMemoryProvisioningBackend:
    """
    Simulated control plane.

    Resource creation is idempotent per project, so a retried provisioning
    job reuses what an earlier attempt already created. Failures can be
    queued per operation with ``fail_next`` to exercise retry paths.
    """

    def __init__(self, auto_register_projects: bool = False):
        self.auto_register_projects = auto_register_projects
        self.projects: dict[str, ProjectRecord] = {}
        self.resources: dict[str, dict[str, dict[str, object]]] = defaultdict(
            lambda: defaultdict(dict)
        )
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[str, deque[BaseException]] = defaultdict(deque)

    def add_project(self, project_id: str, status: str = "active") -> ProjectRecord:
        record = ProjectRecord(project_id=project_id, status=status)
        self.projects[project_id] = record
        return record

    def fail_next(self, operation: str, *errors: BaseException) -> None:
        """Raise ``errors`` from the next calls to ``operation``, one per call."""
        self._failures[operation].extend(errors)

    def _record(self, operation: str, project_id: str) -> None:
        self.calls.append((operation, project_id))
        if self._failures[operation]:
            raise self._failures[operation].popleft()

    def _add_resource(
        self, project_id: str, resource_type: str, name: str, value: object
    ) -> None:
        existing = self.resources[project_id][resource_type]
        limit = QUOTA_LIMITS.get(resource_type, 10)
        if name not in existing and len(existing) >= limit:
            raise QuotaExceededError(resource_type, limit)
        existing[name] = value

    async def get_project(self, project_id: str) -> ProjectRecord | None:
        self._record("get_project", project_id)
        if project_id not in self.projects and self.auto_register_projects:
            self.add_project(project_id)
        return self.projects.get(project_id)

    async def set_provisioning_status(self, project_id: str, status: str) -> None:
        self._record("set_provisioning_status", project_id)
        if project_id in self.projects:
            self.projects[project_id].provisioning_status = status

    async def create_database(self, project_id: str, region: str) -> DatabaseInfo:
        self._record("create_database", project_id)
        database_name = f"tenant_{project_id.replace('-', '_')}"
        info = DatabaseInfo(
            host=f"db.{region}.example.com",
            port=5432,
            database_name=database_name,
            schema_name="public",
        )
        self._add_resource(project_id, "databases", database_name, info)
        return info

    async def create_schema(self, project_id: str, database_name: str) -> None:
        self._record("create_schema", project_id)
        logger.debug(
            "Created tenant schema", project_id=project_id, database=database_name
        )

    async def register_service(
        self, project_id: str, service_type: str, region: str
    ) -> ServiceRegistration:
        self._record(f"register_{service_type}", project_id)
        tenant_id = f"{service_type}_{project_id}"
        registration = ServiceRegistration(
            tenant_id=tenant_id,
            endpoint=SERVICE_ENDPOINTS[service_type].format(tenant_id=tenant_id),
            bucket_name=f"tenant-{project_id}" if service_type == "storage" else None,
        )
        self._add_resource(project_id, "services", service_type, registration)
        return registration

    async def generate_api_keys(
        self, project_id: str, count: int, prefix: str
    ) -> list[ApiKeyInfo]:
        self._record("generate_api_keys", project_id)
        keys = []
        for index in range(count):
            key = ApiKeyInfo(key_id=f"key_{project_id}_{index + 1}", key_prefix=prefix)
            self._add_resource(project_id, "api_keys", key.key_id, key)
            keys.append(key)
        return keys

    async def count_resources(self, project_id: str, resource_type: str) -> int:
        return len(self.resources[project_id][resource_type])
