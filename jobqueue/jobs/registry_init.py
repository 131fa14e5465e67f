"""
Job registry initialization.

Registers the built-in job handlers. Nothing is registered at import time;
processes call ``bootstrap_job_registry`` once before starting workers.
"""

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import Settings
from jobqueue.core.registries import JobRegistry, job_registry
from jobqueue.jobs.handlers import MaintenanceCleanupHandler
from jobqueue.provisioning.backend import (
    InMemoryProvisioningBackend,
    ProvisioningBackend,
)
from jobqueue.provisioning.handler import ProvisionProjectHandler

logger = get_logger(__name__)


def register_job_handlers(
    registry: JobRegistry,
    settings: Settings,
    provisioning_backend: ProvisioningBackend | None = None,
) -> None:
    """Register all built-in job handlers with ``registry``."""

    logger.info("Registering job handlers")

    # Provisioning job handlers
    backend = provisioning_backend or InMemoryProvisioningBackend(
        auto_register_projects=True
    )
    registry.register("provision_project", ProvisionProjectHandler(backend))

    # Maintenance job handlers
    registry.register("maintenance_cleanup", MaintenanceCleanupHandler(settings))

    logger.info("Job handlers registered", registered_handlers=registry.list())


def bootstrap_job_registry(
    settings: Settings,
    registry: JobRegistry | None = None,
    provisioning_backend: ProvisioningBackend | None = None,
) -> JobRegistry:
    """
    Register handlers, verify required job types and freeze the registry.

    The registry stays mutable in development so handlers can be replaced.

    Raises:
        HandlerNotFoundError: a type in ``job_required_types`` has no handler
    """
    registry = registry if registry is not None else job_registry
    if not registry.is_frozen():
        register_job_handlers(registry, settings, provisioning_backend)

    registry.validate_required(settings.job_required_types)

    if settings.environment != "development":
        registry.freeze()
        logger.info("Job registry frozen", environment=settings.environment)

    return registry
