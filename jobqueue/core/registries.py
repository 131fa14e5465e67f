from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, Protocol, TypeVar
from uuid import UUID

from jobqueue.config.logging import get_logger
from jobqueue.core.exceptions import HandlerNotFoundError

if TYPE_CHECKING:
    from jobqueue.infra.database import Database

logger = get_logger(__name__)

# A job payload is a JSON object or array
JobPayload = dict[str, Any] | list[Any]

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen"
            )
        self._implementations[name] = implementation

    def unregister(self, name: str) -> None:
        """Remove an implementation; missing names are ignored."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot unregister '{name}' from {self.name.lower()} registry: "
                "registry is frozen"
            )
        self._implementations.pop(name, None)

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def has(self, name: str) -> bool:
        return name in self._implementations

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


@dataclass(frozen=True)
class JobContext:
    """What a handler knows about the execution it is running in."""

    job_id: UUID
    job_type: str
    project_id: str | None
    attempt: int
    max_attempts: int
    database: "Database | None" = None

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


# Job Registry - background processing handlers
class JobHandler(Protocol):
    """Protocol for job handlers that process background tasks."""

    async def handle(
        self, context: JobContext, payload: JobPayload
    ) -> dict[str, Any] | None:
        """
        Handle a background job.

        Args:
            context: Identity of the job and the claim being executed
            payload: Job-specific parameters, identical on every attempt

        Returns:
            Optional result dictionary to store with the completed job

        Raises:
            RetryableHandlerError: transient failure, retry with backoff
            FatalHandlerError: permanent failure, fail the job now
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry for background job handlers."""

    def __init__(self):
        super().__init__("Job")

    def register(self, name: str, implementation: JobHandler) -> None:
        # Overwrites are supported on purpose (hot reload, test overrides).
        if self.has(name):
            logger.warning(
                "Overwriting job handler registration",
                job_type=name,
                previous=type(self._implementations[name]).__name__,
                replacement=type(implementation).__name__,
            )
        super().register(name, implementation)

    def get(self, name: str) -> JobHandler:
        if not self.has(name):
            raise HandlerNotFoundError(name)
        return self._implementations[name]

    def validate_required(self, job_types: Iterable[str]) -> None:
        """Fail fast when a mandatory job type has no handler."""
        missing = [job_type for job_type in job_types if not self.has(job_type)]
        if missing:
            raise HandlerNotFoundError(
                ", ".join(missing),
                message=f"Missing required job handlers: {', '.join(missing)}",
                details={"missing": missing},
            )


# Global registry instance, populated explicitly by registry_init
job_registry = JobRegistry()
