"""
Provisioning error taxonomy.

Every provisioning failure is a ``HandlerError``, so the worker decides retry
versus fail from ``retryable`` alone.
"""

from enum import Enum
from typing import Any

import httpx

from jobqueue.core.exceptions import HandlerError


class ProvisioningErrorType(str, Enum):
    PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    DATABASE_CREATION_FAILED = "DATABASE_CREATION_FAILED"
    SCHEMA_CREATION_FAILED = "SCHEMA_CREATION_FAILED"
    SERVICE_REGISTRATION_FAILED = "SERVICE_REGISTRATION_FAILED"
    API_KEY_GENERATION_FAILED = "API_KEY_GENERATION_FAILED"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    REGION_UNAVAILABLE = "REGION_UNAVAILABLE"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


RETRYABLE_ERROR_TYPES = frozenset(
    {
        ProvisioningErrorType.DATABASE_CREATION_FAILED,
        ProvisioningErrorType.SCHEMA_CREATION_FAILED,
        ProvisioningErrorType.SERVICE_REGISTRATION_FAILED,
        ProvisioningErrorType.API_KEY_GENERATION_FAILED,
        ProvisioningErrorType.NETWORK_ERROR,
        ProvisioningErrorType.TIMEOUT,
        ProvisioningErrorType.UNKNOWN_ERROR,
    }
)


def is_retryable(error_type: ProvisioningErrorType) -> bool:
    return error_type in RETRYABLE_ERROR_TYPES


class ProvisioningError(HandlerError):
    """Base provisioning error; retryability follows the error type."""

    def __init__(
        self,
        message: str,
        error_type: ProvisioningErrorType = ProvisioningErrorType.UNKNOWN_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.error_type = error_type
        super().__init__(
            message,
            code=error_type.value,
            retryable=is_retryable(error_type),
            details=details,
        )


class ProjectNotFoundError(ProvisioningError):
    def __init__(self, project_id: str):
        super().__init__(
            f"Project not found: {project_id}",
            ProvisioningErrorType.PROJECT_NOT_FOUND,
            details={"project_id": project_id},
        )


class InvalidPayloadError(ProvisioningError):
    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, ProvisioningErrorType.INVALID_PAYLOAD, details)


class DatabaseCreationError(ProvisioningError):
    def __init__(self, message: str):
        super().__init__(message, ProvisioningErrorType.DATABASE_CREATION_FAILED)


class SchemaCreationError(ProvisioningError):
    def __init__(self, message: str):
        super().__init__(message, ProvisioningErrorType.SCHEMA_CREATION_FAILED)


class ServiceRegistrationError(ProvisioningError):
    def __init__(self, service_type: str, message: str):
        super().__init__(
            message,
            ProvisioningErrorType.SERVICE_REGISTRATION_FAILED,
            details={"service_type": service_type},
        )


class ApiKeyGenerationError(ProvisioningError):
    def __init__(self, message: str):
        super().__init__(message, ProvisioningErrorType.API_KEY_GENERATION_FAILED)


class QuotaExceededError(ProvisioningError):
    def __init__(self, resource_type: str, limit: int):
        super().__init__(
            f"Quota exceeded for {resource_type} (limit: {limit})",
            ProvisioningErrorType.QUOTA_EXCEEDED,
            details={"resource_type": resource_type, "limit": limit},
        )


class RegionUnavailableError(ProvisioningError):
    def __init__(self, region: str):
        super().__init__(
            f"Region not available: {region}",
            ProvisioningErrorType.REGION_UNAVAILABLE,
            details={"region": region},
        )


class ProvisioningNetworkError(ProvisioningError):
    def __init__(self, message: str):
        super().__init__(message, ProvisioningErrorType.NETWORK_ERROR)


class ProvisioningTimeoutError(ProvisioningError):
    def __init__(self, operation: str, timeout_s: float):
        super().__init__(
            f"Timeout during {operation} ({timeout_s}s)",
            ProvisioningErrorType.TIMEOUT,
            details={"operation": operation, "timeout_s": timeout_s},
        )


def classify_error(exc: BaseException) -> ProvisioningErrorType:
    """Map an arbitrary exception onto the provisioning taxonomy."""
    if isinstance(exc, ProvisioningError):
        return exc.error_type
    if isinstance(exc, TimeoutError):
        return ProvisioningErrorType.TIMEOUT
    if isinstance(exc, (ConnectionError, httpx.TransportError)):
        return ProvisioningErrorType.NETWORK_ERROR
    if isinstance(exc, PermissionError):
        return ProvisioningErrorType.INSUFFICIENT_PERMISSIONS
    return ProvisioningErrorType.UNKNOWN_ERROR


def to_provisioning_error(exc: BaseException) -> ProvisioningError:
    """Wrap an exception raised by a backend call, keeping known errors as-is."""
    if isinstance(exc, ProvisioningError):
        return exc
    message = str(exc) or exc.__class__.__name__
    return ProvisioningError(
        f"{exc.__class__.__name__}: {message}", classify_error(exc)
    )
