import re
import uuid
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from jobqueue.config.logging import get_logger
from jobqueue.core.clock import utcnow

logger = get_logger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 500

_URL_CREDENTIALS = re.compile(r"(?P<scheme>[a-zA-Z][a-zA-Z0-9+.\-]*://)[^/\s:@]+:[^/\s@]+@")
_SECRET_PAIRS = re.compile(
    r"(?P<key>password|passwd|pwd|secret|token|api_key|apikey)(?P<sep>\s*[=:]\s*)[^\s,;&]+",
    re.IGNORECASE,
)


class JobQueueException(Exception):
    """Base exception for queue operations surfaced to producers."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(JobQueueException):
    """Raised when enqueue/schedule input is invalid."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_400_BAD_REQUEST, details)


class NotFoundError(JobQueueException):
    """Raised when a job id does not exist."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_404_NOT_FOUND, details)


class InvalidStateError(JobQueueException):
    """Raised when a transition is not allowed from the job's current status."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_409_CONFLICT, details)


class HandlerNotFoundError(JobQueueException):
    """Raised when no handler is registered for a job type."""

    def __init__(
        self,
        job_type: str,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.job_type = job_type
        super().__init__(
            message or f"No job handler registered for type: {job_type}",
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            details,
        )


class HandlerError(Exception):
    """
    Outcome raised by a job handler.

    The worker only looks at ``retryable``: retryable errors re-enter the
    claimable pool while attempts remain, the rest fail the job immediately.
    """

    retryable: bool = True
    default_code = "HANDLER_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code or self.default_code
        if retryable is not None:
            self.retryable = retryable
        self.details = details or {}
        super().__init__(message)


class RetryableHandlerError(HandlerError):
    """Transient failure; the job is retried with backoff."""

    retryable = True
    default_code = "RETRYABLE_ERROR"


class FatalHandlerError(HandlerError):
    """Permanent failure; retrying cannot change the outcome."""

    retryable = False
    default_code = "FATAL_ERROR"


def sanitize_error_message(message: str) -> str:
    """
    Make an error message safe to persist as ``last_error``.

    Keeps the first line only (no tracebacks), masks credentials embedded in
    URLs and ``key=value`` secrets, and bounds the length.
    """
    text = (message or "").strip()
    first_line = text.splitlines()[0] if text else ""
    cleaned = _URL_CREDENTIALS.sub(r"\g<scheme>***@", first_line)
    cleaned = _SECRET_PAIRS.sub(r"\g<key>\g<sep>***", cleaned)
    if len(cleaned) > MAX_ERROR_MESSAGE_LENGTH:
        cleaned = cleaned[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return cleaned


def describe_exception(exc: BaseException) -> str:
    """Render an unexpected exception as a sanitized one-line message."""
    message = sanitize_error_message(str(exc))
    name = exc.__class__.__name__
    return f"{name}: {message}" if message else name


def create_error_response(
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Create standardized error response envelope."""
    return {
        "ok": False,
        "error": {
            "message": message,
            "code": status_code,
            "details": details or {},
        },
        "request_id": request_id,
        "timestamp": utcnow().isoformat(),
    }


async def job_queue_exception_handler(
    request: Request, exc: JobQueueException
) -> JSONResponse:
    """Map queue exceptions to their HTTP status for apps built on the queue."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.warning(
        "Job queue exception",
        exception=exc.__class__.__name__,
        message=exc.message,
        status_code=exc.status_code,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=exc.message,
            details=exc.details,
            request_id=request_id,
        ),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install the queue exception handler on a FastAPI application."""
    app.add_exception_handler(JobQueueException, job_queue_exception_handler)
