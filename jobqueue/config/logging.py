import logging
import sys
from typing import Any

import structlog
from structlog.typing import Processor

from .settings import Settings, get_settings


def _renderer(settings: Settings) -> Processor:
    # Pretty console output while developing, one JSON object per line otherwise
    if settings.debug:
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog for CLI and worker processes."""
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level)

    # Third-party libraries (sqlalchemy, alembic) log through the stdlib
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors: list[Processor] = [
        # worker_id and other bound context
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
    ]
    if settings.debug:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.FUNC_NAME]
            )
        )
    else:
        # logger.exception() tracebacks as structured data in JSON output
        processors.append(structlog.processors.dict_tracebacks)
    processors.append(_renderer(settings))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_worker_context(worker_id: str, **context: Any) -> None:
    """Attach worker identity to every log line emitted by the current task."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(worker_id=worker_id, **context)
