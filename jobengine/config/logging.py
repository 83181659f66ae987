import logging
import sys
from typing import Any

import structlog

from .settings import Settings, get_settings


def setup_logging(settings: Settings | None = None) -> None:
    """
    Configure structlog for the API and the worker.

    Worker lines carry ``worker_id`` once the engine binds it; job context
    (job_id, attempt) is bound per delivery by the consumer.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level)

    # Routes and services log through the standard library
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.debug:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.FUNC_NAME]
            )
        )
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def add_request_context(request_id: str, **context: Any) -> None:
    """Bind request context for the API; replaces whatever was bound before."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **context)


def bind_worker_context(worker_id: str) -> None:
    """Attach the worker identity to every log line emitted by this process."""
    structlog.contextvars.bind_contextvars(worker_id=worker_id)
