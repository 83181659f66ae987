"""
Job handler registration.

Handlers are registered explicitly at startup: either passed in directly
or contributed by the modules listed in ``HANDLER_MODULES``, each of which
calls ``job_registry.register`` when imported.
"""

import importlib
import logging

from jobengine.config.settings import Settings
from jobengine.v1.core.registries import JobHandler, JobRegistry, job_registry

logger = logging.getLogger(__name__)


def register_job_handlers(
    handlers: dict[str, JobHandler] | None = None,
    settings: Settings | None = None,
    registry: JobRegistry | None = None,
) -> JobRegistry:
    """Register handlers and import handler modules; returns the registry."""
    registry = registry if registry is not None else job_registry

    logger.info("Registering job handlers")

    for job_type, handler in (handlers or {}).items():
        registry.register(job_type, handler)

    if settings is not None:
        for module_name in settings.handler_modules:
            importlib.import_module(module_name)
            logger.info("Loaded handler module", extra={"module": module_name})

    logger.info(
        "Job handlers registered", extra={"registered_handlers": registry.list()}
    )
    return registry
