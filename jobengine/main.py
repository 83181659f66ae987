from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from jobengine.config.logging import setup_logging
from jobengine.config.settings import settings
from jobengine.v1.admin.routes import router as admin_router
from jobengine.v1.core.exceptions import (
    JobEngineException,
    RequestContextMiddleware,
    general_exception_handler,
    http_exception_handler,
    job_engine_exception_handler,
)
from jobengine.v1.core.registries import job_registry
from jobengine.v1.healthz import router as health_router
from jobengine.v1.jobs.engine import JobEngine
from jobengine.v1.jobs.routes import outbox_router
from jobengine.v1.jobs.routes import router as jobs_router


def create_app(engine: JobEngine | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    # Initialize structured logging
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        description="Idempotent background job processing with retries and an event outbox",
        version=settings.version,
        debug=settings.debug,
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

    # Exposes in-process engine state to the health endpoint
    app.state.engine = engine

    app.add_middleware(RequestContextMiddleware)

    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_exception_handler(JobEngineException, job_engine_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")
    app.include_router(outbox_router, prefix="/v1")
    app.include_router(admin_router, prefix="/v1")

    # Freeze the handler registry outside development to prevent runtime modifications
    if settings.environment != "development":
        job_registry.freeze()

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "jobengine.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
