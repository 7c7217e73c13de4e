"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from jobrunner import __version__
from jobrunner.api.routes import health_router, jobs_router
from jobrunner.config import get_settings
from jobrunner.exceptions import (
    InvalidStateError,
    JobNotFoundError,
    JobQueueError,
    LeaseConflictError,
    PayloadValidationError,
    StoreUnavailableError,
)
from jobrunner.observability.logging import setup_logging
from jobrunner.observability.metrics import setup_metrics
from jobrunner.observability.tracing import (
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_tracing,
)
from jobrunner.system import JobSystem
from jobrunner.types.api import ErrorResponse

logger = logging.getLogger(__name__)

# Most specific first; the first matching class decides the status code
_ERROR_STATUS: list[tuple[type[JobQueueError], int]] = [
    (JobNotFoundError, status.HTTP_404_NOT_FOUND),
    (PayloadValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (LeaseConflictError, status.HTTP_409_CONFLICT),
    (StoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


async def job_queue_error_handler(request: Request, exc: JobQueueError) -> JSONResponse:
    """Translate job queue errors into HTTP responses."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break

    if status_code >= 500:
        logger.error(f"Request failed: {exc}", extra={"path": request.url.path})

    body = ErrorResponse(error=type(exc).__name__, detail=str(exc))
    return JSONResponse(status_code=status_code, content=body.model_dump())


def create_app(system: JobSystem | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        system: A pre-built job system. If omitted, one is built from
            settings on startup and shut down with the application.

    Returns:
        FastAPI: The configured application instance.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        # Startup
        setup_logging()
        setup_metrics()
        setup_tracing()

        owned = app.state.system is None
        if owned:
            app.state.system = JobSystem()
        await app.state.system.init()
        if app.state.system.database is not None:
            instrument_sqlalchemy(app.state.system.database.engine.sync_engine)

        logger.info("Application started")

        yield

        # Shutdown
        if owned:
            await app.state.system.shutdown()
        logger.info("Application shutdown")

    app = FastAPI(
        title="Job Runner API",
        description="Durable job queue with lease-based workers",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.system = system

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(JobQueueError, job_queue_error_handler)

    # Include routers
    app.include_router(health_router)
    app.include_router(jobs_router)

    # Instrument with OpenTelemetry
    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()

    uvicorn.run(
        create_app(),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
