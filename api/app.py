"""
FastAPI application for the Fine-Tuning Job Orchestrator.

This module provides:
- FastAPI application with CORS, lifespan management
- REST endpoints for job submission, cancellation and queries
- WebSocket for real-time updates
- Reconciler status endpoint

Usage:
    # Start server
    uvicorn api.app:app --host 0.0.0.0 --port 8000

    # Or programmatically
    import uvicorn
    from api.app import create_app
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from api.routes.jobs import router as jobs_router, reconciler_router
from api.routes.websocket import router as websocket_router
from api.schemas import success_response, error_response
from core.config import OrchestratorSettings
from tuning_engine import __version__
from tuning_engine.jobs import (
    EventRelay,
    HPCBackendClient,
    JobAccessDenied,
    JobManager,
    JobNotFound,
    JobStore,
    Reconciler,
    StoreWriteFailure,
    ValidationError,
    build_store,
)

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[OrchestratorSettings] = None,
    store: Optional[JobStore] = None,
    client: Optional[HPCBackendClient] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Orchestrator settings (loaded from YAML + env if omitted)
        store: Pre-built store (tests); otherwise built from settings
        client: Pre-built HPC client (tests); otherwise built from settings
    """
    settings = settings or OrchestratorSettings.load()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Handles startup and shutdown:
        - Startup: build store, backend client, manager, relay and reconciler
        - Shutdown: stop the reconciler and relay, close connections
        """
        logger.info("Starting Fine-Tuning Job Orchestrator API...")

        try:
            job_store = store or build_store(settings)
        except Exception as e:
            logger.error("Failed to initialize job store: %s", e)
            raise

        manager = JobManager(job_store, client or HPCBackendClient.from_settings(settings), settings)
        relay = EventRelay(job_store, buffer_size=settings.subscriber_buffer_size)
        relay.start()
        reconciler = Reconciler(
            manager,
            interval_seconds=settings.reconcile_interval_seconds,
            worker_count=settings.reconcile_workers,
        )
        if settings.reconcile_embedded:
            reconciler.start()
        if not manager.client.configured:
            logger.warning("HPC_BASE_URL is not set; jobs will stay queued until it is configured")

        app.state.settings = settings
        app.state.manager = manager
        app.state.relay = relay
        app.state.reconciler = reconciler

        yield

        # Shutdown
        logger.info("Shutting down Fine-Tuning Job Orchestrator API...")
        reconciler.stop()
        relay.stop()
        manager.close()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="Fine-Tuning Job Orchestrator API",
        description="""
API for submitting and monitoring LLM fine-tuning jobs on a remote HPC backend.

## Endpoints

### Jobs
- `POST /api/jobs` - Submit new job
- `GET /api/jobs` - List jobs with filtering
- `GET /api/jobs/{id}` - Get job details
- `DELETE /api/jobs/{id}` - Cancel job
- `GET /api/jobs/{id}/metrics` - Training metrics
- `GET /api/jobs/{id}/logs` - Job logs

### Reconciler
- `GET /api/reconciler/status` - Reconciler and subscriber status

### WebSocket
- `WS /ws/jobs/{id}` - Real-time job updates
- `WS /ws/jobs` - Real-time job list updates
        """,
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(jobs_router)
    app.include_router(reconciler_router)
    app.include_router(websocket_router)

    register_exception_handlers(app)
    register_health_routes(app)
    return app


# =============================================================================
# Exception Handlers - Wrap all errors in unified response format
# =============================================================================

def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions with unified response format."""
        return JSONResponse(
            status_code=exc.status_code,
            content=error_response(error=str(exc.detail), code=exc.status_code)
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle request validation errors with unified response format."""
        error_messages = []
        for error in exc.errors():
            loc = " -> ".join(str(x) for x in error["loc"])
            error_messages.append(f"{loc}: {error['msg']}")

        return JSONResponse(
            status_code=422,
            content=error_response(
                error="Validation failed: " + "; ".join(error_messages),
                code=422
            )
        )

    @app.exception_handler(JobNotFound)
    async def job_not_found_handler(request: Request, exc: JobNotFound):
        return JSONResponse(status_code=404, content=error_response(error=str(exc), code=404))

    @app.exception_handler(JobAccessDenied)
    async def job_access_denied_handler(request: Request, exc: JobAccessDenied):
        return JSONResponse(status_code=403, content=error_response(error=str(exc), code=403))

    @app.exception_handler(ValidationError)
    async def job_validation_handler(request: Request, exc: ValidationError):
        """Invalid submission spec or command."""
        return JSONResponse(
            status_code=422,
            content=error_response(error=str(exc), code=422, details=exc.errors)
        )

    @app.exception_handler(StoreWriteFailure)
    async def store_failure_handler(request: Request, exc: StoreWriteFailure):
        logger.error("Store write failed: %s", exc)
        return JSONResponse(
            status_code=503,
            content=error_response(error=f"Job store unavailable: {exc}", code=503)
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions with unified response format."""
        logger.error("Unexpected error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content=error_response(error=f"Internal server error: {str(exc)}", code=500)
        )


# =============================================================================
# Health and Root Endpoints
# =============================================================================

def register_health_routes(app: FastAPI) -> None:

    @app.get("/health", tags=["health"])
    def health_check(request: Request):
        """
        Health check endpoint.

        Returns:
            {"code": 200, "status": "succeed", "data": {"health": "ok", "store": "connected", ...}}
        """
        manager: JobManager = request.app.state.manager
        if not manager.store.ping():
            return JSONResponse(
                status_code=503,
                content=error_response(error="Service unhealthy: job store unreachable", code=503)
            )
        return JSONResponse(
            status_code=200,
            content=success_response(data={
                "health": "ok",
                "store": "connected",
                "backend": "configured" if manager.client.configured else "not_configured",
                "reconciler": "running" if request.app.state.reconciler.running else "stopped",
            })
        )

    @app.get("/", tags=["root"])
    def root():
        """Root endpoint with API info."""
        return JSONResponse(
            status_code=200,
            content=success_response(data={
                "name": "Fine-Tuning Job Orchestrator API",
                "version": __version__,
                "docs": "/docs",
                "health": "/health"
            })
        )


# Module-level application for uvicorn (api.app:app)
app = create_app()


# Entry point for running directly
if __name__ == "__main__":
    import uvicorn

    from core.logger import setup_logger

    setup_logger(name="tuning_engine")
    setup_logger(name="api")

    host = os.environ.get("API_HOST", "0.0.0.0")
    port = int(os.environ.get("API_PORT", "8000"))

    uvicorn.run(
        "api.app:app",
        host=host,
        port=port,
        log_level="info"
    )
