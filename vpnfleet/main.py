# vpnfleet/main.py
"""FastAPI process host for the reconciliation scheduler."""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from vpnfleet.services.scheduler import ReconciliationScheduler
from vpnfleet.services.store import InMemoryFleetStore
from vpnfleet.services.vpn_backend import BackendError
from vpnfleet.settings import settings

# Configure structured logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format=(
        '{"time":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","message":"%(message)s"}'
        if settings.log_format == "json"
        else "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ),
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the store and scheduler, start the jobs, stop them on exit."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    app.state.store = InMemoryFleetStore()
    app.state.scheduler = ReconciliationScheduler(app.state.store, settings=settings)

    if settings.scheduler_enabled:
        app.state.scheduler.start()
    else:
        logger.info("Scheduler disabled, jobs only run on demand")

    yield

    logger.info("Shutting down application")
    app.state.scheduler.shutdown()
    logger.info("Application shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="VPN fleet provisioning and reconciliation core",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
    default_response_class=JSONResponse,
)


@app.exception_handler(BackendError)
async def backend_error_handler(request: Request, exc: BackendError):
    logger.error(f"Backend error: {request.url.path} - {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "Service Unavailable", "message": "VPN backend unavailable."},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Catch-all handler - never expose internal details."""
    logger.exception(f"Unhandled exception: {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal Server Error", "message": "An unexpected error occurred."},
    )


@app.get("/health", tags=["Health"], response_class=JSONResponse)
async def health_check(request: Request):
    """Liveness plus the state of every reconciliation job."""
    scheduler: ReconciliationScheduler = request.app.state.scheduler
    return {
        "status": "healthy",
        "version": settings.app_version,
        "scheduler_running": scheduler.scheduler.running,
        "jobs": scheduler.jobs_status(),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "vpnfleet.main:app",
        host="127.0.0.1",
        port=8000,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=settings.debug,
    )
