"""Main application entry point."""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from src.api.routes import aliases, audit, candidates, products, scans
from src.config import settings
from src.db.models import Base
from src.db.session import AsyncSessionLocal, engine
from src.dedupe.errors import (
    ConflictError,
    MergeError,
    NotFoundError,
    ScanError,
    ValidationError,
)
from src.logging_config import setup_logging
from src.worker.scan_lock import ScanLockHeld
from src.worker.scan_watchdog import cleanup_stale_runs
from src.worker.scheduler import setup_scheduler
from src.worker.tasks import task_runner

setup_logging()
logger = logging.getLogger(__name__)

# Global scheduler
scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global scheduler

    logger.info("Starting product dedupe service...")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        await cleanup_stale_runs(timedelta(seconds=settings.max_scan_duration_seconds), db)

    scheduler = setup_scheduler()
    scheduler.start()
    logger.info("Scheduler started")

    yield

    logger.info("Shutting down...")
    if scheduler:
        scheduler.shutdown()
    await task_runner.close()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Product Dedupe",
    description="Detect, review and merge duplicate products",
    version="0.1.0",
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=True,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics", "/health"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])


def _error_response(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


async def validation_error_handler(request: Request, exc: ValidationError):
    return _error_response(status.HTTP_400_BAD_REQUEST, exc)


async def not_found_handler(request: Request, exc: NotFoundError):
    return _error_response(status.HTTP_404_NOT_FOUND, exc)


async def conflict_handler(request: Request, exc: ConflictError):
    return _error_response(status.HTTP_409_CONFLICT, exc)


async def scan_lock_held_handler(request: Request, exc: ScanLockHeld):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc), "lock": exc.lock_info},
    )


async def scan_error_handler(request: Request, exc: ScanError):
    logger.error(f"Scan error on {request.url.path}: {exc}")
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, exc)


async def merge_error_handler(request: Request, exc: MergeError):
    logger.error(f"Merge error on {request.url.path}: {exc} (step: {exc.step})")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=exc.to_dict(),
    )


app.add_exception_handler(ValidationError, validation_error_handler)
app.add_exception_handler(NotFoundError, not_found_handler)
app.add_exception_handler(ConflictError, conflict_handler)
app.add_exception_handler(ScanLockHeld, scan_lock_held_handler)
app.add_exception_handler(ScanError, scan_error_handler)
app.add_exception_handler(MergeError, merge_error_handler)

# Include API routes
app.include_router(scans.router)
app.include_router(candidates.router)
app.include_router(products.router)
app.include_router(aliases.router)
app.include_router(audit.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    uvicorn.run(
        "src.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
    )
