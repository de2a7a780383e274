"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, bulk_update
from core.config import settings
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from ingestion.orchestrator import JobOrchestrator
from ingestion.scheduler import MaintenanceScheduler

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Bulk Update Backend API",
    description="Asynchronous CSV bulk updates with staging, referential validation and audited chunked writes",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)


# Include routers
app.include_router(health.router)
app.include_router(bulk_update.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Bulk Update Backend API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    orchestrator = JobOrchestrator.from_settings()
    await orchestrator.start()
    app.state.orchestrator = orchestrator
    logger.info(
        f"Worker pool: {settings.BULK_WORKER_COUNT} workers, "
        f"queue capacity {settings.BULK_QUEUE_CAPACITY}, policy {settings.BULK_ADMISSION_POLICY}"
    )

    # Start Scheduler
    scheduler = MaintenanceScheduler(orchestrator.upload_dir, orchestrator.active_spool_paths)
    scheduler.start()
    app.state.scheduler = scheduler


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Bulk Update Backend API")

    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.stop()

    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        await orchestrator.shutdown()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Bulk Update Backend API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "submit": "POST /bulk-update",
            "status": "/bulk-update/{job_id}",
            "errors": "/bulk-update/{job_id}/errors",
            "events": "/bulk-update/{job_id}/events",
            "cancel": "POST /bulk-update/{job_id}/cancel"
        }
    }
