"""
Health check endpoint with database and worker pool status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from api.dependencies import get_db, get_orchestrator
from ingestion.orchestrator import JobOrchestrator
from schemas.api import HealthCheckResponse
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    orchestrator: JobOrchestrator = Depends(get_orchestrator)
):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Worker pool occupancy (workers, active jobs, backlog)
    """

    # Check database connectivity
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    # Status is derived by the validator in HealthCheckResponse
    return HealthCheckResponse(
        database_connected=db_connected,
        worker_pool=orchestrator.pool.stats(),
    )
