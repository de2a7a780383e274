"""
FastAPI dependency providers
"""

from typing import AsyncGenerator
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession
from core.database import get_session
from ingestion.orchestrator import JobOrchestrator


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Database session per request"""
    async for session in get_session():
        yield session


def get_orchestrator(request: Request) -> JobOrchestrator:
    """Orchestrator created at application startup"""
    return request.app.state.orchestrator
