"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import JobStatus
from uuid import UUID


# ============================================================================
# Bulk Update Schemas
# ============================================================================

class JobSubmitResponse(BaseModel):
    """Returned immediately after an upload is accepted"""
    job_id: UUID
    status: JobStatus = JobStatus.PENDING

    class Config:
        use_enum_values = True


class JobStatusResponse(BaseModel):
    """Current state of a bulk update job"""
    job_id: UUID
    status: JobStatus
    submitted_by: str
    file_name: Optional[str] = None
    submitted_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_count: Optional[int] = Field(None, description="NULL until validation completes")
    rows_staged: Optional[int] = None
    rows_updated: Optional[int] = None
    chunks_completed: int = 0
    error_message: Optional[str] = None

    class Config:
        from_attributes = True
        use_enum_values = True
        json_schema_extra = {
            "example": {
                "job_id": "550e8400-e29b-41d4-a716-446655440000",
                "status": "completed",
                "submitted_by": "alice",
                "file_name": "march_update.csv",
                "submitted_at": "2024-01-15T10:00:00Z",
                "started_at": "2024-01-15T10:00:01Z",
                "completed_at": "2024-01-15T10:02:30Z",
                "error_count": 0,
                "rows_staged": 4500,
                "rows_updated": 4498,
                "chunks_completed": 3,
                "error_message": None
            }
        }


class JobErrorResponse(BaseModel):
    """One referential validation failure"""
    id: int
    job_id: UUID
    line_number: int
    column_name: str
    invalid_value: Optional[str]
    reason: str

    class Config:
        from_attributes = True


class JobErrorListResponse(BaseModel):
    job_id: UUID
    total: int
    errors: List[JobErrorResponse] = Field(default_factory=list)


class CancelResponse(BaseModel):
    job_id: UUID
    cancelled: bool


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    # Declared before status so the status validator can see them
    database_connected: bool
    worker_pool: Dict[str, Any] = Field(default_factory=dict)
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"

        pool = values.get("worker_pool") or {}
        if pool and pool.get("backlog", 0) >= pool.get("queue_capacity", 0) > 0:
            return "degraded"

        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "worker_pool": {
                    "workers": 5,
                    "active": 2,
                    "backlog": 0,
                    "queue_capacity": 50,
                    "admission_policy": "reject"
                }
            }
        }
