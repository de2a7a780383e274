"""
Pydantic schemas for request/response validation and serialization.

Schemas:
    api: Bulk update job, job error, cancellation and health responses

Features:
    - Automatic data validation
    - ORM attribute loading (from_attributes) for job records
    - OpenAPI schema generation for FastAPI

Usage:
    from schemas.api import JobStatusResponse, JobErrorListResponse

Example:
    job = await orchestrator.get_status(job_id)
    response = JobStatusResponse.model_validate(job)
"""

__all__ = [
    "JobSubmitResponse",
    "JobStatusResponse",
    "JobErrorResponse",
    "JobErrorListResponse",
    "CancelResponse",
    "HealthCheckResponse",
]
