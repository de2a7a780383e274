"""
SQLAlchemy ORM models for database tables.

Models:
    base: Base declarative class and the JobStatus state machine
    job: Bulk update job records (system of record for status)
    job_error: Referential validation failures, one per offending line
    audit: Before/after snapshots written alongside destination updates

Usage:
    from models.job import BulkJob
    from models.job_error import JobError
    from models.audit import AuditRecord
    from models.base import JobStatus

Relationships:
    - BulkJob → JobError (one-to-many)
    - BulkJob → AuditRecord (by job_id, no foreign key)
"""

__all__ = [
    "Base",
    "JobStatus",
    "BulkJob",
    "JobError",
    "AuditRecord",
]
