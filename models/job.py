from sqlalchemy import Column, String, Integer, Enum, DateTime, Text, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
from models.base import Base, JobStatus


class BulkJob(Base):
    """
    One submitted bulk update upload.

    Purpose:
    - System of record for job progress (the event stream is best-effort)
    - Error count once validation completes
    - Audit of who submitted what and when

    Lifecycle:
    - Created PENDING on submission
    - Mutated only by the worker that owns the job
    - Never deleted by the pipeline
    """
    __tablename__ = "bulk_jobs"

    job_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Submission
    submitted_by = Column(String(255), nullable=False)
    file_name = Column(String(500), nullable=True)

    # Status
    status = Column(Enum(JobStatus), default=JobStatus.PENDING, nullable=False, index=True)
    error_count = Column(Integer, nullable=True)  # NULL until validation completes
    error_message = Column(Text, nullable=True)

    # Statistics
    rows_staged = Column(Integer, nullable=True)
    rows_updated = Column(Integer, nullable=True)
    chunks_completed = Column(Integer, default=0, nullable=False)

    # Timestamps
    submitted_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)  # NULL until terminal

    # Relationships
    errors = relationship("JobError", back_populates="job", lazy="raise")

    __table_args__ = (
        Index("idx_bulk_job_status_submitted", "status", "submitted_at"),
    )
