from sqlalchemy import Column, BigInteger, Integer, String, Text, DateTime, ForeignKey, Index, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from models.base import Base


class JobError(Base):
    """
    One referential validation failure on one source line.

    Rows are append-only and written only by the referential validator:
    one row per staged line carrying a value missing from the column's
    reference table.
    """
    __tablename__ = "bulk_job_errors"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    job_id = Column(UUID(as_uuid=True), ForeignKey("bulk_jobs.job_id"), nullable=False)

    line_number = Column(Integer, nullable=False)
    column_name = Column(String(63), nullable=False)
    invalid_value = Column(Text, nullable=True)
    reason = Column(Text, nullable=False)

    # Server default: rows are written by INSERT ... SELECT
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    job = relationship("BulkJob", back_populates="errors")

    __table_args__ = (
        Index("idx_job_error_job_line", "job_id", "line_number"),
    )
