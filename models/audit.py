from sqlalchemy import Column, BigInteger, String, DateTime, Index, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from models.base import Base


class AuditRecord(Base):
    """
    Before/after snapshot of one destination row touched by a bulk update.

    Design:
    - Written in the same transaction as the UPDATE of its chunk
    - old_values is the full destination row before the update
    - new_values holds only the staged values that were applied
    """
    __tablename__ = "bulk_audit_log"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    job_id = Column(UUID(as_uuid=True), nullable=False, index=True)

    table_name = Column(String(63), nullable=False)
    record_key = Column(String(255), nullable=False)

    changed_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    changed_by = Column(String(255), nullable=False)

    old_values = Column(JSONB, nullable=True)
    new_values = Column(JSONB, nullable=False)

    __table_args__ = (
        Index("idx_audit_table_key", "table_name", "record_key", "changed_at"),
    )
