"""
Durable job store: persistence of BulkJob and JobError records.

The pipeline only talks to the JobStore interface. SqlJobStore is the
PostgreSQL implementation over the async session factory; each call uses
its own short session so that status writes commit independently of the
pipeline's staging connection.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, List, Optional
from uuid import UUID
import logging

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import InvalidJobTransitionError, JobNotFoundError
from models.base import JobStatus
from models.job import BulkJob
from models.job_error import JobError

logger = logging.getLogger(__name__)


class JobStore(ABC):
    """Persistence boundary for bulk update jobs."""

    @abstractmethod
    async def create_job(self, job_id: UUID, submitted_by: str, file_name: Optional[str] = None) -> BulkJob:
        """Record a new job as PENDING"""
        pass

    @abstractmethod
    async def get_job(self, job_id: UUID) -> Optional[BulkJob]:
        pass

    @abstractmethod
    async def transition(self, job_id: UUID, status: JobStatus, **fields: Any) -> BulkJob:
        """
        Move a job to a new status and set extra columns in the same write.

        Raises:
            JobNotFoundError: Unknown job id
            InvalidJobTransitionError: Status change is not forward-only
        """
        pass

    @abstractmethod
    async def update_progress(self, job_id: UUID, **fields: Any) -> None:
        """Record statistics (rows staged, chunks completed, ...) without a status change"""
        pass

    @abstractmethod
    async def list_errors(self, job_id: UUID) -> List[JobError]:
        pass

    @abstractmethod
    async def count_errors(self, job_id: UUID) -> int:
        pass


def apply_transition(job: BulkJob, status: JobStatus, **fields: Any) -> BulkJob:
    """Validate and apply a status change to a loaded job record."""
    current = JobStatus(job.status)
    if not current.can_transition_to(status):
        raise InvalidJobTransitionError(
            f"Cannot move job from {current.value} to {status.value}",
            context={"job_id": str(job.job_id), "from": current.value, "to": status.value}
        )

    now = datetime.utcnow()
    job.status = status
    if status is JobStatus.PROCESSING:
        job.started_at = now
    if status.is_terminal:
        job.completed_at = now

    for name, value in fields.items():
        setattr(job, name, value)
    return job


class SqlJobStore(JobStore):
    """JobStore backed by the bulk_jobs and bulk_job_errors tables."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def create_job(self, job_id: UUID, submitted_by: str, file_name: Optional[str] = None) -> BulkJob:
        async with self.session_factory() as session:
            job = BulkJob(
                job_id=job_id,
                submitted_by=submitted_by,
                file_name=file_name,
                status=JobStatus.PENDING,
                submitted_at=datetime.utcnow(),
                chunks_completed=0,
            )
            session.add(job)
            await session.commit()
            await session.refresh(job)
            return job

    async def get_job(self, job_id: UUID) -> Optional[BulkJob]:
        async with self.session_factory() as session:
            return await session.get(BulkJob, job_id)

    async def transition(self, job_id: UUID, status: JobStatus, **fields: Any) -> BulkJob:
        async with self.session_factory() as session:
            job = await session.get(BulkJob, job_id, with_for_update=True)
            if job is None:
                raise JobNotFoundError("Job not found", context={"job_id": str(job_id)})

            apply_transition(job, status, **fields)
            await session.commit()
            await session.refresh(job)

            logger.info(f"Job {job_id} -> {status.value}")
            return job

    async def update_progress(self, job_id: UUID, **fields: Any) -> None:
        async with self.session_factory() as session:
            job = await session.get(BulkJob, job_id)
            if job is None:
                raise JobNotFoundError("Job not found", context={"job_id": str(job_id)})
            for name, value in fields.items():
                setattr(job, name, value)
            await session.commit()

    async def list_errors(self, job_id: UUID) -> List[JobError]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(JobError)
                .where(JobError.job_id == job_id)
                .order_by(JobError.line_number, JobError.id)
            )
            return list(result.scalars().all())

    async def count_errors(self, job_id: UUID) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(JobError).where(JobError.job_id == job_id)
            )
            return result.scalar() or 0
