"""
Job orchestrator: the entry point for submitting and observing bulk
update jobs.

submit() records the job PENDING and hands it to the worker pool without
waiting for the pipeline. Everything else (status, errors, progress
stream, cancellation) is keyed by the returned job id.
"""

from typing import BinaryIO, Dict, List, Optional
from uuid import UUID
import asyncio
import logging
import os
import shutil
import uuid

from core.config import settings
from core.exceptions import JobNotFoundError
from ingestion.contract import TableContract, contract_from_settings
from ingestion.job_store import JobStore, SqlJobStore
from ingestion.progress import ProgressChannel, Subscription
from ingestion.runner import BulkUpdateRunner, JobOutcome
from ingestion.schema_guard import SchemaGuard
from ingestion.staging import StagingLoader
from ingestion.updater import ChunkedUpdater, ConsistencyMode
from ingestion.validator import ReferentialValidator
from ingestion.worker_pool import AdmissionPolicy, WorkerPool
from models.base import JobStatus
from models.job import BulkJob
from models.job_error import JobError

logger = logging.getLogger(__name__)


class JobOrchestrator:
    """
    Bounded, asynchronous execution of bulk update jobs.

    Responsibilities:
    - Spool uploads so the pipeline can run after the request returns
    - Record jobs PENDING before scheduling them
    - Enforce the worker pool's admission policy
    - Expose status, errors, progress subscriptions and cancellation
    """

    def __init__(
        self,
        runner: BulkUpdateRunner,
        job_store: JobStore,
        channel: ProgressChannel,
        pool: WorkerPool,
        upload_dir: str
    ):
        self.runner = runner
        self.job_store = job_store
        self.channel = channel
        self.pool = pool
        self.upload_dir = upload_dir

        self._cancel_events: Dict[UUID, asyncio.Event] = {}
        self._handles: Dict[UUID, asyncio.Future] = {}

    @classmethod
    def from_settings(cls, contract: Optional[TableContract] = None) -> "JobOrchestrator":
        """Wire the production pipeline from BULK_* settings."""
        from core.database import async_session_maker, engine

        contract = contract or contract_from_settings()
        job_store = SqlJobStore(async_session_maker)
        channel = ProgressChannel(queue_size=settings.BULK_SUBSCRIBER_QUEUE_SIZE)

        runner = BulkUpdateRunner(
            contract=contract,
            job_store=job_store,
            channel=channel,
            connect=engine.connect,
            schema_guard=SchemaGuard(contract),
            loader=StagingLoader(read_chunk_rows=settings.BULK_READ_CHUNK_ROWS),
            validator=ReferentialValidator(contract, error_threshold=settings.BULK_ERROR_THRESHOLD),
            updater=ChunkedUpdater(
                contract,
                chunk_size=settings.BULK_CHUNK_SIZE,
                consistency_mode=ConsistencyMode(settings.BULK_CONSISTENCY_MODE),
            ),
        )

        pool = WorkerPool(
            worker_count=settings.BULK_WORKER_COUNT,
            queue_capacity=settings.BULK_QUEUE_CAPACITY,
            admission_policy=AdmissionPolicy(settings.BULK_ADMISSION_POLICY),
            submit_timeout=settings.BULK_SUBMIT_TIMEOUT_SECONDS,
        )

        return cls(runner, job_store, channel, pool, settings.BULK_UPLOAD_DIR)

    async def start(self) -> None:
        os.makedirs(self.upload_dir, exist_ok=True)
        await self.pool.start()

    async def shutdown(self) -> None:
        await self.pool.stop()

    def spool_path(self, job_id: UUID) -> str:
        return os.path.join(self.upload_dir, f"{job_id}.csv")

    @property
    def active_job_ids(self) -> List[UUID]:
        return list(self._handles)

    def active_spool_paths(self) -> List[str]:
        return [self.spool_path(job_id) for job_id in self._handles]

    @staticmethod
    def _spool(file_stream: BinaryIO, file_path: str) -> None:
        os.makedirs(os.path.dirname(file_path), exist_ok=True)
        with open(file_path, "wb") as spooled:
            shutil.copyfileobj(file_stream, spooled)

    @staticmethod
    def _discard(file_path: str) -> None:
        try:
            os.remove(file_path)
        except FileNotFoundError:
            pass

    async def submit(self, file_stream: BinaryIO, actor: str, file_name: Optional[str] = None) -> UUID:
        """
        Record a new job PENDING and schedule its pipeline.

        Returns as soon as the job is recorded and queued.

        Raises:
            CapacityError: The pool cannot admit the job under its policy
        """
        await self.pool.acquire_slot()

        job_id = uuid.uuid4()
        file_path = self.spool_path(job_id)

        try:
            await asyncio.to_thread(self._spool, file_stream, file_path)
            await self.job_store.create_job(job_id, submitted_by=actor, file_name=file_name)
        except Exception:
            self.pool.release_slot()
            await asyncio.to_thread(self._discard, file_path)
            raise

        cancel_event = asyncio.Event()
        self._cancel_events[job_id] = cancel_event
        self._handles[job_id] = self.pool.dispatch(
            lambda: self._run_job(job_id, file_path, actor, cancel_event),
            name=f"job {job_id}",
        )

        logger.info(f"Job {job_id} submitted by {actor} ({file_name or 'unnamed upload'})")
        return job_id

    async def _run_job(
        self,
        job_id: UUID,
        file_path: str,
        actor: str,
        cancel_event: asyncio.Event
    ) -> JobOutcome:
        try:
            outcome = await self.runner.run(job_id, file_path, actor, cancel_event)
            if outcome is not None:
                logger.info(f"Job {job_id} finished", extra={"outcome": outcome.to_dict()})
            return outcome
        finally:
            self.channel.close_job(job_id)
            self._cancel_events.pop(job_id, None)
            self._handles.pop(job_id, None)
            await asyncio.to_thread(self._discard, file_path)

    def handle(self, job_id: UUID) -> Optional[asyncio.Future]:
        """Future of a queued or running job, None once it has finished."""
        return self._handles.get(job_id)

    async def _require_job(self, job_id: UUID) -> BulkJob:
        job = await self.job_store.get_job(job_id)
        if job is None:
            raise JobNotFoundError("Job not found", context={"job_id": str(job_id)})
        return job

    async def get_status(self, job_id: UUID) -> BulkJob:
        """
        Raises:
            JobNotFoundError: Unknown job id
        """
        return await self._require_job(job_id)

    async def list_errors(self, job_id: UUID) -> List[JobError]:
        """
        Raises:
            JobNotFoundError: Unknown job id
        """
        await self._require_job(job_id)
        return await self.job_store.list_errors(job_id)

    async def subscribe(self, job_id: UUID) -> Optional[Subscription]:
        """
        Attach an observer to a job's progress stream.

        Returns:
            A subscription, or None when the job is not queued or running
            in this process (finished, or left over from a previous one)

        Raises:
            JobNotFoundError: Unknown job id
        """
        job = await self._require_job(job_id)
        if JobStatus(job.status).is_terminal or job_id not in self._handles:
            return None
        return self.channel.subscribe(job_id)

    def cancel(self, job_id: UUID) -> bool:
        """
        Request cooperative cancellation, observed at the next chunk boundary.

        Returns:
            True if the job was queued or running
        """
        cancel_event = self._cancel_events.get(job_id)
        if cancel_event is None:
            return False
        cancel_event.set()
        logger.info(f"Cancellation requested for job {job_id}")
        return True
