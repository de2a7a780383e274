# ============================================================================
# File: ingestion/runner.py
# Description: Bulk update pipeline for one job, run inside a pool worker
# ============================================================================
"""
Bulk Update Runner - executes one job's pipeline start to finish.

Stage order is fixed:
    Schema Guard -> Staging Loader -> Referential Validator -> Chunked Updater

The runner owns the job's state transitions (PROCESSING, then COMPLETED or
FAILED) and publishes the job's progress narrative. It never raises for
pipeline failures: every fault ends in a FAILED job and a terminal status
event, and the outcome is returned to the worker pool.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from uuid import UUID
import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncConnection

from core.exceptions import (
    BulkUploadException,
    ExecutionFault,
    JobCancelledError,
    SchemaMismatchError,
)
from ingestion.contract import ReferenceCheck, TableContract
from ingestion.job_store import JobStore
from ingestion.progress import (
    EVENT_STATUS,
    EVENT_STEP,
    EVENT_UPDATING,
    EVENT_UPDATING_CHUNK,
    EVENT_VALIDATION,
    EVENT_VALIDATION_COMPLETE,
    ProgressChannel,
)
from ingestion.schema_guard import SchemaGuard
from ingestion.staging import StagingArea, StagingLoader
from ingestion.updater import ChunkedUpdater, ConsistencyMode
from ingestion.validator import ReferentialValidator
from models.base import JobStatus

logger = logging.getLogger(__name__)

# Returns an async context manager yielding an AsyncConnection
ConnectionFactory = Callable[[], Any]


@dataclass
class JobOutcome:
    job_id: UUID
    status: JobStatus
    error_count: Optional[int] = None
    rows_staged: int = 0
    rows_updated: int = 0
    chunks_completed: int = 0
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": str(self.job_id),
            "status": self.status.value,
            "error_count": self.error_count,
            "rows_staged": self.rows_staged,
            "rows_updated": self.rows_updated,
            "chunks_completed": self.chunks_completed,
            "message": self.message,
        }


class BulkUpdateRunner:
    """
    Production bulk update pipeline.

    Responsibilities:
    - Sequence the four stages on one database connection
    - Drive the job state machine
    - Publish progress events in stage order
    - Always discard the staging table
    - Record faults as FAILED jobs rather than crashing the worker
    """

    def __init__(
        self,
        contract: TableContract,
        job_store: JobStore,
        channel: ProgressChannel,
        connect: ConnectionFactory,
        schema_guard: Optional[SchemaGuard] = None,
        loader: Optional[StagingLoader] = None,
        validator: Optional[ReferentialValidator] = None,
        updater: Optional[ChunkedUpdater] = None
    ):
        self.contract = contract
        self.job_store = job_store
        self.channel = channel
        self.connect = connect
        self.schema_guard = schema_guard or SchemaGuard(contract)
        self.loader = loader or StagingLoader()
        self.validator = validator or ReferentialValidator(contract)
        self.updater = updater or ChunkedUpdater(contract)

    def _publish(self, job_id: UUID, event: str, payload: Any) -> None:
        self.channel.publish(job_id, event, payload)

    async def run(
        self,
        job_id: UUID,
        file_path: str,
        actor: str,
        cancel_event: Optional[asyncio.Event] = None
    ) -> JobOutcome:
        """
        Run the full pipeline for one job.

        Returns:
            JobOutcome with the terminal status and statistics
        """
        outcome = JobOutcome(job_id=job_id, status=JobStatus.PROCESSING)

        await self.job_store.transition(job_id, JobStatus.PROCESSING)
        self._publish(job_id, EVENT_STATUS, "Started processing")
        logger.info(f"Job {job_id}: started processing {file_path} for {actor}")

        try:
            async with self.connect() as conn:
                await self._execute(conn, job_id, file_path, actor, cancel_event, outcome)

        except SchemaMismatchError as e:
            logger.warning(
                f"Job {job_id}: schema mismatch - {e.message}",
                extra={"error_context": e.to_dict()}
            )
            return await self._fail(
                outcome,
                f"Failed: schema mismatch (missing={e.missing}, unexpected={e.unexpected})",
                error_message=e.message,
            )

        except JobCancelledError as e:
            logger.warning(f"Job {job_id}: cancelled", extra={"error_context": e.to_dict()})
            return await self._fail(outcome, "Failed: cancelled", error_message="Cancelled")

        except BulkUploadException as e:
            logger.error(
                f"Job {job_id}: pipeline failed - {e.message}",
                extra={"error_context": e.to_dict()}
            )
            return await self._fail(outcome, "Failed with exception", error_message=str(e))

        except Exception as e:
            fault = ExecutionFault(
                "Unexpected error in bulk update pipeline",
                context={"job_id": str(job_id)},
                original_exception=e
            )
            logger.exception(f"Job {job_id}: unexpected error in pipeline")
            return await self._fail(outcome, "Failed with exception", error_message=str(fault))

        if outcome.status is JobStatus.FAILED:
            return outcome

        await self.job_store.transition(
            job_id,
            JobStatus.COMPLETED,
            rows_updated=outcome.rows_updated,
            chunks_completed=outcome.chunks_completed,
        )
        outcome.status = JobStatus.COMPLETED
        outcome.message = "Completed"
        self._publish(job_id, EVENT_STATUS, "Completed")
        logger.info(
            f"Job {job_id}: completed - staged={outcome.rows_staged}, "
            f"updated={outcome.rows_updated}, chunks={outcome.chunks_completed}"
        )
        return outcome

    async def _execute(
        self,
        conn: AsyncConnection,
        job_id: UUID,
        file_path: str,
        actor: str,
        cancel_event: Optional[asyncio.Event],
        outcome: JobOutcome
    ) -> None:
        # --------------------------------------------------
        # STAGE 1: SCHEMA GUARD
        # --------------------------------------------------
        self._publish(job_id, EVENT_STEP, "Validating schema")
        destination = await self.schema_guard.verify(conn, file_path)

        staging = StagingArea(job_id, self.contract)
        try:
            # --------------------------------------------------
            # STAGE 2: STAGING LOAD
            # --------------------------------------------------
            self._publish(job_id, EVENT_STEP, "Creating staging table")
            await staging.create(conn)

            self._publish(job_id, EVENT_STEP, "Loading CSV via COPY")
            outcome.rows_staged = await self.loader.load(conn, staging, file_path)
            await self.job_store.update_progress(job_id, rows_staged=outcome.rows_staged)

            # --------------------------------------------------
            # STAGE 3: REFERENTIAL VALIDATION
            # --------------------------------------------------
            async def on_column(check: ReferenceCheck, position: int, total: int) -> None:
                self._publish(
                    job_id,
                    EVENT_VALIDATION,
                    f"Validating column {check.column} ({position}/{total})"
                )

            error_count = await self.validator.validate(conn, staging, on_column=on_column)
            outcome.error_count = error_count
            self._publish(job_id, EVENT_VALIDATION_COMPLETE, error_count)

            if self.validator.exceeds_threshold(error_count):
                logger.warning(f"Job {job_id}: {error_count} validation errors, update skipped")
                await self._fail(
                    outcome,
                    f"Failed: {error_count} validation errors found",
                    error_count=error_count,
                    error_message=f"{error_count} validation errors",
                )
                return

            await self.job_store.update_progress(job_id, error_count=error_count)

            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelledError("Job cancelled", context={"job_id": str(job_id)})

            # --------------------------------------------------
            # STAGE 4: CHUNKED UPDATE
            # --------------------------------------------------
            async def on_chunk_start(index: int, start: int, end: int) -> None:
                self._publish(job_id, EVENT_UPDATING, f"Updating rows {start}-{end}")

            # One outer transaction: nothing is durable until apply() returns
            atomic = self.updater.consistency_mode is ConsistencyMode.ALL_OR_NOTHING

            async def on_chunk_done(index: int, start: int, end: int) -> None:
                if not atomic:
                    outcome.chunks_completed = index
                    await self.job_store.update_progress(job_id, chunks_completed=index)
                self._publish(job_id, EVENT_UPDATING_CHUNK, index)

            result = await self.updater.apply(
                conn,
                destination,
                staging,
                actor,
                cancel_event=cancel_event,
                on_chunk_start=on_chunk_start,
                on_chunk_done=on_chunk_done,
            )
            outcome.rows_updated = result.rows_updated
            outcome.chunks_completed = result.chunks_completed

        finally:
            try:
                await staging.drop(conn)
            except Exception:
                # The temporary table dies with the connection; make sure
                # this one is not returned to the pool
                logger.exception(f"Job {job_id}: failed to drop {staging.table_name}")
                await conn.invalidate()

    async def _fail(self, outcome: JobOutcome, status_message: str, **fields: Any) -> JobOutcome:
        """Record FAILED, publish the terminal status event and return the outcome."""
        fields.setdefault("chunks_completed", outcome.chunks_completed)
        if outcome.rows_updated:
            fields.setdefault("rows_updated", outcome.rows_updated)

        await self.job_store.transition(outcome.job_id, JobStatus.FAILED, **fields)
        outcome.status = JobStatus.FAILED
        outcome.message = status_message
        self._publish(outcome.job_id, EVENT_STATUS, status_message)
        return outcome
