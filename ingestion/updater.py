"""
Chunked application of staged rows to the destination table.

The staging row-id sequence is split into contiguous ranges of
``chunk_size`` rows, applied strictly in ascending order. For each range
one transaction writes the audit snapshots and then overwrites the
destination rows whose key matches a staged row in the range.

Consistency modes:
    per_chunk      - every chunk commits on its own; a fault in chunk k
                     leaves chunks 1..k-1 applied
    all_or_nothing - all chunks share one transaction that rolls back on
                     any fault or cancellation
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, Optional, Tuple
from uuid import UUID
import asyncio
import enum
import logging

from sqlalchemy import Table, Text, and_, cast, func, insert, literal, select, update
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.ext.asyncio import AsyncConnection

from core.exceptions import JobCancelledError, UpdateError
from ingestion.contract import TableContract
from ingestion.staging import StagingArea
from models.audit import AuditRecord

logger = logging.getLogger(__name__)

# Called with (chunk_index, start, end) before a chunk, and with
# (chunk_index, start, end) after it has been applied
ChunkCallback = Callable[[int, int, int], Awaitable[None]]


class ConsistencyMode(str, enum.Enum):
    """How chunk transactions relate to each other"""
    PER_CHUNK = "per_chunk"
    ALL_OR_NOTHING = "all_or_nothing"


def chunk_ranges(max_row_id: int, chunk_size: int) -> Iterator[Tuple[int, int, int]]:
    """
    Yield (chunk_index, start, end) covering row ids 1..max_row_id.

    chunk_index is 1-based; ranges are inclusive and ascending.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")

    index = 0
    for start in range(1, max_row_id + 1, chunk_size):
        index += 1
        yield index, start, min(start + chunk_size - 1, max_row_id)


@dataclass
class UpdateResult:
    chunks_completed: int = 0
    rows_updated: int = 0


class ChunkedUpdater:
    """Applies a job's staged rows to the destination table chunk by chunk."""

    def __init__(
        self,
        contract: TableContract,
        chunk_size: int = 2000,
        consistency_mode: ConsistencyMode = ConsistencyMode.PER_CHUNK
    ):
        self.contract = contract
        self.chunk_size = chunk_size
        self.consistency_mode = ConsistencyMode(consistency_mode)

    def _key_match(self, destination: Table, staged: Table):
        key = self.contract.key_column
        return destination.c[key] == cast(staged.c[key], destination.c[key].type)

    def build_audit_insert(
        self,
        destination: Table,
        staging: StagingArea,
        actor: str,
        start: int,
        end: int
    ):
        """Snapshot prior destination state and the staged new state."""
        current = destination.alias("m")
        staged = staging.table.alias("t")

        new_values = func.jsonb_build_object(
            *[
                part
                for name in self.contract.staged_columns
                for part in (literal(name), staged.c[name])
            ]
        )

        snapshots = (
            select(
                literal(staging.job_id, PG_UUID(as_uuid=True)),
                literal(self.contract.table),
                cast(current.c[self.contract.key_column], Text),
                func.now(),
                literal(actor),
                func.to_jsonb(current.table_valued()),
                new_values,
            )
            .select_from(
                current.join(
                    staged,
                    and_(
                        self._key_match(current, staged),
                        staged.c.row_id.between(start, end),
                    ),
                )
            )
            .order_by(staged.c.row_id)
        )

        return insert(AuditRecord).from_select(
            ["job_id", "table_name", "record_key", "changed_at", "changed_by", "old_values", "new_values"],
            snapshots,
        )

    def build_update(self, destination: Table, staging: StagingArea, start: int, end: int):
        """Overwrite destination columns from staged rows in [start, end]."""
        staged = staging.table.alias("t")

        return (
            update(destination)
            .values({
                name: cast(staged.c[name], destination.c[name].type)
                for name in self.contract.columns
            })
            .where(self._key_match(destination, staged))
            .where(staged.c.row_id.between(start, end))
        )

    async def apply_chunk(
        self,
        conn: AsyncConnection,
        destination: Table,
        staging: StagingArea,
        actor: str,
        start: int,
        end: int
    ) -> int:
        """Audit then update one range; the caller owns the transaction."""
        await conn.execute(self.build_audit_insert(destination, staging, actor, start, end))
        result = await conn.execute(self.build_update(destination, staging, start, end))
        return max(result.rowcount or 0, 0)

    async def _run_chunks(
        self,
        conn: AsyncConnection,
        destination: Table,
        staging: StagingArea,
        actor: str,
        max_row_id: int,
        result: UpdateResult,
        cancel_event: Optional[asyncio.Event],
        on_chunk_start: Optional[ChunkCallback],
        on_chunk_done: Optional[ChunkCallback],
        per_chunk_transactions: bool
    ) -> None:
        for index, start, end in chunk_ranges(max_row_id, self.chunk_size):
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelledError(
                    "Job cancelled",
                    context={"job_id": str(staging.job_id), "next_chunk": index}
                )

            if on_chunk_start is not None:
                await on_chunk_start(index, start, end)

            try:
                if per_chunk_transactions:
                    async with conn.begin():
                        updated = await self.apply_chunk(conn, destination, staging, actor, start, end)
                else:
                    updated = await self.apply_chunk(conn, destination, staging, actor, start, end)
            except Exception as e:
                raise UpdateError(
                    "Failed to apply update chunk",
                    context={
                        "job_id": str(staging.job_id),
                        "chunk_index": index,
                        "row_range": (start, end),
                        "consistency_mode": self.consistency_mode.value
                    },
                    original_exception=e
                )

            result.chunks_completed = index
            result.rows_updated += updated
            logger.info(f"Job {staging.job_id}: chunk {index} rows {start}-{end} applied ({updated} updated)")

            if on_chunk_done is not None:
                await on_chunk_done(index, start, end)

    async def apply(
        self,
        conn: AsyncConnection,
        destination: Table,
        staging: StagingArea,
        actor: str,
        cancel_event: Optional[asyncio.Event] = None,
        on_chunk_start: Optional[ChunkCallback] = None,
        on_chunk_done: Optional[ChunkCallback] = None
    ) -> UpdateResult:
        """
        Apply every chunk in ascending order.

        Raises:
            JobCancelledError: Cancellation observed at a chunk boundary
            UpdateError: A chunk failed to apply
        """
        max_row_id = await staging.max_row_id(conn)
        result = UpdateResult()

        if self.consistency_mode is ConsistencyMode.PER_CHUNK:
            await self._run_chunks(
                conn, destination, staging, actor, max_row_id, result,
                cancel_event, on_chunk_start, on_chunk_done,
                per_chunk_transactions=True
            )
        else:
            async with conn.begin():
                await self._run_chunks(
                    conn, destination, staging, actor, max_row_id, result,
                    cancel_event, on_chunk_start, on_chunk_done,
                    per_chunk_transactions=False
                )

        return result
