"""
Per-job staging area and the bulk COPY loader that fills it.

The staging table is a PostgreSQL temporary table, so it only exists on
the job's connection and disappears with it even if the explicit drop
never runs.
"""

from typing import Iterable, List, Tuple
from uuid import UUID
import asyncio
import logging

import pandas as pd
from sqlalchemy import BigInteger, Column, Integer, MetaData, Table, Text, func, select
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.schema import CreateTable, DropTable

from core.exceptions import StagingError
from ingestion.contract import TableContract
from ingestion.schema_guard import normalize_header

logger = logging.getLogger(__name__)

# Header occupies line 1 of the source file
FIRST_DATA_LINE = 2


class StagingArea:
    """
    Temporary table holding one job's uploaded rows as text.

    Columns:
        row_id       - 1-based sequence in file order, drives chunking
        job_id       - owning job
        <key>, <col> - one TEXT column per staged field
        line_number  - source line for error attribution
    """

    def __init__(self, job_id: UUID, contract: TableContract):
        self.job_id = job_id
        self.contract = contract
        self.table_name = f"staging_{job_id.hex}"
        self.table = Table(
            self.table_name,
            MetaData(),
            Column("row_id", BigInteger, primary_key=True, autoincrement=True),
            Column("job_id", PG_UUID(as_uuid=True), nullable=False),
            *[Column(name, Text, nullable=True) for name in contract.staged_columns],
            Column("line_number", Integer, nullable=False),
            prefixes=["TEMPORARY"],
        )
        self.created = False

    @property
    def copy_columns(self) -> List[str]:
        return ["job_id", *self.contract.staged_columns, "line_number"]

    async def create(self, conn: AsyncConnection) -> None:
        async with conn.begin():
            await conn.execute(CreateTable(self.table))
        self.created = True
        logger.debug(f"Created staging table {self.table_name}")

    async def drop(self, conn: AsyncConnection) -> None:
        if not self.created:
            return
        async with conn.begin():
            await conn.execute(DropTable(self.table, if_exists=True))
        self.created = False
        logger.debug(f"Dropped staging table {self.table_name}")

    async def max_row_id(self, conn: AsyncConnection) -> int:
        """Highest staged row id, 0 for an empty upload."""
        async with conn.begin():
            value = await conn.scalar(select(func.max(self.table.c.row_id)))
        return int(value or 0)


class StagingLoader:
    """
    Streams a spooled CSV into a staging table with COPY.

    pandas parses the file in chunks on a worker thread; each chunk goes
    to the database through asyncpg's binary COPY rather than row inserts.
    """

    def __init__(self, read_chunk_rows: int = 10000):
        self.read_chunk_rows = read_chunk_rows

    def _malformed(self, staging: StagingArea, line_number: int, message: str) -> StagingError:
        return StagingError(
            message,
            context={"job_id": str(staging.job_id), "line_number": line_number}
        )

    def to_records(self, frame: pd.DataFrame, staging: StagingArea) -> List[Tuple]:
        """
        Convert a parsed chunk into COPY records; empty fields become NULL.

        Blank lines are skipped but still counted, so line numbers match
        the source file.

        Raises:
            StagingError: A row has fewer or more fields than the header
        """
        if not frame.empty and not isinstance(frame.index, pd.RangeIndex):
            # pandas only infers an index column when rows are wider than the header
            raise self._malformed(staging, FIRST_DATA_LINE, "Malformed row: more fields than the header")

        frame = frame.copy()
        frame.columns = normalize_header(frame.columns)

        # Fields that are present but empty parse as "", missing fields as NaN
        missing = frame.isna()
        blank = missing.iloc[:, 1:].all(axis=1) & (missing.iloc[:, 0] | (frame.iloc[:, 0] == ""))
        short = missing.any(axis=1) & ~blank
        if short.any():
            line_number = int(frame.index[short.to_numpy().argmax()]) + FIRST_DATA_LINE
            raise self._malformed(staging, line_number, "Malformed row: fewer fields than the header")

        frame = frame[~blank].fillna("")

        line_numbers = frame.index + FIRST_DATA_LINE
        values: Iterable[Tuple] = frame[list(staging.contract.staged_columns)].itertuples(
            index=False, name=None
        )

        return [
            (staging.job_id, *[value or None for value in row], int(line_number))
            for line_number, row in zip(line_numbers, values)
        ]

    async def load(self, conn: AsyncConnection, staging: StagingArea, file_path: str) -> int:
        """
        Copy every data row of the file into the staging table.

        Returns:
            Number of rows staged

        Raises:
            StagingError: On any read, parse or COPY failure
        """
        rows_staged = 0

        try:
            raw_connection = await conn.get_raw_connection()
            driver_connection = raw_connection.driver_connection

            with pd.read_csv(
                file_path,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=False,
                chunksize=self.read_chunk_rows,
            ) as reader:
                async with conn.begin():
                    while True:
                        frame = await asyncio.to_thread(next, reader, None)
                        if frame is None:
                            break
                        records = self.to_records(frame, staging)
                        if not records:
                            continue

                        await driver_connection.copy_records_to_table(
                            staging.table_name,
                            records=records,
                            columns=staging.copy_columns,
                        )
                        rows_staged += len(records)
                        logger.debug(f"Staged {rows_staged} rows for job {staging.job_id}")

        except StagingError:
            raise
        except Exception as e:
            raise StagingError(
                "Failed to load upload into staging",
                context={
                    "job_id": str(staging.job_id),
                    "file_path": file_path,
                    "rows_staged": rows_staged
                },
                original_exception=e
            )

        logger.info(f"Staged {rows_staged} rows for job {staging.job_id}")
        return rows_staged
