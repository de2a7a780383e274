"""
Referential validation of staged values against reference tables.

For each reference-checked column, in contract order:

1. take the distinct non-NULL staged values of the column
2. keep the values with no case-insensitive, whitespace-trimmed match in
   the reference table
3. record one JobError per staged row carrying such a value

Columns are checked one at a time and every column is always checked;
the pass/fail decision is made once, on the total error count.
"""

from typing import Awaitable, Callable, Optional
from uuid import UUID
import logging

from sqlalchemy import column, func, insert, literal, select, table
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.sql import Insert

from ingestion.contract import ReferenceCheck, TableContract
from ingestion.staging import StagingArea
from models.job_error import JobError

logger = logging.getLogger(__name__)

# Called before each column with (check, position, total); position is 1-based
ColumnCallback = Callable[[ReferenceCheck, int, int], Awaitable[None]]


def _normalized(expression):
    return func.lower(func.trim(expression))


class ReferentialValidator:
    """Records JobError rows for staged values missing from reference tables."""

    def __init__(self, contract: TableContract, error_threshold: int = 0):
        self.contract = contract
        self.error_threshold = error_threshold

    def build_error_insert(self, staging: StagingArea, check: ReferenceCheck) -> Insert:
        """INSERT ... SELECT writing one error per offending staged row."""
        staged = staging.table
        staged_value = staged.c[check.column]
        reference = table(check.reference_table, column(check.value_column))
        reference_value = reference.c[check.value_column]

        distinct_values = (
            select(staged_value.label("value"))
            .where(staged_value.is_not(None))
            .distinct()
            .cte(f"distinct_{check.column}")
        )

        unmatched = (
            select(distinct_values.c.value)
            .where(
                ~select(literal(1))
                .select_from(reference)
                .where(_normalized(reference_value) == _normalized(distinct_values.c.value))
                .exists()
            )
            .cte(f"unmatched_{check.column}")
        )

        offending_rows = (
            select(
                literal(staging.job_id, PG_UUID(as_uuid=True)),
                staged.c.line_number,
                literal(check.column),
                staged_value,
                literal(f"Value not found in {check.reference_table}"),
            )
            .select_from(staged.join(unmatched, staged_value == unmatched.c.value))
            .order_by(staged.c.line_number)
        )

        return insert(JobError).from_select(
            ["job_id", "line_number", "column_name", "invalid_value", "reason"],
            offending_rows,
        )

    async def validate_column(
        self,
        conn: AsyncConnection,
        staging: StagingArea,
        check: ReferenceCheck
    ) -> int:
        """Validate one column in its own transaction; returns errors recorded."""
        async with conn.begin():
            result = await conn.execute(self.build_error_insert(staging, check))

        recorded = max(result.rowcount or 0, 0)
        if recorded:
            logger.warning(
                f"Job {staging.job_id}: {recorded} rows with unknown "
                f"{check.column} values"
            )
        return recorded

    async def count_errors(self, conn: AsyncConnection, job_id: UUID) -> int:
        async with conn.begin():
            value = await conn.scalar(
                select(func.count()).select_from(JobError).where(JobError.job_id == job_id)
            )
        return int(value or 0)

    async def validate(
        self,
        conn: AsyncConnection,
        staging: StagingArea,
        on_column: Optional[ColumnCallback] = None
    ) -> int:
        """
        Validate every reference-checked column, then count the job's errors.

        Returns:
            Total JobError rows recorded for the job
        """
        checks = self.contract.reference_checks
        total = len(checks)

        for position, check in enumerate(checks, start=1):
            if on_column is not None:
                await on_column(check, position, total)
            await self.validate_column(conn, staging, check)

        error_count = await self.count_errors(conn, staging.job_id)
        logger.info(f"Validation complete for job {staging.job_id}: {error_count} errors")
        return error_count

    def exceeds_threshold(self, error_count: int) -> bool:
        return error_count > self.error_threshold
