"""
Schema drift guard: the uploaded header and the live destination table
must both carry exactly the contract's column set before any staging.
"""

from typing import List
import asyncio
import logging

import pandas as pd
from sqlalchemy import MetaData, Table
from sqlalchemy.ext.asyncio import AsyncConnection

from core.exceptions import SchemaMismatchError
from ingestion.contract import TableContract

logger = logging.getLogger(__name__)


def normalize_header(columns) -> List[str]:
    """Strip whitespace and lower-case header names."""
    return [str(column).strip().lower() for column in columns]


def read_header(file_path: str) -> List[str]:
    """Read only the header line of a CSV file."""
    try:
        frame = pd.read_csv(file_path, nrows=0, dtype=str)
    except pd.errors.EmptyDataError:
        return []
    return normalize_header(frame.columns)


class SchemaGuard:
    """
    Compares column sets, order-insensitive.

    The header must match key column + updatable columns exactly. The
    destination table must contain all of them (it may hold more columns
    that uploads never touch).
    """

    def __init__(self, contract: TableContract):
        self.contract = contract

    def check_header(self, header: List[str]) -> None:
        expected = self.contract.expected_header
        actual = set(header)

        if len(actual) != len(header) or actual != expected:
            raise SchemaMismatchError(
                expected=expected,
                actual=header,
                message="Uploaded header does not match the expected columns",
                context={"table": self.contract.table}
            )

    def check_destination(self, destination: Table) -> None:
        expected = self.contract.expected_header
        present = {column.name for column in destination.columns}

        if not expected.issubset(present):
            raise SchemaMismatchError(
                expected=expected,
                actual=present & expected,
                message="Destination table is missing expected columns",
                context={"table": self.contract.table}
            )

    async def reflect_destination(self, conn: AsyncConnection) -> Table:
        """Load the destination table definition from the database catalog."""
        async with conn.begin():
            return await conn.run_sync(
                lambda sync_conn: Table(self.contract.table, MetaData(), autoload_with=sync_conn)
            )

    async def verify(self, conn: AsyncConnection, file_path: str) -> Table:
        """
        Check the upload header, then the destination table.

        Returns:
            The reflected destination table, used to cast staged text to
            the destination column types.

        Raises:
            SchemaMismatchError: On any missing or unexpected column
        """
        header = await asyncio.to_thread(read_header, file_path)
        self.check_header(header)

        destination = await self.reflect_destination(conn)
        self.check_destination(destination)

        logger.info(f"Schema verified for {self.contract.table}: {len(header)} columns")
        return destination
