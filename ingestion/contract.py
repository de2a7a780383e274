"""
Destination table contract: which table a bulk upload updates, by which
key, which columns it may overwrite and which of those are checked
against reference tables.

Every name here ends up in SQL text, so each one is allow-listed against
a plain identifier pattern before use.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import re

from core.config import settings
from core.exceptions import InvalidIdentifierError

IDENTIFIER_PATTERN = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")

# Synthetic staging columns that an upload may not use as data columns
RESERVED_COLUMNS = frozenset({"row_id", "job_id", "line_number"})


def validate_identifier(name: str, kind: str = "identifier") -> str:
    """Return the normalized identifier or raise InvalidIdentifierError."""
    normalized = (name or "").strip().lower()
    if not IDENTIFIER_PATTERN.match(normalized):
        raise InvalidIdentifierError(
            f"Invalid {kind} name",
            context={"kind": kind, "name": name}
        )
    return normalized


@dataclass(frozen=True)
class ReferenceCheck:
    """One reference-checked column and the table holding its valid values."""
    column: str
    reference_table: str
    value_column: str = "name"


@dataclass(frozen=True)
class TableContract:
    """
    Allow-listed description of the destination table.

    Attributes:
        table: Destination table name
        key_column: Column used to match staged rows to destination rows
        columns: Columns overwritten by an upload (excludes the key)
        reference_checks: Ordered reference-checked columns
    """
    table: str
    key_column: str
    columns: Tuple[str, ...]
    reference_checks: Tuple[ReferenceCheck, ...] = field(default_factory=tuple)

    @classmethod
    def build(
        cls,
        table: str,
        key_column: str,
        columns: List[str],
        reference_columns: Optional[Dict[str, str]] = None,
        reference_value_column: str = "name"
    ) -> "TableContract":
        """Validate every name and build the contract."""
        table = validate_identifier(table, "table")
        key_column = validate_identifier(key_column, "key column")
        value_column = validate_identifier(reference_value_column, "reference value column")

        normalized_columns: List[str] = []
        for column in columns:
            column = validate_identifier(column, "column")
            if column == key_column or column in normalized_columns:
                raise InvalidIdentifierError(
                    "Duplicate column in contract",
                    context={"column": column}
                )
            if column in RESERVED_COLUMNS:
                raise InvalidIdentifierError(
                    "Column name is reserved for staging",
                    context={"column": column}
                )
            normalized_columns.append(column)

        if not normalized_columns:
            raise InvalidIdentifierError(
                "Contract must name at least one updatable column",
                context={"table": table}
            )

        checks: List[ReferenceCheck] = []
        for column, reference_table in (reference_columns or {}).items():
            column = validate_identifier(column, "reference-checked column")
            if column not in normalized_columns:
                raise InvalidIdentifierError(
                    "Reference-checked column is not an updatable column",
                    context={"column": column}
                )
            checks.append(ReferenceCheck(
                column=column,
                reference_table=validate_identifier(reference_table, "reference table"),
                value_column=value_column,
            ))

        return cls(
            table=table,
            key_column=key_column,
            columns=tuple(normalized_columns),
            reference_checks=tuple(checks),
        )

    @property
    def expected_header(self) -> frozenset:
        """Column set an uploaded file must carry, order-insensitive."""
        return frozenset((self.key_column, *self.columns))

    @property
    def staged_columns(self) -> Tuple[str, ...]:
        """Data columns in staging order: key first, then updatable columns."""
        return (self.key_column, *self.columns)


def contract_from_settings() -> TableContract:
    """
    Build the contract configured through BULK_* settings.

    Raises:
        InvalidIdentifierError: BULK_COLUMNS is unset or a name is invalid
    """
    if not settings.BULK_COLUMNS:
        raise InvalidIdentifierError(
            "BULK_COLUMNS is not set; configure the destination's updatable columns",
            context={"setting": "BULK_COLUMNS"}
        )
    return TableContract.build(
        table=settings.BULK_TARGET_TABLE,
        key_column=settings.BULK_KEY_COLUMN,
        columns=settings.BULK_COLUMNS,
        reference_columns=settings.BULK_REFERENCE_COLUMNS,
        reference_value_column=settings.BULK_REFERENCE_VALUE_COLUMN,
    )
