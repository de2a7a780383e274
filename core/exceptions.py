"""
Custom exceptions for the bulk update pipeline with structured error context.

This module provides the exception hierarchy used by the job orchestrator,
the pipeline stages and the API layer. Each exception carries context
information for debugging and monitoring.

Exception Hierarchy:
    BulkUploadException (base)
    ├── SchemaMismatchError
    ├── ExecutionFault
    │   ├── StagingError
    │   ├── UpdateError
    │   └── JobCancelledError
    ├── JobNotFoundError
    ├── CapacityError
    ├── InvalidJobTransitionError
    └── InvalidIdentifierError

Validation failures are not exceptions: they are accumulated as JobError
rows and judged against the error threshold once every column is checked.
"""

from typing import Optional, Dict, Any, Iterable, List
from datetime import datetime


class BulkUploadException(Exception):
    """
    Base exception for all bulk-upload errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (job id, column, chunk, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Schema Errors
# ============================================================================

class SchemaMismatchError(BulkUploadException):
    """
    Raised when the uploaded header (or the destination table) does not
    carry exactly the expected column set. Fatal and raised before staging.
    """

    def __init__(
        self,
        expected: Iterable[str],
        actual: Iterable[str],
        message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.expected: List[str] = sorted(expected)
        self.actual: List[str] = sorted(actual)
        self.missing: List[str] = sorted(set(self.expected) - set(self.actual))
        self.unexpected: List[str] = sorted(set(self.actual) - set(self.expected))

        context = dict(context or {})
        context["missing"] = self.missing
        context["unexpected"] = self.unexpected

        super().__init__(message or "Column set does not match the expected schema", context)


# ============================================================================
# Execution Faults
# ============================================================================

class ExecutionFault(BulkUploadException):
    """
    Base exception for faults that abort a running pipeline.

    Faults are never recovered: the job is marked FAILED and no error rows
    are recorded beyond what was already committed.
    """
    pass


class StagingError(ExecutionFault):
    """
    Raised when loading the upload into the staging table fails.

    Context should include:
        - job_id: Job being staged
        - file_path: Spooled upload path
    """
    pass


class UpdateError(ExecutionFault):
    """
    Raised when applying a chunk to the destination table fails.

    Context should include:
        - job_id: Job being applied
        - chunk_index: 1-based chunk index
        - row_range: (start, end) staging row ids
    """
    pass


class JobCancelledError(ExecutionFault):
    """Raised at a chunk boundary when the job's cancellation signal is set."""
    pass


# ============================================================================
# Orchestration Errors
# ============================================================================

class JobNotFoundError(BulkUploadException):
    """Raised when a job id is unknown to the job store."""
    pass


class CapacityError(BulkUploadException):
    """
    Raised when the worker pool cannot admit another job.

    Context should include:
        - policy: Admission policy in force (block, reject)
        - capacity: Worker count plus backlog size
    """
    pass


class InvalidJobTransitionError(BulkUploadException):
    """Raised when a status change would revisit or skip a job state."""
    pass


class InvalidIdentifierError(BulkUploadException):
    """Raised when a configured table or column name is not a safe SQL identifier."""
    pass
