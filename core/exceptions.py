"""
Custom exceptions for the service-request ETL pipeline with structured error context.

Each run-level exception carries context for debugging and monitoring and
an ``exit_code`` that the command line surfaces to the caller. Row-level
problems (decode/validation/duplicate) are never raised out of a chunk; they
are counted and quarantined instead.

Exception Hierarchy:
    ETLException (base, exit 1)
    ├── ExtractionError (exit 2)
    │   ├── CSVExtractionError
    │   └── ExtractionConfigError (exit 3)
    ├── TransformationError (exit 3)
    │   └── DecodeError
    ├── LoadError (exit 4)
    │   ├── DatabaseError
    │   │   ├── DatabaseConnectionError (retryable)
    │   │   └── ConstraintViolationError
    ├── WatermarkError (exit 7)
    │   ├── ConcurrentRunError
    │   └── StaleRunError
    ├── RefreshError (exit 5)
    ├── RunInterrupted (exit 130)
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class ExitCode:
    """Process exit codes for the command line."""

    SUCCESS = 0
    UNEXPECTED = 1
    EXTRACTION_FAILURE = 2
    VALIDATION_STAGE_FAILURE = 3
    LOAD_FAILURE = 4
    REFRESH_FAILURE = 5
    PARTIAL_SUCCESS = 6
    WATERMARK_FAILURE = 7
    INTERRUPTED = 130


class ETLException(Exception):
    """
    Base exception for all ETL-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (run_id, file path, chunk, etc.)
        original_exception: The original exception that was caught (if any)
        exit_code: Process exit code the CLI reports for this failure
    """

    exit_code = ExitCode.UNEXPECTED

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

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
            "context": {k: str(v) for k, v in self.context.items()},
            "timestamp": self.timestamp.isoformat(),
            "exit_code": self.exit_code,
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ETLException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Dropped or refused database connections
    - Connection pool timeouts
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(ETLException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Missing input columns
    - Constraint violations other than the key conflict
    """
    pass


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(ETLException):
    """Base exception for data extraction failures."""

    exit_code = ExitCode.EXTRACTION_FAILURE


class CSVExtractionError(ExtractionError):
    """
    Exception raised when the input file cannot be opened or read.

    Context should include:
        - file_path: Path to the CSV file
        - rows_read: Rows read before the failure (if applicable)
    """
    pass


class ExtractionConfigError(NonRetryableError, ExtractionError):
    """
    Exception raised when the input layout cannot be used at all.

    Raised for a header missing required columns or an invalid chunk size.

    Context should include:
        - file_path: Path to the CSV file
        - missing_columns: Required columns absent from the header
    """

    exit_code = ExitCode.VALIDATION_STAGE_FAILURE


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(ETLException):
    """Base exception for stage-level transformation failures."""

    exit_code = ExitCode.VALIDATION_STAGE_FAILURE


class DecodeError(TransformationError):
    """
    Raised by field coercion helpers when a value cannot be converted.

    The decoder catches it and turns it into a row-level rejection.
    """
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(ETLException):
    """Base exception for data loading failures."""

    exit_code = ExitCode.LOAD_FAILURE


class DatabaseError(LoadError):
    """
    Exception raised when database operations fail.

    Context should include:
        - operation: Type of database operation (INSERT, UPDATE, SELECT)
        - table_name: Name of the table
        - chunk_index: Index of the chunk being written (if applicable)
    """
    pass


class DatabaseConnectionError(RetryableError, DatabaseError):
    """Database connectivity errors; retried before they fail the run."""
    pass


class ConstraintViolationError(NonRetryableError, DatabaseError):
    """A constraint other than the unique_key conflict rejected the chunk."""
    pass


# ============================================================================
# Watermark Errors
# ============================================================================

class WatermarkError(ETLException):
    """
    Exception raised when run metadata cannot be read or written.

    Context should include:
        - run_id: Identifier of the affected run
        - operation: Operation that failed (read, start, complete, fail)
    """

    exit_code = ExitCode.WATERMARK_FAILURE


class ConcurrentRunError(NonRetryableError, WatermarkError):
    """Another pipeline run currently holds the run lock."""
    pass


class StaleRunError(NonRetryableError, WatermarkError):
    """
    A previous run is still marked ``running`` without holding the lock.

    The run most likely crashed; an operator must resolve it explicitly.
    """
    pass


# ============================================================================
# Refresh / Interrupt Errors
# ============================================================================

class RefreshError(ETLException):
    """Derived view refresh failed; committed loads are unaffected."""

    exit_code = ExitCode.REFRESH_FAILURE


class RunInterrupted(ETLException):
    """The run was stopped by an external signal between chunks."""

    exit_code = ExitCode.INTERRUPTED
