"""
Exceptions raised by the tenant partitioning migration engine.

Exception Hierarchy:
    PartitionMigrationError (base)
    +-- FatalPreconditionError
    |   +-- MalformedMappingSourceError
    |   +-- MissingOrganizationsError
    |   +-- MigrationLockError
    +-- TableOperationError
    +-- DegradedStrategyError
    +-- DistributionAmbiguityError
    +-- IdentifierNotAllowedError

Only FatalPreconditionError subclasses abort a run. Every other error is
caught at the table or statement boundary, logged at the severity carried by
its classification, and recorded in the run statistics.

Error Classification System:
    - ErrorSeverity: CRITICAL, ERROR, WARNING, INFO levels
    - ErrorRecoverability: RECOVERABLE, TRANSIENT, FATAL categories
    - ErrorClassification: Rich metadata for each error type
    - RetryConfig: Backoff schedule for retried per-organization updates
"""

from __future__ import annotations

import logging
import random
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Attributes:
        CRITICAL: The run cannot start or must stop.
        ERROR: A table or statement failed; the run continues.
        WARNING: Unexpected but resolved condition.
        INFO: Informational condition, not a failure.
    """

    CRITICAL = "critical"
    """The run cannot start or must stop."""

    ERROR = "error"
    """A table or statement failed; the run continues."""

    WARNING = "warning"
    """Unexpected but resolved condition."""

    INFO = "info"
    """Informational condition, not a failure."""

    @property
    def should_alert(self) -> bool:
        """
        Check if this severity level should trigger an alert.

        Returns:
            True for CRITICAL and ERROR levels.
        """
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """
        Get the corresponding Python logging level.

        Returns:
            Python logging level constant.
        """
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for migration errors.

    Attributes:
        RECOVERABLE: Re-running the engine after operator action resolves it.
        TRANSIENT: May succeed on an immediate retry.
        FATAL: The run must abort before any further mutation.
    """

    RECOVERABLE = "recoverable"
    """Re-running the engine after operator action resolves it."""

    TRANSIENT = "transient"
    """May succeed on an immediate retry."""

    FATAL = "fatal"
    """The run must abort before any further mutation."""

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT

    @property
    def should_abort(self) -> bool:
        """True only for FATAL errors."""
        return self == ErrorRecoverability.FATAL


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for retrying a failed statement.

    Implements exponential backoff with jitter.

    Attributes:
        max_attempts: Maximum number of attempts (including the first).
        base_delay_ms: Base delay between attempts in milliseconds.
        max_delay_ms: Maximum delay between attempts in milliseconds.
        exponential_base: Base for exponential backoff (default 2.0).
        jitter_factor: Random jitter factor (0.0 to 1.0, default 0.1).

    Example:
        >>> config = RetryConfig(max_attempts=3, base_delay_ms=100)
        >>> config.get_delay_ms(attempt=2)  # about 400ms plus jitter
    """

    max_attempts: int = 1
    """Maximum number of attempts (including the first)."""

    base_delay_ms: float = 100.0
    """Base delay between attempts in milliseconds."""

    max_delay_ms: float = 5000.0
    """Maximum delay between attempts in milliseconds."""

    exponential_base: float = 2.0
    """Base for exponential backoff."""

    jitter_factor: float = 0.1
    """Random jitter factor (0.0 to 1.0)."""

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be >= 1.0, got {self.exponential_base}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}")

    def get_delay_ms(self, attempt: int) -> float:
        """
        Calculate delay for a specific retry attempt.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in milliseconds before the next attempt.
        """
        delay = self.base_delay_ms * (self.exponential_base**attempt)

        if self.jitter_factor > 0:
            jitter = delay * self.jitter_factor * random.random()  # nosec B311 - retry jitter, not security
            delay = delay + jitter

        return min(delay, self.max_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "exponential_base": self.exponential_base,
            "jitter_factor": self.jitter_factor,
        }


@dataclass(frozen=True)
class ErrorClassification:
    """
    Rich metadata for error classification.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
        retry_config: Configuration for automatic retry (if applicable).
        metrics_labels: Labels for metrics instrumentation.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None
    metrics_labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert classification to dictionary for serialization.

        Returns:
            Dictionary representation of the classification.
        """
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config:
            result["retry_config"] = self.retry_config.to_dict()
        if self.metrics_labels:
            result["metrics_labels"] = self.metrics_labels
        return result


class PartitionMigrationError(Exception):
    """
    Base exception for all partitioning migration errors.

    Attributes:
        message: Human-readable error description.
        table: The table involved, if applicable.
        suggested_action: Suggested action for recovery.
        classification: Error classification metadata.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="PARTITION_MIGRATION_ERROR",
        category="general",
        suggested_action="Review migration logs and re-run the engine",
    )

    def __init__(
        self,
        message: str,
        *,
        table: str | None = None,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.table = table
        self.suggested_action = suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error string with context."""
        parts = [self.message]
        if self.table:
            parts.append(f"table={self.table}")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        """
        Get the error classification for this exception.

        Subclasses override _default_classification to provide
        specific classification metadata for their error type.
        """
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        """Get the severity level of this error."""
        return self.classification.severity

    @property
    def recoverability_type(self) -> ErrorRecoverability:
        """Get the recoverability classification of this error."""
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        """Get the unique error code for this exception."""
        return self.classification.error_code

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for serialization.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "message": self.message,
            "table": self.table,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class FatalPreconditionError(PartitionMigrationError):
    """
    Raised when a run-wide precondition does not hold.

    Raised before any mutation is issued. The orchestrator stops at the
    phase that raised it and the process exits non-zero.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="FATAL_PRECONDITION",
        category="precondition",
        suggested_action="Fix the reported precondition and start the run again",
    )


class MalformedMappingSourceError(FatalPreconditionError):
    """
    Raised when the organization mapping source cannot be used.

    Attributes:
        missing_columns: Required header names absent from the source.
        source: Description of the source (usually a file path).
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MALFORMED_MAPPING_SOURCE",
        category="mapping",
        suggested_action=(
            "The mapping file must have the header columns "
            "tenant_code, organization_code and organization_id."
        ),
    )

    def __init__(
        self,
        message: str,
        *,
        missing_columns: Iterable[str] = (),
        source: str | None = None,
    ) -> None:
        self.missing_columns = tuple(missing_columns)
        self.source = source
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.missing_columns:
            parts.append(f"missing_columns={', '.join(self.missing_columns)}")
        if self.source:
            parts.append(f"source={self.source}")
        return " ".join(parts)


class MissingOrganizationsError(FatalPreconditionError):
    """
    Raised when organization ids found in the database have no mapping.

    Attributes:
        organization_ids: The unmapped ids, sorted.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MISSING_ORGANIZATIONS",
        category="coverage",
        suggested_action="Add the listed organization ids to the mapping file",
    )

    def __init__(self, organization_ids: Iterable[str]) -> None:
        self.organization_ids = tuple(sorted(organization_ids))
        super().__init__(
            f"{len(self.organization_ids)} organization id(s) have no tenant mapping: "
            f"{', '.join(self.organization_ids)}"
        )


class MigrationLockError(FatalPreconditionError):
    """
    Raised when another run already holds the migration advisory lock.

    Attributes:
        key: The lock key that could not be acquired
        reason: Description of why acquisition failed
        timeout: The timeout value if timeout was the cause
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_LOCKED",
        category="lock",
        suggested_action="Wait for the other migration run to finish",
    )

    def __init__(
        self,
        key: str,
        reason: str,
        timeout: float | None = None,
    ) -> None:
        self.key = key
        self.reason = reason
        self.timeout = timeout
        super().__init__(f"Failed to acquire lock '{key}': {reason}")


class TableOperationError(PartitionMigrationError):
    """
    Raised when a single DDL or DML statement fails for a table.

    Attributes:
        operation: Short operation name (e.g. "rewrite_primary_key").
        statement_shape: The attempted SQL with whitespace collapsed.
        original_error: String form of the underlying database error.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="TABLE_OPERATION_FAILED",
        category="table_operation",
        suggested_action=(
            "Inspect the failing table, fix the conflicting data or object, "
            "and re-run the engine; completed work is skipped on re-run."
        ),
    )

    def __init__(
        self,
        table: str,
        operation: str,
        error: str,
        *,
        statement_shape: str | None = None,
    ) -> None:
        self.operation = operation
        self.statement_shape = statement_shape
        self.original_error = error
        super().__init__(f"{operation} failed: {error}", table=table)

    def __str__(self) -> str:
        parts = [self.message, f"table={self.table}"]
        if self.statement_shape:
            parts.append(f"sql={self.statement_shape}")
        return " ".join(parts)


class DegradedStrategyError(PartitionMigrationError):
    """
    Raised internally when the bulk backfill statement fails.

    Caught by the backfill engine, which switches the table to the
    per-organization strategy. Logged at INFO, never counted as a failure.

    Attributes:
        reason: Why the bulk statement could not be used.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.INFO,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="BACKFILL_DEGRADED",
        category="backfill",
        suggested_action="None required; per-organization updates are in use",
    )

    def __init__(self, table: str, reason: str) -> None:
        self.reason = reason
        super().__init__(f"bulk backfill unavailable: {reason}", table=table)


class DistributionAmbiguityError(PartitionMigrationError):
    """
    A distribution call reported an error but the table is distributed.

    Never raised out of the controller; it is built to carry the
    classification used when logging the resolved ambiguity.

    Attributes:
        reported_error: The error the conversion call reported.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="DISTRIBUTION_AMBIGUOUS",
        category="distribution",
        suggested_action="Check the table's shards; the catalog reports it distributed",
    )

    def __init__(self, table: str, reported_error: str) -> None:
        self.reported_error = reported_error
        super().__init__(
            f"distribution reported an error but the table is distributed: {reported_error}",
            table=table,
        )


class IdentifierNotAllowedError(PartitionMigrationError):
    """
    Raised when a SQL identifier is not on the statement builder's allow-list.

    Attributes:
        identifier: The rejected identifier.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="IDENTIFIER_NOT_ALLOWED",
        category="sql",
        suggested_action="Add the object to the table catalog before migrating it",
    )

    def __init__(self, identifier: str) -> None:
        self.identifier = identifier
        super().__init__(f"identifier {identifier!r} is not in the table catalog")


def classify_exception(exc: Exception) -> ErrorClassification:
    """
    Classify any exception and return its error classification.

    For PartitionMigrationError subclasses, returns their specific
    classification. Anything else (typically a database error) is treated
    as a recoverable table-level failure.

    Args:
        exc: The exception to classify.

    Returns:
        ErrorClassification for the exception.
    """
    if isinstance(exc, PartitionMigrationError):
        return exc.classification

    return ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="UNKNOWN_ERROR",
        category="unknown",
        suggested_action="An unexpected error occurred. Review logs and re-run the engine.",
    )


def log_error(log: logging.Logger, exc: Exception, context: str) -> None:
    """
    Log an exception at the level its classification calls for.

    Args:
        log: Logger to write to.
        exc: The exception being handled.
        context: Short description of what was being attempted.
    """
    classification = classify_exception(exc)
    log.log(
        classification.severity.log_level,
        "%s: %s [code=%s, severity=%s]",
        context,
        exc,
        classification.error_code,
        classification.severity.value,
        exc_info=classification.severity.should_alert,
    )


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "PartitionMigrationError",
    "FatalPreconditionError",
    "MalformedMappingSourceError",
    "MissingOrganizationsError",
    "MigrationLockError",
    "TableOperationError",
    "DegradedStrategyError",
    "DistributionAmbiguityError",
    "IdentifierNotAllowedError",
    "classify_exception",
    "log_error",
]
