"""
Exceptions for the migration orchestration engine.

Exception Hierarchy:
    MigrationError (base)
    +-- MigrationNotFoundError
    +-- BatchNotFoundError
    +-- ProjectBusyError
    +-- InvalidStatusTransitionError
    +-- PreflightFailure
    +-- ExecutionFailure
    |   +-- ValidationFailure
    |   +-- CancellationRequested
    +-- RollbackFailure
    +-- BatchAborted
    +-- CollaboratorUnavailableError

Error Classification:
    Every MigrationError carries an ErrorClassification (severity,
    recoverability, error code, suggested action). Transient errors are
    retried by ErrorHandler with exponential backoff; RollbackFailure is
    the only CRITICAL error and always escalates to operators.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar
from uuid import UUID

if TYPE_CHECKING:
    from migrator.models import BatchResult, MigrationStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Attributes:
        CRITICAL: The project may be in an undefined state; page a human.
        ERROR: A migration failed; its record explains why.
        WARNING: Worth watching, but handled automatically.
        INFO: Informational condition, not a failure.
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def should_alert(self) -> bool:
        """True for CRITICAL and ERROR levels."""
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """The corresponding Python logging level."""
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
        RECOVERABLE: The engine contains the failure (report or roll back).
        TRANSIENT: Temporary; retry with backoff.
        FATAL: No automatic recovery is possible.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for automatic retry of transient errors.

    Implements exponential backoff with jitter.

    Attributes:
        max_attempts: Maximum number of attempts (including the first).
        base_delay_ms: Base delay between retries in milliseconds.
        max_delay_ms: Maximum delay between retries in milliseconds.
        exponential_base: Base for exponential backoff.
        jitter_factor: Random jitter factor (0.0 to 1.0).
    """

    max_attempts: int = 3
    base_delay_ms: float = 100.0
    max_delay_ms: float = 30000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

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
            jitter = delay * self.jitter_factor * random.random()  # nosec B311 - retry jitter
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

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryConfig:
        """Create from dictionary."""
        return cls(
            max_attempts=data.get("max_attempts", 3),
            base_delay_ms=data.get("base_delay_ms", 100.0),
            max_delay_ms=data.get("max_delay_ms", 30000.0),
            exponential_base=data.get("exponential_base", 2.0),
            jitter_factor=data.get("jitter_factor", 0.1),
        )


TRANSIENT_RETRY_CONFIG = RetryConfig(
    max_attempts=5,
    base_delay_ms=100.0,
    max_delay_ms=30000.0,
    exponential_base=2.0,
    jitter_factor=0.1,
)


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
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert classification to dictionary for serialization."""
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config:
            result["retry_config"] = self.retry_config.to_dict()
        return result


class MigrationError(Exception):
    """
    Base exception for all migration engine errors.

    Attributes:
        message: Human-readable error description.
        plan_id: The plan involved, if applicable.
        project_id: The project involved, if applicable.
        suggested_action: Suggested action for recovery.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_ERROR",
        category="general",
        suggested_action="Review the migration log trail",
    )

    def __init__(
        self,
        message: str,
        *,
        plan_id: UUID | None = None,
        project_id: str | None = None,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.plan_id = plan_id
        self.project_id = project_id
        self.suggested_action = suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error string with context."""
        parts = [self.message]
        if self.plan_id:
            parts.append(f"plan_id={self.plan_id}")
        if self.project_id:
            parts.append(f"project_id={self.project_id}")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        """Error classification for this exception."""
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def retry_config(self) -> RetryConfig | None:
        return self.classification.retry_config

    def to_dict(self) -> dict[str, Any]:
        """Convert the exception to a dictionary for API responses and logging."""
        return {
            "message": self.message,
            "plan_id": str(self.plan_id) if self.plan_id else None,
            "project_id": self.project_id,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class MigrationNotFoundError(MigrationError):
    """Raised when no record exists for a plan id."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_NOT_FOUND",
        category="lookup",
        suggested_action="Verify the plan id is correct and the migration was submitted",
    )

    def __init__(self, plan_id: UUID) -> None:
        super().__init__(f"Migration not found: {plan_id}", plan_id=plan_id)


class BatchNotFoundError(MigrationError):
    """Raised when no bulk submission exists for a batch id."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="BATCH_NOT_FOUND",
        category="lookup",
        suggested_action="Verify the batch id returned by the bulk submission",
    )

    def __init__(self, batch_id: UUID) -> None:
        self.batch_id = batch_id
        super().__init__(f"Batch not found: {batch_id}")


class ProjectBusyError(MigrationError):
    """
    Raised when a project already has an active migration.

    No two migrations may run concurrently against the same project.

    Attributes:
        existing_plan_id: The plan currently holding the project.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="PROJECT_BUSY",
        category="state",
        suggested_action="Wait for the active migration to finish or cancel it first",
    )

    def __init__(self, project_id: str, existing_plan_id: UUID) -> None:
        self.existing_plan_id = existing_plan_id
        super().__init__(
            f"Active migration already exists for project {project_id}: {existing_plan_id}",
            plan_id=existing_plan_id,
            project_id=project_id,
        )


class InvalidStatusTransitionError(MigrationError):
    """
    Raised when a record transition is not an edge of the state graph.

    Attributes:
        current_status: The record's status.
        target_status: The status that was attempted.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_STATUS_TRANSITION",
        category="state",
        suggested_action="Review the migration state machine and ensure valid transitions",
    )

    def __init__(
        self,
        plan_id: UUID,
        current_status: MigrationStatus,
        target_status: MigrationStatus,
    ) -> None:
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Invalid status transition: {current_status.value} -> {target_status.value}",
            plan_id=plan_id,
        )


class PreflightFailure(MigrationError):
    """
    Raised when a plan fails its readiness checks.

    Nothing has been mutated yet, so the failure is only reported.

    Attributes:
        failed_checks: Names of the checks that failed.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="PREFLIGHT_FAILED",
        category="preflight",
        suggested_action="Resolve the failing readiness checks and resubmit",
    )

    def __init__(
        self,
        message: str,
        *,
        plan_id: UUID | None = None,
        project_id: str | None = None,
        failed_checks: list[str] | None = None,
    ) -> None:
        self.failed_checks = failed_checks or []
        super().__init__(message, plan_id=plan_id, project_id=project_id)


class ExecutionFailure(MigrationError):
    """
    Raised when a step fails after the backup exists.

    Attributes:
        stage: Stage marker where the failure happened.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="EXECUTION_FAILED",
        category="execution",
        suggested_action="Inspect the record's log trail; the engine rolled back if needed",
    )

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        plan_id: UUID | None = None,
        project_id: str | None = None,
    ) -> None:
        self.stage = stage
        super().__init__(message, plan_id=plan_id, project_id=project_id)


class ValidationFailure(ExecutionFailure):
    """
    Raised when the Validator rejects an environment.

    Treated exactly like any other ExecutionFailure.

    Attributes:
        reasons: Human-readable reasons for each failed check.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="VALIDATION_FAILED",
        category="validation",
        suggested_action="Compare source and destination data and fix the target version",
    )

    def __init__(
        self,
        reasons: list[str] | tuple[str, ...],
        *,
        stage: str | None = None,
        plan_id: UUID | None = None,
        project_id: str | None = None,
    ) -> None:
        self.reasons = list(reasons)
        super().__init__(
            "Validation failed: " + "; ".join(self.reasons),
            stage=stage,
            plan_id=plan_id,
            project_id=project_id,
        )


class CancellationRequested(ExecutionFailure):
    """Raised at a step boundary or health poll once a caller cancelled an in-flight plan."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.INFO,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CANCELLED",
        category="cancellation",
        suggested_action="None; the plan was rolled back at the caller's request",
    )


class RollbackFailure(MigrationError):
    """
    Raised when the rollback itself fails.

    This is the only fatal condition: the project may be in an undefined
    state and automated recovery is no longer possible.

    Attributes:
        cause: The exception that interrupted the rollback.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ROLLBACK_FAILED",
        category="rollback",
        suggested_action=(
            "Manual intervention required: restore the project from its backup "
            "and verify traffic routing"
        ),
    )

    def __init__(
        self,
        message: str,
        *,
        plan_id: UUID | None = None,
        project_id: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.cause = cause
        super().__init__(message, plan_id=plan_id, project_id=project_id)


class BatchAborted(MigrationError):
    """
    Raised by BatchResult.raise_for_abort() when dispatch was halted.

    Not a per-project error: it carries the partial result.

    Attributes:
        result: The partial BatchResult.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="BATCH_ABORTED",
        category="scheduling",
        suggested_action="Investigate the failed migrations before resubmitting the rest",
    )

    def __init__(self, result: BatchResult) -> None:
        self.result = result
        super().__init__(
            f"Batch {result.batch_id} aborted: {result.abort_reason or 'failure rate exceeded'}"
        )


class CollaboratorUnavailableError(MigrationError):
    """
    Raised by collaborators for temporary outages.

    The engine retries these with exponential backoff before treating
    them as step failures.

    Attributes:
        operation: The collaborator operation that failed.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="COLLABORATOR_UNAVAILABLE",
        category="connectivity",
        suggested_action="Check the collaborator service health",
        retry_config=TRANSIENT_RETRY_CONFIG,
    )

    def __init__(self, operation: str, message: str | None = None) -> None:
        self.operation = operation
        super().__init__(message or f"Collaborator unavailable during {operation}")


class ErrorHandler:
    """
    Executes collaborator calls with automatic retry for transient errors.

    Usage:
        >>> handler = ErrorHandler(retry_config=RetryConfig(max_attempts=3))
        >>> env = await handler.execute_with_retry(
        ...     lambda: provisioner.create(project_id, version),
        ...     operation_name="provision",
        ... )
    """

    def __init__(
        self,
        retry_config: RetryConfig | None = None,
        on_retry: Callable[[str, int, Exception, float], None] | None = None,
    ) -> None:
        """
        Initialize the error handler.

        Args:
            retry_config: Retry configuration (defaults to TRANSIENT_RETRY_CONFIG).
            on_retry: Callback invoked before each retry
                (operation_name, attempt, exception, delay_ms).
        """
        self.retry_config = retry_config or TRANSIENT_RETRY_CONFIG
        self.on_retry = on_retry

    async def execute_with_retry(
        self,
        operation: Callable[[], Coroutine[Any, Any, T]],
        operation_name: str,
        *,
        plan_id: UUID | None = None,
    ) -> T:
        """
        Execute an operation, retrying transient MigrationErrors.

        Args:
            operation: Async callable to execute.
            operation_name: Name for logging.
            plan_id: Optional plan id for log context.

        Returns:
            The result of the operation.

        Raises:
            MigrationError: If retries are exhausted or the error is not transient.
            Exception: Any non-migration exception, unchanged.
        """
        attempt = 0
        while True:
            try:
                result = await operation()
            except MigrationError as e:
                if not e.recoverability.should_retry:
                    raise
                if attempt + 1 >= self.retry_config.max_attempts:
                    logger.error(
                        "Exhausted %d attempts for '%s' (plan %s): %s",
                        self.retry_config.max_attempts,
                        operation_name,
                        plan_id,
                        e.message,
                    )
                    raise
                delay_ms = self.retry_config.get_delay_ms(attempt)
                logger.warning(
                    "Transient error in '%s' (attempt %d/%d): %s. Retrying in %.2fs",
                    operation_name,
                    attempt + 1,
                    self.retry_config.max_attempts,
                    e.message,
                    delay_ms / 1000.0,
                )
                if self.on_retry:
                    self.on_retry(operation_name, attempt, e, delay_ms)
                await asyncio.sleep(delay_ms / 1000.0)
                attempt += 1
            else:
                if attempt > 0:
                    logger.info(
                        "Operation '%s' succeeded after %d retries",
                        operation_name,
                        attempt,
                    )
                return result


def classify_exception(exc: BaseException) -> ErrorClassification:
    """
    Classify any exception.

    For MigrationError subclasses, returns their specific classification.
    For other exceptions, returns a generic classification.
    """
    if isinstance(exc, MigrationError):
        return exc.classification

    return ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNKNOWN_ERROR",
        category="unknown",
        suggested_action="An unexpected error occurred. Review logs.",
    )


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "TRANSIENT_RETRY_CONFIG",
    "MigrationError",
    "MigrationNotFoundError",
    "BatchNotFoundError",
    "ProjectBusyError",
    "InvalidStatusTransitionError",
    "PreflightFailure",
    "ExecutionFailure",
    "ValidationFailure",
    "CancellationRequested",
    "RollbackFailure",
    "BatchAborted",
    "CollaboratorUnavailableError",
    "ErrorHandler",
    "classify_exception",
]
