"""Error taxonomy and handling for the migration run."""

import time
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from workitem_migrator.logging import get_logger


class ErrorType(str, Enum):
    """Error type classification."""

    NETWORK = "network"
    AUTHENTICATION = "authentication"
    API_ERROR = "api_error"
    FILE_NOT_FOUND = "file_not_found"
    VALIDATION = "validation"
    JOURNAL = "journal"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    """Error severity levels."""

    WARNING = "warning"  # Degraded continuation
    ERROR = "error"  # Operation inside a revision failed
    CRITICAL = "critical"  # Stop the run


class MigrationError(Exception):
    """Base exception for migration errors."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize migration error.

        Args:
            message: Error message
            error_type: Type of error
            severity: Error severity
            context: Additional context
        """
        super().__init__(message)
        self.error_type = error_type
        self.severity = severity
        self.context = context or {}


class RecoverableError(MigrationError):
    """Error limited to the current revision; the run goes on."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.UNKNOWN,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, error_type, ErrorSeverity.ERROR, context)


class ApiError(MigrationError):
    """HTTP error answered by the source or target system."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        error_type = ErrorType.API_ERROR
        if status_code in (401, 403):
            error_type = ErrorType.AUTHENTICATION
        super().__init__(message, error_type, ErrorSeverity.ERROR, context)
        self.status_code = status_code


class AbortMigrationError(MigrationError):
    """Stops the run. Never swallowed by per-revision handlers."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, ErrorType.UNKNOWN, ErrorSeverity.CRITICAL, context)


class ErrorHandler:
    """Centralized error reporting with the warning/error/critical taxonomy."""

    RECOVERY_STRATEGIES = {
        ErrorType.FILE_NOT_FOUND: "skip_revision",
        ErrorType.NETWORK: "skip_revision",
        ErrorType.API_ERROR: "skip_revision",
        ErrorType.VALIDATION: "skip_revision",
        ErrorType.JOURNAL: "skip_revision",
        ErrorType.AUTHENTICATION: "abort",
    }

    def __init__(self, continue_on_critical: bool = False) -> None:
        """Initialize error handler.

        Args:
            continue_on_critical: Log critical errors instead of aborting the run
        """
        self.continue_on_critical = continue_on_critical
        self.logger = get_logger("error_handler")
        self.error_counts: Dict[ErrorType, int] = {}
        self.severity_counts: Dict[ErrorSeverity, int] = {}
        self.error_log: List[Dict[str, Any]] = []

    def warning(self, event: str, **context: Any) -> None:
        """Report a degraded continuation."""
        self._record(ErrorSeverity.WARNING, event, context)
        self.logger.warning(event, **context)

    def error(self, event: str, **context: Any) -> None:
        """Report a failed operation inside a revision."""
        self._record(ErrorSeverity.ERROR, event, context)
        self.logger.error(event, **context)

    def critical(self, event: str, **context: Any) -> None:
        """Report an operator-significant failure.

        Raises:
            AbortMigrationError: Unless critical errors are configured to continue
        """
        self._record(ErrorSeverity.CRITICAL, event, context)
        self.logger.critical(event, **context)
        if not self.continue_on_critical:
            raise AbortMigrationError(event, context)

    def classify_error(self, error: Exception) -> ErrorType:
        """Classify an error by type.

        Args:
            error: Exception to classify

        Returns:
            Error type
        """
        if isinstance(error, MigrationError) and error.error_type != ErrorType.UNKNOWN:
            return error.error_type
        if isinstance(error, FileNotFoundError):
            return ErrorType.FILE_NOT_FOUND
        if isinstance(error, httpx.HTTPStatusError):
            if error.response.status_code in (401, 403):
                return ErrorType.AUTHENTICATION
            return ErrorType.API_ERROR
        if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError)):
            return ErrorType.NETWORK
        if isinstance(error, (ValueError, TypeError)):
            return ErrorType.VALIDATION

        error_type_str = type(error).__name__.lower()
        if any(keyword in error_type_str for keyword in ["sqlite", "database"]):
            return ErrorType.JOURNAL

        return ErrorType.UNKNOWN

    async def handle_error(
        self,
        error: Exception,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Handle an error raised while importing one revision.

        Args:
            error: Exception to handle
            context: Error context

        Returns:
            Recovery action taken

        Raises:
            AbortMigrationError: Re-raised unchanged
        """
        if isinstance(error, AbortMigrationError):
            raise error

        error_type = self.classify_error(error)
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

        if error_type == ErrorType.FILE_NOT_FOUND:
            self.error("file_not_found", error=str(error), **(context or {}))
            return "skip_revision"

        strategy = self.RECOVERY_STRATEGIES.get(error_type, "skip_revision")
        self.log_error(error, error_type, ErrorSeverity.ERROR, context)

        if strategy == "abort":
            self.critical("authentication_failed", error=str(error), **(context or {}))
        return strategy

    def log_error(
        self,
        error: Exception,
        error_type: ErrorType,
        severity: ErrorSeverity,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log error details.

        Args:
            error: Exception
            error_type: Error type
            severity: Error severity
            context: Error context
        """
        error_record = {
            "timestamp": time.time(),
            "error_type": error_type.value,
            "severity": severity.value,
            "message": str(error),
            "exception_type": type(error).__name__,
            "context": context or {},
        }

        self.error_log.append(error_record)
        self.severity_counts[severity] = self.severity_counts.get(severity, 0) + 1

        self.logger.error("error_handled", **error_record, exc_info=error)

    def _record(self, severity: ErrorSeverity, event: str, context: Dict[str, Any]) -> None:
        self.severity_counts[severity] = self.severity_counts.get(severity, 0) + 1
        self.error_log.append(
            {
                "timestamp": time.time(),
                "severity": severity.value,
                "message": event,
                "context": context,
            }
        )

    @property
    def warning_count(self) -> int:
        return self.severity_counts.get(ErrorSeverity.WARNING, 0)

    @property
    def failure_count(self) -> int:
        return self.severity_counts.get(ErrorSeverity.ERROR, 0) + self.severity_counts.get(
            ErrorSeverity.CRITICAL, 0
        )

    def get_error_summary(self) -> Dict[str, Any]:
        """Get error summary statistics.

        Returns:
            Error summary
        """
        return {
            "total_errors": self.failure_count,
            "warnings": self.warning_count,
            "error_counts": {k.value: v for k, v in self.error_counts.items()},
            "severity_breakdown": {k.value: v for k, v in self.severity_counts.items()},
            "recent_errors": self.error_log[-10:],
        }

