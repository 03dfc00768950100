"""Structured logging configuration for the migration tool."""

import logging
import sys
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from rich.console import Console
from rich.logging import RichHandler

from workitem_migrator.config import LoggingConfig


class SessionCounter:
    """structlog processor counting warnings and errors of the current session."""

    def __init__(self) -> None:
        self.warnings = 0
        self.errors = 0

    def reset(self) -> None:
        self.warnings = 0
        self.errors = 0

    def __call__(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        if method_name == "warning":
            self.warnings += 1
        elif method_name in ("error", "critical", "exception"):
            self.errors += 1
        return event_dict


class MigrationLogger:
    """Centralized logging manager for the migration tool."""

    _instance: Optional["MigrationLogger"] = None
    _logger: Optional[structlog.BoundLogger] = None

    def __new__(cls) -> "MigrationLogger":
        """Ensure singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance.counter = SessionCounter()
            cls._instance._session_started = None
        return cls._instance

    def __init__(self) -> None:
        """Initialize the logger."""
        if self._logger is None:
            self._logger = structlog.get_logger()

    def configure(self, config: LoggingConfig) -> None:
        """Configure structured logging based on configuration.

        Args:
            config: Logging configuration
        """
        # Configure structlog processors
        processors = [
            self.counter,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
        ]

        if config.format == "json":
            processors.append(structlog.processors.JSONRenderer())
        else:
            processors.append(structlog.dev.ConsoleRenderer())

        # Configure structlog
        structlog.configure(
            processors=processors,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        # Configure Python logging
        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, config.level.value))

        # Remove existing handlers
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        # Add console handler if enabled
        if config.console:
            if config.format == "text":
                console_handler: logging.Handler = RichHandler(
                    console=Console(stderr=True),
                    show_time=False,
                    show_path=False,
                    rich_tracebacks=True,
                )
            else:
                console_handler = logging.StreamHandler(sys.stderr)

            console_handler.setLevel(getattr(logging, config.level.value))
            root_logger.addHandler(console_handler)

        # Add file handler if specified
        if config.file:
            file_path = Path(config.file)
            file_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = RotatingFileHandler(
                filename=str(file_path),
                maxBytes=config.rotation_size,
                backupCount=config.retention_days,
                encoding="utf-8",
            )
            file_handler.setLevel(getattr(logging, config.level.value))
            # structlog renders the message
            file_handler.setFormatter(logging.Formatter("%(message)s"))
            root_logger.addHandler(file_handler)

        # Update instance logger
        self._logger = structlog.get_logger()

    def get_logger(self, name: Optional[str] = None) -> structlog.BoundLogger:
        """Get a logger instance.

        Args:
            name: Optional logger name

        Returns:
            Bound logger instance
        """
        if self._logger is None:
            self._logger = structlog.get_logger()

        if name:
            return self._logger.bind(component=name)
        return self._logger

    def log_session_start(self, command: str, config: Dict[str, Any]) -> None:
        """Log the header of an export or import session.

        Args:
            command: Session command (export or import)
            config: Configuration without secrets
        """
        self.counter.reset()
        self._session_started = time.monotonic()
        self._logger.info(
            "session_started",
            command=command,
            timestamp=datetime.now(timezone.utc).isoformat(),
            config=config,
        )

    def log_session_end(self, command: str, items: int, revisions: int) -> Dict[str, Any]:
        """Log the session summary.

        Args:
            command: Session command
            items: Number of items handled
            revisions: Number of revisions handled

        Returns:
            Summary values
        """
        elapsed = 0.0
        if self._session_started is not None:
            elapsed = time.monotonic() - self._session_started

        summary = {
            "items": items,
            "revisions": revisions,
            "warnings": self.counter.warnings,
            "errors": self.counter.errors,
            "elapsed_seconds": round(elapsed, 2),
        }
        self._logger.info("session_ended", command=command, **summary)
        return summary

    def log_revision_processed(
        self,
        origin_id: str,
        index: int,
        wi_id: Optional[int],
        status: str,
        duration_ms: float,
    ) -> None:
        """Log revision processing event.

        Args:
            origin_id: Source item key
            index: Revision index
            wi_id: Target work item id
            status: Processing status
            duration_ms: Processing duration in milliseconds
        """
        self._logger.info(
            "revision_processed",
            origin_id=origin_id,
            index=index,
            wi_id=wi_id,
            status=status,
            duration_ms=round(duration_ms, 1),
        )

    def log_api_request(
        self,
        method: str,
        endpoint: str,
        status_code: Optional[int] = None,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
    ) -> None:
        """Log API request event.

        Args:
            method: HTTP method
            endpoint: API endpoint
            status_code: Response status code
            duration_ms: Request duration in milliseconds
            error: Error message if request failed
        """
        log_data: Dict[str, Any] = {"method": method, "endpoint": endpoint}

        if status_code:
            log_data["status_code"] = status_code
        if duration_ms:
            log_data["duration_ms"] = round(duration_ms, 1)

        if error:
            self._logger.error("api_request_failed", error=error, **log_data)
        else:
            self._logger.debug("api_request", **log_data)


# Global logger instance
logger = MigrationLogger()


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Get a configured logger instance.

    Args:
        name: Optional logger name/component

    Returns:
        Bound logger instance
    """
    return logger.get_logger(name)
