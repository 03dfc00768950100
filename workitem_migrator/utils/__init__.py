"""Utility modules for the migration tool."""

from workitem_migrator.utils.errors import (
    AbortMigrationError,
    ApiError,
    ErrorHandler,
    MigrationError,
    RecoverableError,
)
from workitem_migrator.utils.progress import ProgressTracker

__all__ = [
    "AbortMigrationError",
    "ApiError",
    "ErrorHandler",
    "MigrationError",
    "RecoverableError",
    "ProgressTracker",
]
