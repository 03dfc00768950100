"""Core module for the migration tool."""

from workitem_migrator.core.journal import Journal, MigrationRun
from workitem_migrator.core.orchestrator import MigrationOrchestrator

__all__ = ["Journal", "MigrationRun", "MigrationOrchestrator"]
