"""Jira to Azure DevOps work item migration tool.

Exports Jira issues with their full change history and replays every
revision, in time order, into Azure DevOps work items.
"""

__version__ = "1.0.0"

from workitem_migrator.config import Config, load_config
from workitem_migrator.core.orchestrator import MigrationOrchestrator

__all__ = ["Config", "load_config", "MigrationOrchestrator", "__version__"]
