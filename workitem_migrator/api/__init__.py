"""API clients for Jira and Azure DevOps."""

from workitem_migrator.api.devops_client import DevOpsClient, WorkItem
from workitem_migrator.api.jira_client import JiraClient

__all__ = ["DevOpsClient", "JiraClient", "WorkItem"]
