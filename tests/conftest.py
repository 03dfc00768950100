"""Shared pytest fixtures and in-memory fakes for the migrator tests."""

import copy
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from workitem_migrator.api.devops_client import WorkItem
from workitem_migrator.config import (
    Config,
    DevOpsConfig,
    JiraConfig,
    MigrationConfig,
    WorkspaceConfig,
)
from workitem_migrator.context import MigrationContext
from workitem_migrator.utils.progress import ProgressTracker


def utc(*args: int) -> datetime:
    """Build an aware UTC datetime."""
    return datetime(*args, tzinfo=timezone.utc)


class FakeDevOpsClient:
    """In-memory stand-in for DevOpsClient.

    Work items are kept as raw API dicts and patches are applied the way the
    service applies them.
    """

    BASE_URL = "https://dev.azure.com/org"

    def __init__(self, project: Optional[str] = "Target") -> None:
        self.project = {"id": "p-1", "name": project} if project else None
        self.items: Dict[int, Dict[str, Any]] = {}
        self.patches: List[List[Dict[str, Any]]] = []
        self.uploads: List[Path] = []
        self.created_nodes: List[Dict[str, Any]] = []
        self.trees: Dict[str, Dict[str, Any]] = {
            "areas": {"name": "Target", "children": []},
            "iterations": {"name": "Target", "children": []},
        }
        self.missing_fetches = 0
        self.fetch_calls = 0
        self.operations: List[Dict[str, Any]] = []
        self._next_id = 100

    async def __aenter__(self) -> "FakeDevOpsClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        return None

    def work_item_url(self, wi_id: int) -> str:
        return f"{self.BASE_URL}/_apis/wit/workItems/{wi_id}"

    async def get_project(self, name: str) -> Optional[Dict[str, Any]]:
        return self.project

    async def get_processes(self) -> List[Dict[str, Any]]:
        return [{"id": "agile-id", "name": "Agile"}]

    async def queue_create_project(self, name: str, process_id: str) -> Dict[str, Any]:
        self.operations.append({"name": name, "process_id": process_id})
        return {"id": "op-1", "status": "queued"}

    async def get_operation(self, operation_id: str) -> Dict[str, Any]:
        return {"id": operation_id, "status": "inProgress"}

    async def get_work_item(self, wi_id: int) -> Optional[WorkItem]:
        self.fetch_calls += 1
        if self.missing_fetches > 0:
            self.missing_fetches -= 1
            return None
        data = self.items.get(wi_id)
        return WorkItem.from_api(copy.deepcopy(data)) if data else None

    async def create_work_item(self, wi_type: str, patch: List[Dict[str, Any]]) -> WorkItem:
        wi_id = self._next_id
        self._next_id += 1
        self.items[wi_id] = {
            "id": wi_id,
            "rev": 0,
            "url": self.work_item_url(wi_id),
            "fields": {"System.WorkItemType": wi_type},
            "relations": [],
        }
        return await self.update_work_item(wi_id, patch)

    async def update_work_item(self, wi_id: int, patch: List[Dict[str, Any]]) -> WorkItem:
        self.patches.append(patch)
        data = self.items[wi_id]
        for op in patch:
            path = op["path"]
            if path.startswith("/fields/"):
                name = path[len("/fields/"):]
                if op["op"] == "remove":
                    data["fields"].pop(name, None)
                else:
                    data["fields"][name] = op["value"]
            elif path == "/relations/-":
                data["relations"].append(copy.deepcopy(op["value"]))
            elif path.startswith("/relations/"):
                del data["relations"][int(path.rsplit("/", 1)[-1])]
        data["rev"] += 1
        return WorkItem.from_api(copy.deepcopy(data))

    async def get_classification_node(
        self, structure: str, path: str = "", depth: int = 1000
    ) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self.trees[structure])

    async def create_classification_node(
        self,
        structure: str,
        name: str,
        parent_path: str = "",
        start_date: Optional[datetime] = None,
        finish_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        node = {
            "structure": structure,
            "name": name,
            "parent_path": parent_path,
            "start_date": start_date,
            "finish_date": finish_date,
            "children": [],
        }
        self.created_nodes.append(node)
        return node

    async def upload_attachment(self, file_path: Path) -> Dict[str, Any]:
        if not file_path.exists():
            raise FileNotFoundError(f"Attachment file not found: {file_path}")
        self.uploads.append(file_path)
        return {"id": f"att-{len(self.uploads)}", "url": f"https://example.com/{file_path.name}"}


class FakeJiraProvider:
    """In-memory stand-in for JiraProvider."""

    def __init__(self, settings: JiraConfig, attachments_dir: Path) -> None:
        self.settings = settings
        self.attachments_dir = attachments_dir
        self.fields = {
            "summary": {"id": "summary", "name": "Summary", "schema": {"type": "string"}},
            "description": {
                "id": "description",
                "name": "Description",
                "schema": {"type": "string"},
            },
            "priority": {"id": "priority", "name": "Priority", "schema": {"type": "priority"}},
            "assignee": {"id": "assignee", "name": "Assignee", "schema": {"type": "user"}},
            "labels": {"id": "labels", "name": "Labels", "schema": {"type": "array"}},
            "status": {"id": "status", "name": "Status", "schema": {"type": "status"}},
            "customfield_10010": {
                "id": "customfield_10010",
                "name": "Sprint",
                "schema": {"type": "array"},
            },
            "customfield_10014": {
                "id": "customfield_10014",
                "name": "Epic Link",
                "schema": {"type": "any"},
            },
        }
        self.link_types = [
            {"name": "Blocks", "outward": "blocks", "inward": "is blocked by"},
            {"name": "Relates", "outward": "relates to", "inward": "relates to"},
        ]
        self.issues: Dict[str, Dict[str, Any]] = {}
        self.histories: Dict[str, List[Dict[str, Any]]] = {}
        self.comments: Dict[str, List[Dict[str, Any]]] = {}
        self.failed_downloads: set = set()

    def get_custom_id(self, field_name: str) -> Optional[str]:
        if field_name in self.fields:
            return field_name
        return next((k for k, f in self.fields.items() if f["name"] == field_name), None)

    def get_field_schema_type(self, field_id: str) -> Optional[str]:
        field = self.fields.get(field_id)
        return field["schema"]["type"] if field else None

    def get_user_id(self, user: Optional[Dict[str, Any]]) -> Optional[str]:
        if not user:
            return None
        return user.get("accountId") or user.get("name")

    async def download_issue(self, key: str) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self.issues.get(key))

    async def download_changelog(self, key: str, issue: Dict[str, Any]) -> List[Dict[str, Any]]:
        return sorted(self.histories.get(key, []), key=lambda h: h["created"])

    async def download_comments(self, key: str) -> List[Dict[str, Any]]:
        return list(self.comments.get(key, []))

    async def download_attachment(self, attachment: Any) -> bool:
        if attachment.id in self.failed_downloads:
            return False
        destination = self.attachments_dir / attachment.id / attachment.filename
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(b"content")
        attachment.local_path = destination
        return True


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Configuration pointing at a temporary workspace."""
    return Config(
        jira=JiraConfig(
            url="https://jira.example.com",
            user="tester",
            api_token="token",  # type: ignore
            project="PRJ",
        ),
        devops=DevOpsConfig(
            url=FakeDevOpsClient.BASE_URL,
            pat="pat",  # type: ignore
            project="Target",
        ),
        workspace=WorkspaceConfig(path=tmp_path / "workspace"),
        migration=MigrationConfig(
            fetch_retries=2,
            retry_pause_seconds=0,
            project_poll_interval=0,
            project_poll_timeout=0,
        ),
    )


@pytest.fixture
async def context(config: Config) -> MigrationContext:
    """Context with an initialized journal."""
    return await MigrationContext.create(config)


@pytest.fixture
def devops_client() -> FakeDevOpsClient:
    return FakeDevOpsClient()


@pytest.fixture
def jira_provider(config: Config) -> FakeJiraProvider:
    return FakeJiraProvider(config.jira, config.workspace.attachments_path)


@pytest.fixture
def quiet_progress() -> ProgressTracker:
    """Progress tracker without the live panel."""
    return ProgressTracker(live=False)
