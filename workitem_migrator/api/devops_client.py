"""Azure DevOps REST API client for work items and project structure."""

import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import aiofiles
import httpx
from pydantic import BaseModel, Field
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from workitem_migrator.config import DevOpsConfig
from workitem_migrator.logging import get_logger, logger as migration_logger
from workitem_migrator.utils.errors import ApiError


class DevOpsApiError(ApiError):
    """Azure DevOps API error."""


class WorkItemRelation(BaseModel):
    """A relation of a work item (link, attached file or hyperlink)."""

    rel: str
    url: str
    attributes: Dict[str, Any] = Field(default_factory=dict)


class WorkItem:
    """Local view of a work item collecting changes for one JSON patch.

    Field sets and removals, relation adds and relation removals are kept
    apart from the values last confirmed by the server until ``build_patch``
    turns them into a single request.
    """

    def __init__(
        self,
        wi_type: str,
        id: Optional[int] = None,
        rev: Optional[int] = None,
        fields: Optional[Dict[str, Any]] = None,
        relations: Optional[List[WorkItemRelation]] = None,
        url: Optional[str] = None,
    ) -> None:
        self.type = wi_type
        self.id = id
        self.rev = rev
        self.url = url
        self.fields: Dict[str, Any] = dict(fields or {})
        self.relations: List[WorkItemRelation] = list(relations or [])
        self._pending: Dict[str, Any] = {}
        self._added_relations: List[WorkItemRelation] = []
        self._removed_relations: Set[int] = set()

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "WorkItem":
        fields = data.get("fields", {})
        return cls(
            wi_type=fields.get("System.WorkItemType", ""),
            id=data.get("id"),
            rev=data.get("rev"),
            fields=fields,
            relations=[WorkItemRelation(**r) for r in data.get("relations") or []],
            url=data.get("url"),
        )

    def get_field(self, name: str) -> Any:
        """Get the effective value of a field, pending changes included."""
        if name in self._pending:
            return self._pending[name]
        return self.fields.get(name)

    def set_field(self, name: str, value: Any) -> None:
        """Queue a field value. ``None`` clears the field."""
        self._pending[name] = value

    def discard_field(self, name: str) -> None:
        """Drop a queued change of a field."""
        self._pending.pop(name, None)

    @property
    def all_relations(self) -> List[WorkItemRelation]:
        """Relations as they will be after the next save."""
        kept = [r for i, r in enumerate(self.relations) if i not in self._removed_relations]
        return kept + self._added_relations

    def add_relation(self, relation: WorkItemRelation) -> None:
        self._added_relations.append(relation)

    def remove_relation(self, relation: WorkItemRelation) -> bool:
        """Queue the removal of a relation.

        Returns:
            False if the relation is not present
        """
        for i, existing in enumerate(self._added_relations):
            if existing is relation:
                del self._added_relations[i]
                return True
        for i, existing in enumerate(self.relations):
            if existing is relation and i not in self._removed_relations:
                self._removed_relations.add(i)
                return True
        return False

    @property
    def is_dirty(self) -> bool:
        return bool(self._pending or self._added_relations or self._removed_relations)

    def build_patch(self) -> List[Dict[str, Any]]:
        """Build the JSON patch document for all queued changes."""
        ops: List[Dict[str, Any]] = []

        for name, value in self._pending.items():
            path = f"/fields/{name}"
            if value is None:
                # Removing a field the server never had is rejected
                if self.fields.get(name) is not None:
                    ops.append({"op": "remove", "path": path})
                continue
            if isinstance(value, datetime):
                value = value.isoformat()
            ops.append({"op": "add", "path": path, "value": value})

        # Highest index first so earlier indexes stay valid
        for index in sorted(self._removed_relations, reverse=True):
            ops.append({"op": "remove", "path": f"/relations/{index}"})

        for relation in self._added_relations:
            ops.append({"op": "add", "path": "/relations/-", "value": relation.model_dump()})

        return ops

    def apply_saved(self, saved: "WorkItem") -> None:
        """Take over the server state after a successful save."""
        self.id = saved.id
        self.rev = saved.rev
        self.url = saved.url
        self.fields = saved.fields
        self.relations = saved.relations
        self._pending.clear()
        self._added_relations.clear()
        self._removed_relations.clear()

    def __repr__(self) -> str:
        return f"WorkItem(type={self.type!r}, id={self.id!r}, rev={self.rev!r})"


class DevOpsClient:
    """Azure DevOps REST client with retry logic."""

    def __init__(self, config: DevOpsConfig) -> None:
        """Initialize the client.

        Args:
            config: Azure DevOps configuration
        """
        self.config = config
        self.logger = get_logger("devops_client")
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "DevOpsClient":
        """Enter async context."""
        self._client = httpx.AsyncClient(
            base_url=self.config.url.rstrip("/"),
            auth=("", self.config.pat.get_secret_value()),
            headers={"Accept": "application/json"},
            timeout=httpx.Timeout(self.config.timeout),
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Exit async context."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def project_url(self) -> str:
        return f"/{self.config.project}/_apis"

    def work_item_url(self, wi_id: int) -> str:
        """Get the absolute API URL used as relation target for a work item."""
        return f"{self.config.url.rstrip('/')}/_apis/wit/workItems/{wi_id}"

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=2, min=4, max=60),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
        **kwargs: Any,
    ) -> Optional[Any]:
        """Send a request and decode the JSON answer.

        Args:
            method: HTTP method
            url: Path relative to the organization URL
            params: Query parameters (api-version is added)
            allow_not_found: Return None on HTTP 404

        Returns:
            Decoded response body

        Raises:
            DevOpsApiError: On any other HTTP error status
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use async context manager.")

        params = dict(params or {})
        params.setdefault("api-version", self.config.api_version)

        start_time = time.monotonic()
        response = await self._client.request(method, url, params=params, **kwargs)
        duration_ms = (time.monotonic() - start_time) * 1000

        if allow_not_found and response.status_code == 404:
            return None

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            migration_logger.log_api_request(
                method, url, e.response.status_code, duration_ms, error=e.response.text
            )
            raise DevOpsApiError(
                f"HTTP {e.response.status_code} on {method} {url}: {e.response.text}",
                status_code=e.response.status_code,
            ) from e

        migration_logger.log_api_request(method, url, response.status_code, duration_ms)
        if not response.content:
            return None
        return response.json()

    # Projects

    async def get_project(self, name: str) -> Optional[Dict[str, Any]]:
        return await self._request("GET", f"/_apis/projects/{name}", allow_not_found=True)

    async def get_processes(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/_apis/process/processes")
        return data.get("value", []) if data else []

    async def queue_create_project(self, name: str, process_id: str) -> Dict[str, Any]:
        """Queue the creation of a project.

        Returns:
            Operation reference (``id``, ``status``)
        """
        body = {
            "name": name,
            "description": "Migrated from Jira",
            "capabilities": {
                "versioncontrol": {"sourceControlType": "Git"},
                "processTemplate": {"templateTypeId": process_id},
            },
        }
        return await self._request("POST", "/_apis/projects", json=body)

    async def get_operation(self, operation_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/_apis/operations/{operation_id}")

    # Work items

    async def get_work_item(self, wi_id: int) -> Optional[WorkItem]:
        """Fetch a work item with its relations, None if it does not exist."""
        data = await self._request(
            "GET",
            f"{self.project_url}/wit/workitems/{wi_id}",
            params={"$expand": "relations"},
            allow_not_found=True,
        )
        return WorkItem.from_api(data) if data else None

    async def create_work_item(self, wi_type: str, patch: List[Dict[str, Any]]) -> WorkItem:
        data = await self._request(
            "POST",
            f"{self.project_url}/wit/workitems/${wi_type}",
            params={"bypassRules": "true", "suppressNotifications": "true"},
            json=patch,
            headers={"Content-Type": "application/json-patch+json"},
        )
        return WorkItem.from_api(data)

    async def update_work_item(self, wi_id: int, patch: List[Dict[str, Any]]) -> WorkItem:
        data = await self._request(
            "PATCH",
            f"{self.project_url}/wit/workitems/{wi_id}",
            params={"bypassRules": "true", "suppressNotifications": "true", "$expand": "relations"},
            json=patch,
            headers={"Content-Type": "application/json-patch+json"},
        )
        return WorkItem.from_api(data)

    # Classification nodes

    async def get_classification_node(
        self, structure: str, path: str = "", depth: int = 1000
    ) -> Optional[Dict[str, Any]]:
        """Fetch a node of the area or iteration tree.

        Args:
            structure: ``areas`` or ``iterations``
            path: Node path below the root, empty for the root
            depth: Number of child levels to include
        """
        url = f"{self.project_url}/wit/classificationnodes/{structure}"
        if path:
            url = f"{url}/{path}"
        return await self._request("GET", url, params={"$depth": depth}, allow_not_found=True)

    async def create_classification_node(
        self,
        structure: str,
        name: str,
        parent_path: str = "",
        start_date: Optional[datetime] = None,
        finish_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Create (or update) a node below ``parent_path``."""
        body: Dict[str, Any] = {"name": name}
        if start_date or finish_date:
            body["attributes"] = {
                "startDate": start_date.isoformat() if start_date else None,
                "finishDate": finish_date.isoformat() if finish_date else None,
            }

        url = f"{self.project_url}/wit/classificationnodes/{structure}"
        if parent_path:
            url = f"{url}/{parent_path}"
        return await self._request("POST", url, json=body)

    # Attachments

    async def upload_attachment(self, file_path: Path) -> Dict[str, Any]:
        """Upload a file and get its attachment reference.

        Raises:
            FileNotFoundError: If the file does not exist
        """
        if not file_path.exists():
            raise FileNotFoundError(f"Attachment file not found: {file_path}")

        async with aiofiles.open(file_path, "rb") as f:
            content = await f.read()

        data = await self._request(
            "POST",
            f"{self.project_url}/wit/attachments",
            params={"fileName": file_path.name},
            content=content,
            headers={"Content-Type": "application/octet-stream"},
        )
        self.logger.debug(
            "attachment_uploaded",
            filename=file_path.name,
            size_bytes=len(content),
            url=data.get("url"),
        )
        return data
