"""Source connector used by the revision builder and the mapper."""

from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from workitem_migrator.api.jira_client import JiraApiError, JiraClient
from workitem_migrator.config import JiraConfig
from workitem_migrator.logging import get_logger


class JiraProvider:
    """Jira access for export: issues, changelogs, metadata and attachments."""

    def __init__(
        self,
        client: JiraClient,
        settings: JiraConfig,
        attachments_dir: Path,
        download_attachments: bool = True,
    ) -> None:
        """Initialize the provider.

        Args:
            client: Open Jira client
            settings: Jira configuration
            attachments_dir: Folder receiving ``{id}/{filename}`` downloads
            download_attachments: Fetch attachment content
        """
        self.client = client
        self.settings = settings
        self.attachments_dir = attachments_dir
        self.download_attachments = download_attachments
        self.logger = get_logger("jira_provider")
        self._fields_by_id: Dict[str, Dict[str, Any]] = {}
        self._field_ids_by_name: Dict[str, str] = {}
        self.link_types: List[Dict[str, Any]] = []

    async def initialize(self) -> None:
        """Load field and link type metadata."""
        for field in await self.client.get_fields():
            self._fields_by_id[field["id"]] = field
            # First field wins when names collide
            self._field_ids_by_name.setdefault(field.get("name", ""), field["id"])
        self.link_types = await self.client.get_link_types()
        self.logger.info(
            "jira_metadata_loaded",
            fields=len(self._fields_by_id),
            link_types=len(self.link_types),
        )

    def get_custom_id(self, field_name: str) -> Optional[str]:
        """Resolve a field's stable id from its display name."""
        if field_name in self._fields_by_id:
            return field_name
        return self._field_ids_by_name.get(field_name)

    def get_field_schema_type(self, field_id: str) -> Optional[str]:
        field = self._fields_by_id.get(field_id)
        if not field:
            return None
        return (field.get("schema") or {}).get("type")

    def get_user_id(self, user: Optional[Dict[str, Any]]) -> Optional[str]:
        """Get the identity used for a Jira user object."""
        if not user:
            return None
        if self.settings.using_jira_cloud:
            return user.get("accountId") or user.get("emailAddress")
        return user.get("name") or user.get("key") or user.get("emailAddress")

    async def download_issue(self, key: str) -> Optional[Dict[str, Any]]:
        return await self.client.get_issue(key)

    async def download_changelog(self, key: str, issue: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Get the full changelog of an issue, oldest history first.

        The changelog embedded in the issue is used when complete.
        """
        embedded = issue.get("changelog") or {}
        histories = embedded.get("histories", [])
        if histories and embedded.get("total", len(histories)) <= len(histories):
            return sorted(histories, key=lambda h: h.get("created", ""))

        try:
            paged = [history async for history in self.client.iter_changelog(key)]
        except JiraApiError as e:
            if e.status_code != 404:
                raise
            # Older servers only expose the embedded changelog
            self.logger.warning("changelog_paging_unavailable", key=key)
            paged = histories
        return sorted(paged, key=lambda h: h.get("created", ""))

    async def download_comments(self, key: str) -> List[Dict[str, Any]]:
        return [comment async for comment in self.client.iter_comments(key)]

    async def enumerate_issue_keys(self, jql: Optional[str] = None) -> AsyncIterator[str]:
        async for key in self.client.iter_issue_keys(jql or self.settings.jql):
            yield key

    async def get_sprints(self, board_id: int) -> List[Dict[str, Any]]:
        return [sprint async for sprint in self.client.iter_sprints(board_id)]

    async def download_attachment(self, attachment: Any) -> bool:
        """Download the content of an attachment into the workspace.

        Args:
            attachment: JiraAttachment; ``local_path`` is set on success

        Returns:
            True if the file is available locally
        """
        destination = self.attachments_dir / attachment.id / attachment.filename
        if destination.exists():
            attachment.local_path = destination
            return True

        if not self.download_attachments or not attachment.url:
            self.logger.warning(
                "attachment_not_downloadable",
                attachment=str(attachment),
                reason="no content url" if not attachment.url else "downloads disabled",
            )
            return False

        try:
            await self.client.download_attachment(attachment.url, destination)
        except (httpx.HTTPError, OSError) as e:
            # A partial file would pass for a complete download next time
            destination.unlink(missing_ok=True)
            self.logger.warning(
                "attachment_download_failed",
                attachment=str(attachment),
                error=str(e),
            )
            return False

        attachment.local_path = destination
        return True
