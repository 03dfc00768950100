"""Reconstruction of an issue's revision history from the Jira changelog.

The builder starts from the issue as it is now and walks the changelog from
the newest history to the oldest, recording every change as a revision and
undoing it on the snapshot. What remains at the end is the issue as it was
created, which becomes revision 0.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Generic, List, Optional, Set, TypeVar

from workitem_migrator.logging import get_logger
from workitem_migrator.utils.revision import next_valid_delta_rev, replace_html_elements

T = TypeVar("T")

logger = get_logger("revision_builder")

# Changelog field names that describe links instead of field values
LINK_FIELD = "Link"
EPIC_LINK_FIELD = "Epic Link"
PARENT_FIELDS = ("Parent", "IssueParentAssociation", "Parent Issue")
ATTACHMENT_FIELD = "Attachment"
IGNORED_FIELDS = ("Key", "project", "Workflow", "RemoteIssueLink", "WorklogId", "timespent")

EPIC_LINK_TYPE = "Epic"
PARENT_LINK_TYPE = "Parent"
COMMENT_FIELD = "comment"

# Rich text fields that Jira renders to HTML
RENDERED_FIELDS = ("description", "environment")

# Array fields whose changelog entries carry the whole value
_WHOLE_VALUE_SEPARATORS = {"labels": " "}

_SPRINT_NAME = re.compile(r"name=([^,\]]+)")


class RevisionChangeType(str, Enum):
    ADDED = "Added"
    REMOVED = "Removed"


class RevisionAction(Generic[T]):
    """An added or removed link or attachment."""

    def __init__(self, change_type: RevisionChangeType, value: T) -> None:
        self.change_type = change_type
        self.value = value

    def __repr__(self) -> str:
        return f"{self.change_type.value} {self.value}"


class JiraLink:
    """A link between two issues, seen from ``source_item``."""

    def __init__(
        self, source_item: str, target_item: str, link_type: str, inward: bool = False
    ) -> None:
        self.source_item = source_item
        self.target_item = target_item
        self.link_type = link_type
        self.inward = inward

    def _key(self) -> tuple:
        return (self.source_item, self.target_item, self.link_type, self.inward)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, JiraLink) and self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __repr__(self) -> str:
        direction = "<-" if self.inward else "->"
        return f"[{self.link_type}] {self.source_item}{direction}{self.target_item}"


class JiraAttachment:
    """An issue attachment. Two attachments are equal when their ids are."""

    def __init__(
        self,
        id: str,
        filename: str,
        url: Optional[str] = None,
        local_path: Optional[Path] = None,
        comment: Optional[str] = None,
    ) -> None:
        self.id = id
        self.filename = filename
        self.url = url
        self.local_path = local_path
        self.comment = comment

    def __eq__(self, other: object) -> bool:
        return isinstance(other, JiraAttachment) and self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def __str__(self) -> str:
        return f"{self.id}/{self.filename}"

    __repr__ = __str__


class JiraSprint:
    """A sprint of an agile board."""

    def __init__(
        self,
        id: int,
        name: str,
        state: Optional[str] = None,
        goal: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        complete_date: Optional[datetime] = None,
    ) -> None:
        self.id = id
        self.name = name
        self.state = state
        self.goal = goal
        self.start_date = start_date
        self.end_date = end_date
        self.complete_date = complete_date

    @classmethod
    def from_rest(cls, data: Dict[str, Any]) -> "JiraSprint":
        return cls(
            id=data["id"],
            name=data.get("name", str(data["id"])),
            state=data.get("state"),
            goal=data.get("goal"),
            start_date=parse_jira_time(data.get("startDate")),
            end_date=parse_jira_time(data.get("endDate")),
            complete_date=parse_jira_time(data.get("completeDate")),
        )


class JiraRevision:
    """One change set of an issue."""

    def __init__(
        self,
        parent_item: "JiraItem",
        time: datetime,
        author: Optional[str] = None,
        fields: Optional[Dict[str, Any]] = None,
        link_actions: Optional[List[RevisionAction[JiraLink]]] = None,
        attachment_actions: Optional[List[RevisionAction[JiraAttachment]]] = None,
        index: int = 0,
    ) -> None:
        self.parent_item = parent_item
        self.time = time
        self.author = author
        self.fields: Dict[str, Any] = fields if fields is not None else {}
        self.link_actions: List[RevisionAction[JiraLink]] = link_actions or []
        self.attachment_actions: List[RevisionAction[JiraAttachment]] = attachment_actions or []
        self.index = index

    @property
    def origin_id(self) -> str:
        return self.parent_item.key

    @property
    def type(self) -> str:
        return self.parent_item.type

    def get_field_value(self, field: str) -> Any:
        """Get a field's value as of this revision.

        Walks the item's revisions from this one back to revision 0 and
        returns the value of the first revision that changed the field.

        Args:
            field: Jira field id

        Returns:
            Field value or None if no revision up to this one set it
        """
        for revision in reversed(self.parent_item.revisions):
            if revision.index > self.index:
                continue
            if field in revision.fields:
                return revision.fields[field]
        return None

    def __repr__(self) -> str:
        return f"JiraRevision({self.origin_id!r}, index={self.index}, time={self.time.isoformat()})"


class JiraItem:
    """A Jira issue with its reconstructed revisions."""

    def __init__(self, key: str, type: str, remote_issue: Optional[Dict[str, Any]] = None) -> None:
        self.key = key
        self.type = type
        self.remote_issue = remote_issue or {}
        self.revisions: List[JiraRevision] = []

    @classmethod
    async def create_from_rest(cls, key: str, provider: Any) -> Optional["JiraItem"]:
        """Download an issue and rebuild its revisions.

        Args:
            key: Issue key
            provider: JiraProvider

        Returns:
            Item, or None if the issue does not exist
        """
        issue = await provider.download_issue(key)
        if not issue:
            logger.warning("issue_not_found", key=key)
            return None

        fields = issue.get("fields", {})
        item = cls(issue.get("key", key), (fields.get("issuetype") or {}).get("name", ""), issue)

        histories = await provider.download_changelog(item.key, issue)
        comments = await provider.download_comments(item.key)

        builder = _RevisionBuilder(item, provider)
        item.revisions = builder.build(histories, comments)

        await item._download_attachments(provider)

        logger.debug(
            "issue_revisions_built",
            key=item.key,
            revisions=len(item.revisions),
            histories=len(histories),
            comments=len(comments),
        )
        return item

    async def _download_attachments(self, provider: Any) -> None:
        """Fetch added attachments, dropping the ones that cannot be fetched."""
        available: Dict[str, bool] = {}
        for revision in self.revisions:
            kept = []
            for action in revision.attachment_actions:
                attachment = action.value
                if action.change_type == RevisionChangeType.ADDED:
                    if attachment.id not in available:
                        available[attachment.id] = await provider.download_attachment(attachment)
                    if not available[attachment.id]:
                        continue
                kept.append(action)
            revision.attachment_actions = kept

    def __repr__(self) -> str:
        return f"JiraItem({self.key!r}, type={self.type!r}, revisions={len(self.revisions)})"


class _RevisionBuilder:
    """Walks one issue's changelog backwards."""

    def __init__(self, item: JiraItem, provider: Any) -> None:
        self.item = item
        self.provider = provider
        self.settings = provider.settings
        self.epic_link_id = provider.get_custom_id(self.settings.epic_link_field)
        self.sprint_id = provider.get_custom_id(self.settings.sprint_field)

    def build(
        self, histories: List[Dict[str, Any]], comments: List[Dict[str, Any]]
    ) -> List[JiraRevision]:
        issue = self.item.remote_issue
        fields = issue.get("fields", {})

        snapshot = self._current_fields(fields)
        links: Set[JiraLink] = set(self._current_links(fields))
        attachments: Dict[str, JiraAttachment] = {
            a.id: a for a in self._current_attachments(fields)
        }

        changes: List[JiraRevision] = []
        for history in reversed(histories):
            changes.append(self._undo_history(history, snapshot, links, attachments))
        changes.reverse()

        created = parse_jira_time(fields.get("created")) or (
            changes[0].time if changes else datetime.now(timezone.utc)
        )
        author = self.provider.get_user_id(fields.get("reporter") or fields.get("creator"))
        first = JiraRevision(
            self.item,
            created,
            author,
            {k: v for k, v in snapshot.items() if not _is_empty(v)},
            [RevisionAction(RevisionChangeType.ADDED, link) for link in sorted(links, key=repr)],
            [
                RevisionAction(RevisionChangeType.ADDED, a)
                for a in sorted(attachments.values(), key=lambda a: a.id)
            ],
        )

        revisions = [first] + changes + [self._comment_revision(c) for c in comments]
        # Stable: revision 0 stays first when a history shares its timestamp
        revisions.sort(key=lambda r: r.time)

        for index, revision in enumerate(revisions):
            if index > 0:
                revision.time = next_valid_delta_rev(revisions[index - 1].time, revision.time)
            revision.index = index

        self._apply_rendered_values(revisions)
        return revisions

    # Snapshot of the current state

    def _current_fields(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        snapshot: Dict[str, Any] = {}
        for field_id, value in fields.items():
            if field_id in ("issuelinks", "attachment", "comment", "parent", "worklog", "subtasks"):
                continue
            if field_id == self.epic_link_id:
                continue
            snapshot[field_id] = self._normalize(field_id, value)
        return snapshot

    def _normalize(self, field_id: str, value: Any) -> Any:
        if value is None:
            return None
        if field_id == self.sprint_id:
            return [_sprint_name(s) for s in value] if isinstance(value, list) else [_sprint_name(value)]
        if isinstance(value, dict):
            if "accountId" in value or "emailAddress" in value or "displayName" in value:
                return self.provider.get_user_id(value)
            return value.get("name") or value.get("value") or value.get("key")
        if isinstance(value, list):
            return [self._normalize(field_id, v) for v in value]
        return value

    def _current_links(self, fields: Dict[str, Any]) -> List[JiraLink]:
        key = self.item.key
        links = []
        for link in fields.get("issuelinks") or []:
            link_type = (link.get("type") or {}).get("name", "")
            if "outwardIssue" in link:
                links.append(JiraLink(key, link["outwardIssue"]["key"], link_type))
            elif "inwardIssue" in link:
                links.append(JiraLink(key, link["inwardIssue"]["key"], link_type, inward=True))

        if self.epic_link_id and fields.get(self.epic_link_id):
            links.append(JiraLink(key, fields[self.epic_link_id], EPIC_LINK_TYPE))

        parent = fields.get("parent")
        if parent and parent.get("key"):
            links.append(JiraLink(key, parent["key"], PARENT_LINK_TYPE))
        return links

    def _current_attachments(self, fields: Dict[str, Any]) -> List[JiraAttachment]:
        return [
            JiraAttachment(str(a["id"]), a.get("filename", str(a["id"])), url=a.get("content"))
            for a in fields.get("attachment") or []
        ]

    # Changelog

    def _undo_history(
        self,
        history: Dict[str, Any],
        snapshot: Dict[str, Any],
        links: Set[JiraLink],
        attachments: Dict[str, JiraAttachment],
    ) -> JiraRevision:
        revision = JiraRevision(
            self.item,
            parse_jira_time(history.get("created")) or datetime.now(timezone.utc),
            self.provider.get_user_id(history.get("author")),
        )

        for change in history.get("items", []):
            field_name = change.get("field", "")

            if field_name == LINK_FIELD:
                self._undo_link(revision, change, links)
            elif field_name == EPIC_LINK_FIELD:
                self._undo_simple_link(revision, change, links, EPIC_LINK_TYPE)
            elif field_name in PARENT_FIELDS:
                self._undo_simple_link(revision, change, links, PARENT_LINK_TYPE)
            elif field_name == ATTACHMENT_FIELD:
                self._undo_attachment(revision, change, attachments)
            elif field_name not in IGNORED_FIELDS:
                self._undo_field(revision, change, snapshot)

        return revision

    def _undo_field(
        self, revision: JiraRevision, change: Dict[str, Any], snapshot: Dict[str, Any]
    ) -> None:
        field_id = change.get("fieldId") or self.provider.get_custom_id(change.get("field", ""))
        if not field_id:
            logger.debug("changelog_field_unknown", key=self.item.key, field=change.get("field"))
            return

        schema_type = self.provider.get_field_schema_type(field_id)
        current = snapshot.get(field_id)

        if field_id == self.sprint_id or field_id in _WHOLE_VALUE_SEPARATORS:
            separator = _WHOLE_VALUE_SEPARATORS.get(field_id, ",")
            new_value = _split(change.get("toString"), separator)
            old_value = _split(change.get("fromString"), separator)
        elif schema_type == "array" or isinstance(current, list):
            # Multi-value fields log one value per changelog entry
            values = list(current or [])
            new_value = list(values)
            added, removed = change.get("toString"), change.get("fromString")
            if added and added in values:
                values.remove(added)
            if removed and removed not in values:
                values.append(removed)
            old_value = values
        elif schema_type == "user":
            new_value, old_value = change.get("to"), change.get("from")
        elif schema_type == "number":
            new_value = _number(change.get("to") or change.get("toString"))
            old_value = _number(change.get("from") or change.get("fromString"))
        elif schema_type in ("date", "datetime"):
            new_value = change.get("to") or change.get("toString")
            old_value = change.get("from") or change.get("fromString")
        else:
            new_value, old_value = change.get("toString"), change.get("fromString")

        # Within one history the first entry of a field is the newest
        revision.fields.setdefault(field_id, new_value)
        snapshot[field_id] = old_value

    def _undo_link(
        self, revision: JiraRevision, change: Dict[str, Any], links: Set[JiraLink]
    ) -> None:
        for target, text, change_type in (
            (change.get("to"), change.get("toString"), RevisionChangeType.ADDED),
            (change.get("from"), change.get("fromString"), RevisionChangeType.REMOVED),
        ):
            if not target:
                continue
            link = self._parse_link(target, text or "")
            if link is None:
                logger.warning(
                    "link_type_unknown", key=self.item.key, description=text, target=target
                )
                continue
            revision.link_actions.append(RevisionAction(change_type, link))
            if change_type == RevisionChangeType.ADDED:
                links.discard(link)
            else:
                links.add(link)

    def _parse_link(self, target: str, text: str) -> Optional[JiraLink]:
        """Find the link type from a changelog text like 'This issue blocks ABC-1'."""
        for link_type in self.provider.link_types:
            if link_type.get("outward") and f" {link_type['outward']} " in f" {text} ":
                return JiraLink(self.item.key, target, link_type["name"])
            if link_type.get("inward") and f" {link_type['inward']} " in f" {text} ":
                return JiraLink(self.item.key, target, link_type["name"], inward=True)
        return None

    def _undo_simple_link(
        self,
        revision: JiraRevision,
        change: Dict[str, Any],
        links: Set[JiraLink],
        link_type: str,
    ) -> None:
        added, removed = change.get("toString"), change.get("fromString")
        if added:
            link = JiraLink(self.item.key, added, link_type)
            revision.link_actions.append(RevisionAction(RevisionChangeType.ADDED, link))
            links.discard(link)
        if removed:
            link = JiraLink(self.item.key, removed, link_type)
            revision.link_actions.append(RevisionAction(RevisionChangeType.REMOVED, link))
            links.add(link)

    def _undo_attachment(
        self,
        revision: JiraRevision,
        change: Dict[str, Any],
        attachments: Dict[str, JiraAttachment],
    ) -> None:
        added_id, removed_id = change.get("to"), change.get("from")
        if added_id:
            attachment = attachments.pop(str(added_id), None) or JiraAttachment(
                str(added_id), change.get("toString") or str(added_id)
            )
            revision.attachment_actions.append(
                RevisionAction(RevisionChangeType.ADDED, attachment)
            )
        if removed_id:
            attachment = JiraAttachment(str(removed_id), change.get("fromString") or str(removed_id))
            revision.attachment_actions.append(
                RevisionAction(RevisionChangeType.REMOVED, attachment)
            )
            attachments[attachment.id] = attachment

    def _comment_revision(self, comment: Dict[str, Any]) -> JiraRevision:
        body = comment.get("renderedBody") or comment.get("body") or ""
        return JiraRevision(
            self.item,
            parse_jira_time(comment.get("created")) or datetime.now(timezone.utc),
            self.provider.get_user_id(comment.get("author")),
            {COMMENT_FIELD: replace_html_elements(body)},
        )

    def _apply_rendered_values(self, revisions: List[JiraRevision]) -> None:
        """Use rendered HTML for the latest value of rich text fields."""
        issue = self.item.remote_issue
        rendered = issue.get("renderedFields") or {}
        fields = issue.get("fields", {})

        for field_id in RENDERED_FIELDS:
            html = rendered.get(field_id)
            if not isinstance(html, str) or not html:
                continue
            for revision in reversed(revisions):
                if field_id in revision.fields:
                    if revision.fields[field_id] == fields.get(field_id):
                        revision.fields[field_id] = replace_html_elements(html)
                    break


def parse_jira_time(value: Optional[str]) -> Optional[datetime]:
    """Parse Jira timestamps such as ``2021-03-04T10:11:12.000+0100``."""
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%f%z")
    except ValueError:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []


def _split(value: Optional[str], separator: str) -> List[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(separator) if v.strip()]


def _number(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return int(number) if number.is_integer() else number


def _sprint_name(sprint: Any) -> str:
    if isinstance(sprint, dict):
        return sprint.get("name", "")
    match = _SPRINT_NAME.search(str(sprint))
    return match.group(1) if match else str(sprint)
