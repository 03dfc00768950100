"""Work item helpers used by the replay agent."""

from pathlib import Path
from typing import Dict, List, Optional

from bs4 import BeautifulSoup

from workitem_migrator.api.devops_client import DevOpsClient, WorkItem, WorkItemRelation
from workitem_migrator.contract.fields import WiFieldReference, WiRelationType, WiType
from workitem_migrator.contract.models import (
    ReferenceChangeType,
    WiAttachment,
    WiLink,
    WiRevision,
)
from workitem_migrator.logging import get_logger
from workitem_migrator.utils.errors import ErrorHandler
from workitem_migrator.utils.revision import (
    file_reference_name,
    has_any_by_ref_name,
    iter_file_references,
)

CLOSED_STATES = ("Done", "Closed", "Resolved", "Removed")
INITIAL_STATES = ("New", "To Do", "Proposed")


class WitClientUtils:
    """Applies revision content to a work item through the DevOps client."""

    def __init__(
        self,
        client: DevOpsClient,
        journal,
        error_handler: ErrorHandler,
        ignore_failed_links: bool = False,
    ) -> None:
        """Initialize the helpers.

        Args:
            client: Open DevOps client
            journal: Journal used to resolve link targets and attachments
            error_handler: Severity-aware reporter
            ignore_failed_links: Report unresolved link targets as warnings
        """
        self.client = client
        self.journal = journal
        self.errors = error_handler
        self.ignore_failed_links = ignore_failed_links
        self.logger = get_logger("wit_utils")

    # Field preparation

    def ensure_date_fields(self, wi: WorkItem, rev: WiRevision) -> None:
        if rev.index == 0 and not has_any_by_ref_name(rev.fields, WiFieldReference.CREATED_DATE):
            wi.set_field(WiFieldReference.CREATED_DATE, rev.time)

    def ensure_author_fields(self, wi: WorkItem, rev: WiRevision) -> None:
        if not rev.author:
            return
        if rev.index == 0 and not has_any_by_ref_name(rev.fields, WiFieldReference.CREATED_BY):
            wi.set_field(WiFieldReference.CREATED_BY, rev.author)
        if not has_any_by_ref_name(rev.fields, WiFieldReference.CHANGED_BY):
            wi.set_field(WiFieldReference.CHANGED_BY, rev.author)

    def ensure_assignee_field(self, wi: WorkItem, rev: WiRevision) -> None:
        """Keep the current assignee when the revision does not change it."""
        if has_any_by_ref_name(rev.fields, WiFieldReference.ASSIGNED_TO):
            return
        current = wi.fields.get(WiFieldReference.ASSIGNED_TO)
        if isinstance(current, dict):
            current = current.get("uniqueName") or current.get("displayName")
        if current:
            wi.set_field(WiFieldReference.ASSIGNED_TO, current)

    def ensure_fields_on_state_change(self, wi: WorkItem, rev: WiRevision) -> None:
        """Clear or set closure metadata that the new state implies."""
        state_field = rev.get_field(WiFieldReference.STATE)
        if rev.index == 0 or state_field is None:
            return

        old_state = wi.fields.get(WiFieldReference.STATE) or ""
        new_state = state_field.raw or ""

        def clear(*names: str) -> None:
            for name in names:
                if not has_any_by_ref_name(rev.fields, name):
                    wi.set_field(name, None)

        if old_state in CLOSED_STATES and new_state not in CLOSED_STATES:
            clear(WiFieldReference.CLOSED_DATE, WiFieldReference.CLOSED_BY)
        if new_state in INITIAL_STATES:
            clear(WiFieldReference.ACTIVATED_DATE, WiFieldReference.ACTIVATED_BY)

        if new_state in CLOSED_STATES and old_state not in CLOSED_STATES:
            if not has_any_by_ref_name(rev.fields, WiFieldReference.CLOSED_DATE):
                wi.set_field(WiFieldReference.CLOSED_DATE, rev.time)
            if rev.author and not has_any_by_ref_name(rev.fields, WiFieldReference.CLOSED_BY):
                wi.set_field(WiFieldReference.CLOSED_BY, rev.author)

    def ensure_work_item_fields_initialized(self, wi: WorkItem, rev: WiRevision) -> None:
        """Give a new work item the fields the target requires."""
        if wi.id is not None:
            return

        if not has_any_by_ref_name(rev.fields, WiFieldReference.TITLE) and not wi.get_field(
            WiFieldReference.TITLE
        ):
            wi.set_field(WiFieldReference.TITLE, f"[{rev.parent_origin_id}]")

        text_field = self.rich_text_field(wi)
        if not has_any_by_ref_name(rev.fields, text_field) and wi.get_field(text_field) is None:
            wi.set_field(text_field, "")

    @staticmethod
    def rich_text_field(wi: WorkItem) -> str:
        if wi.type == WiType.BUG:
            return WiFieldReference.REPRO_STEPS
        return WiFieldReference.DESCRIPTION

    # Attachments

    async def apply_attachments(
        self, rev: WiRevision, wi: WorkItem, attachment_map: Dict[str, str]
    ) -> bool:
        """Add and remove attached files.

        Uploads are skipped for attachments the journal already knows.

        Args:
            rev: Revision being replayed
            wi: Target work item
            attachment_map: Filled with origin id to reference of each upload

        Returns:
            True if every attachment action was applied

        Raises:
            FileNotFoundError: If an attachment file is missing
        """
        success = True
        for att in rev.attachments:
            if att.change == ReferenceChangeType.ADDED:
                url = await self._resolve_reference(att)
                self._add_attachment(wi, att, url)
                attachment_map[att.att_origin_id] = url
            elif not self._remove_attachment(wi, att):
                self.errors.warning(
                    "attachment_to_remove_not_found",
                    revision=str(rev),
                    attachment=str(att),
                )
                success = False
        return success

    async def _resolve_reference(self, att: WiAttachment) -> str:
        if self.journal.is_attachment_migrated(att.att_origin_id):
            reference = self.journal.get_attachment_reference(att.att_origin_id)
            self.logger.debug("attachment_reused", attachment=str(att), url=reference)
            return reference

        result = await self.client.upload_attachment(Path(att.file_path))
        return result["url"]

    def _add_attachment(self, wi: WorkItem, att: WiAttachment, url: str) -> None:
        relation = WorkItemRelation(
            rel=WiRelationType.ATTACHED_FILE,
            url=url,
            attributes={"comment": f"{att.comment or ''}|{att.file_path}", "name": att.file_name},
        )
        if self.is_duplicate_work_item_link(wi.all_relations, relation):
            self.logger.debug("attachment_already_present", attachment=str(att))
            return
        wi.add_relation(relation)

    def _remove_attachment(self, wi: WorkItem, att: WiAttachment) -> bool:
        for relation in wi.all_relations:
            if relation.rel != WiRelationType.ATTACHED_FILE:
                continue
            if attachment_file_path(relation) == att.file_path:
                return wi.remove_relation(relation)
        return False

    # Links

    def add_link(self, link: WiLink, wi: WorkItem) -> bool:
        """Queue a link relation to an already migrated item.

        Returns:
            False if the target has no work item yet
        """
        target_id = link.target_wi_id or self.journal.get_migrated_id(link.target_origin_id)
        if target_id is None:
            self._report_link_failure("link_target_not_migrated", link)
            return False
        link.target_wi_id = target_id

        if wi.id is not None and target_id == wi.id:
            self.errors.warning("link_to_self_skipped", link=str(link))
            return False

        relation = WorkItemRelation(rel=link.wi_type, url=self.client.work_item_url(target_id))
        if self.is_duplicate_work_item_link(wi.all_relations, relation):
            self.logger.debug("link_already_present", link=str(link))
            return True

        wi.add_relation(relation)
        return True

    def remove_link(self, link: WiLink, wi: WorkItem) -> bool:
        """Queue the removal of a link relation.

        Returns:
            False if the target is unknown or no such relation exists
        """
        target_id = link.target_wi_id or self.journal.get_migrated_id(link.target_origin_id)
        if target_id is None:
            self._report_link_failure("link_target_not_migrated", link)
            return False

        url = self.client.work_item_url(target_id)
        for relation in wi.all_relations:
            if relation.rel == link.wi_type and relation.url == url:
                return wi.remove_relation(relation)

        self.errors.warning("link_to_remove_not_found", link=str(link))
        return False

    @staticmethod
    def is_duplicate_work_item_link(
        relations: List[WorkItemRelation], relation: WorkItemRelation
    ) -> bool:
        return any(r.rel == relation.rel and r.url == relation.url for r in relations)

    def _report_link_failure(self, event: str, link: WiLink) -> None:
        if self.ignore_failed_links:
            self.errors.warning(event, link=str(link))
        else:
            self.errors.error(event, link=str(link))

    # Text correction

    def correct_description(self, wi: WorkItem) -> bool:
        """Point file references in the description at attachment URLs.

        Only relations already saved on the server are used.

        Returns:
            True if the text changed
        """
        return self._correct_field(wi, self.rich_text_field(wi))

    def correct_comment(self, wi: WorkItem) -> bool:
        return self._correct_field(wi, WiFieldReference.HISTORY)

    def _correct_field(self, wi: WorkItem, field: str) -> bool:
        text = wi.get_field(field)
        if not text or not isinstance(text, str):
            return False

        corrected = correct_attachment_references(text, wi.relations)
        if corrected == text:
            return False

        wi.set_field(field, corrected)
        return True

    # Saving

    async def save_work_item(self, wi: WorkItem) -> WorkItem:
        """Send all queued changes as one request."""
        if wi.id is not None and not wi.is_dirty:
            return wi

        patch = wi.build_patch()
        if wi.id is None:
            saved = await self.client.create_work_item(wi.type, patch)
        else:
            saved = await self.client.update_work_item(wi.id, patch)
        wi.apply_saved(saved)

        self.logger.debug("work_item_saved", wi_id=wi.id, rev=wi.rev, operations=len(patch))
        return wi


def attachment_file_path(relation: WorkItemRelation) -> Optional[str]:
    """Get the source file path kept in an attachment relation comment."""
    comment = relation.attributes.get("comment") or ""
    if "|" not in comment:
        return None
    return comment.rsplit("|", 1)[-1]


def correct_attachment_references(text: str, relations: List[WorkItemRelation]) -> str:
    """Point image sources and links at the attachments they name.

    A ``src``/``href`` is rewritten when its file name equals the file name
    of an attachment relation. Values already pointing at an attachment
    are left alone.

    Args:
        text: HTML text
        relations: Saved relations of the work item

    Returns:
        Text with references pointing at the attachment URLs
    """
    url_map: Dict[str, str] = {}
    attachment_urls = set()
    for relation in relations:
        if relation.rel != WiRelationType.ATTACHED_FILE:
            continue
        attachment_urls.add(relation.url)
        file_path = attachment_file_path(relation)
        if file_path:
            # First relation wins for duplicate file names
            url_map.setdefault(file_reference_name(file_path), relation.url)
    if not url_map:
        return text

    soup = BeautifulSoup(text, "html.parser")
    changed = False

    for tag, attr in iter_file_references(soup):
        value = tag[attr]
        if value in attachment_urls:
            continue
        new_url = url_map.get(file_reference_name(value))
        if new_url:
            tag[attr] = new_url
            changed = True

    return str(soup) if changed else text
