"""Replay agent applying one revision at a time to Azure DevOps."""

import asyncio
import re
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_attempt, wait_fixed

from workitem_migrator.api.devops_client import DevOpsClient, WorkItem
from workitem_migrator.config import Config
from workitem_migrator.contract.fields import WiFieldReference
from workitem_migrator.contract.models import ReferenceChangeType, WiRevision
from workitem_migrator.core.plan import ExecutionItem
from workitem_migrator.core.wit_utils import WitClientUtils
from workitem_migrator.logging import get_logger, logger as migration_logger
from workitem_migrator.utils.errors import (
    AbortMigrationError,
    ErrorHandler,
    ErrorType,
    RecoverableError,
)
from workitem_migrator.utils.revision import has_any_by_ref_name


class RevisionStage(str, Enum):
    """Progress of a single revision through the agent."""

    UNPROCESSED = "unprocessed"
    TARGET_RESOLVED = "target_resolved"
    FIELDS_APPLIED = "fields_applied"
    ATTACHMENTS_APPLIED = "attachments_applied"
    LINKS_APPLIED = "links_applied"
    TEXT_CORRECTED = "text_corrected"
    COMMITTED = "committed"


class ClassificationKind(str, Enum):
    """Classification trees, valued by their REST structure group."""

    AREA = "areas"
    ITERATION = "iterations"


class ClassificationCache:
    """Known area and iteration nodes, keyed by (kind, path).

    Paths are relative to the project root and use ``/`` as separator.
    A single lock covers the whole cache so two callers never create the
    same node.
    """

    def __init__(self, client: DevOpsClient, context) -> None:
        self.client = client
        self.context = context
        self.logger = get_logger("classification_cache")
        self._nodes: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def load(self, kind: ClassificationKind) -> int:
        """Read an existing tree into the cache.

        Returns:
            Number of nodes found below the root
        """
        root = await self.client.get_classification_node(kind.value, depth=1000)
        count = 0
        stack: List[Tuple[str, Dict[str, Any]]] = [
            (child["name"], child) for child in (root or {}).get("children", [])
        ]
        while stack:
            path, node = stack.pop()
            self._nodes[self._key(kind, path)] = node
            count += 1
            for child in node.get("children", []):
                stack.append((f"{path}/{child['name']}", child))

        self.logger.debug("classification_tree_loaded", kind=kind.value, nodes=count)
        return count

    def contains(self, kind: ClassificationKind, path: str) -> bool:
        return self._key(kind, path) in self._nodes

    async def ensure(self, kind: ClassificationKind, path: str) -> Dict[str, Any]:
        """Get a node, creating it and its missing parents.

        Args:
            kind: Area or iteration tree
            path: Node path below the project root

        Returns:
            The node as returned by the server
        """
        async with self._lock:
            return await self._ensure(kind, path)

    async def _ensure(self, kind: ClassificationKind, path: str) -> Dict[str, Any]:
        key = self._key(kind, path)
        if key in self._nodes:
            return self._nodes[key]

        parent, _, name = path.rpartition("/")
        if parent:
            await self._ensure(kind, parent)

        start_date = finish_date = None
        if kind == ClassificationKind.ITERATION:
            iteration = await self.context.get_iteration(path)
            if iteration:
                start_date = iteration.start_date
                finish_date = iteration.end_date

        node = await self.client.create_classification_node(
            kind.value, name, parent, start_date=start_date, finish_date=finish_date
        )
        self._nodes[key] = node
        self.logger.info("classification_node_created", kind=kind.value, path=path)
        return node

    @staticmethod
    def _key(kind: ClassificationKind, path: str) -> Tuple[str, str]:
        return (kind.value, path.lower())


class Agent:
    """Imports revisions into Azure DevOps work items."""

    def __init__(
        self,
        context,
        client: DevOpsClient,
        settings: Config,
        error_handler: ErrorHandler,
        project: Dict[str, Any],
    ) -> None:
        self.context = context
        self.client = client
        self.settings = settings
        self.errors = error_handler
        self.project = project
        self.logger = get_logger("agent")
        self.classifications = ClassificationCache(client, context)
        self.utils = WitClientUtils(
            client,
            context.journal,
            error_handler,
            ignore_failed_links=settings.devops.ignore_failed_links,
        )

    @property
    def project_name(self) -> str:
        return self.project.get("name") or self.settings.devops.project

    @classmethod
    async def initialize(
        cls,
        context,
        client: DevOpsClient,
        settings: Config,
        error_handler: Optional[ErrorHandler] = None,
        confirm: Optional[Callable[[str], bool]] = None,
    ) -> Optional["Agent"]:
        """Connect to the project and load its classification trees.

        Args:
            context: Migration context
            client: Open DevOps client
            settings: Migration configuration
            error_handler: Error handler shared with the caller
            confirm: Asked before creating a missing project; without it a
                missing project is not created

        Returns:
            Ready agent, or None if the project is not available
        """
        log = get_logger("agent")
        error_handler = error_handler or ErrorHandler(settings.migration.continue_on_critical)

        try:
            project = await cls._get_or_create_project(client, settings, confirm)
            if project is None:
                log.critical("project_not_available", project=settings.devops.project)
                return None

            agent = cls(context, client, settings, error_handler, project)
            areas = await agent.classifications.load(ClassificationKind.AREA)
            iterations = await agent.classifications.load(ClassificationKind.ITERATION)
        except Exception as e:
            log.critical(
                "agent_initialization_failed",
                project=settings.devops.project,
                error=str(e),
                exc_info=e,
            )
            return None

        log.info(
            "agent_initialized",
            project=agent.project_name,
            areas=areas,
            iterations=iterations,
        )
        return agent

    @staticmethod
    async def _get_or_create_project(
        client: DevOpsClient,
        settings: Config,
        confirm: Optional[Callable[[str], bool]],
    ) -> Optional[Dict[str, Any]]:
        log = get_logger("agent")
        name = settings.devops.project

        project = await client.get_project(name)
        if project:
            return project

        if confirm is None or not confirm(f"Project '{name}' does not exist. Create it?"):
            log.error("project_not_found", project=name)
            return None

        template = settings.devops.process_template
        processes = await client.get_processes()
        process = next((p for p in processes if p.get("name", "").lower() == template.lower()), None)
        if process is None:
            raise ValueError(f"Process template '{template}' not found")

        operation = await client.queue_create_project(name, process["id"])
        log.info("project_creation_queued", project=name, process=template)

        if not await Agent._wait_for_operation(client, operation["id"], settings):
            return None
        return await client.get_project(name)

    @staticmethod
    async def _wait_for_operation(
        client: DevOpsClient, operation_id: str, settings: Config
    ) -> bool:
        """Poll a queued operation until it finishes or the timeout passes."""
        log = get_logger("agent")
        interval = settings.migration.project_poll_interval
        deadline = time.monotonic() + settings.migration.project_poll_timeout

        while True:
            operation = await client.get_operation(operation_id)
            status = (operation or {}).get("status", "")
            if status == "succeeded":
                return True
            if status in ("failed", "cancelled"):
                log.error("operation_failed", operation_id=operation_id, status=status)
                return False
            if time.monotonic() >= deadline:
                log.error(
                    "operation_timeout",
                    operation_id=operation_id,
                    timeout_seconds=settings.migration.project_poll_timeout,
                )
                return False
            await asyncio.sleep(interval)

    async def resolve_work_item(self, item: ExecutionItem) -> WorkItem:
        """Fetch the target work item, or create a blank one.

        Raises:
            RecoverableError: If the item cannot be fetched after all attempts
        """
        if item.wi_id is None:
            return WorkItem(item.wi_type)

        retrying = AsyncRetrying(
            retry=retry_if_result(lambda wi: wi is None),
            stop=stop_after_attempt(self.settings.migration.fetch_retries),
            wait=wait_fixed(self.settings.migration.retry_pause_seconds),
        )
        try:
            return await retrying(self.client.get_work_item, item.wi_id)
        except RetryError as e:
            raise RecoverableError(
                f"Work item {item.wi_id} could not be fetched",
                error_type=ErrorType.API_ERROR,
                context={"origin_id": item.origin_id, "wi_id": item.wi_id},
            ) from e

    async def import_revision(self, item: ExecutionItem) -> bool:
        """Apply one revision and record it in the journal.

        Args:
            item: Revision to import with its resolved work item id

        Returns:
            True if the revision was saved and journaled

        Raises:
            AbortMigrationError: If the run must stop
        """
        rev = item.revision
        stage = RevisionStage.UNPROCESSED
        start_time = time.monotonic()
        incomplete = False

        try:
            wi = await self.resolve_work_item(item)
            stage = RevisionStage.TARGET_RESOLVED

            await self._ensure_classification_fields(wi, rev)
            self.utils.ensure_author_fields(wi, rev)
            self.utils.ensure_date_fields(wi, rev)
            self.utils.ensure_assignee_field(wi, rev)
            self.utils.ensure_fields_on_state_change(wi, rev)
            self.utils.ensure_work_item_fields_initialized(wi, rev)

            await self._apply_fields(wi, rev)
            stage = RevisionStage.FIELDS_APPLIED

            attachment_map: Dict[str, str] = {}
            if not await self.utils.apply_attachments(rev, wi, attachment_map):
                incomplete = True
            stage = RevisionStage.ATTACHMENTS_APPLIED

            if not self._apply_links(wi, rev):
                incomplete = True
            stage = RevisionStage.LINKS_APPLIED

            # Only revisions whose rich text names an attached file are corrected
            if not attachment_map:
                if rev.attachment_references:
                    self.utils.correct_description(wi)
                    self.utils.correct_comment(wi)
                stage = RevisionStage.TEXT_CORRECTED

            await self.utils.save_work_item(wi)
            if wi.id is None:
                raise AbortMigrationError(
                    "Work item has no id after save",
                    context={"revision": str(rev)},
                )

            for att_origin_id, reference in attachment_map.items():
                if not self.context.journal.is_attachment_migrated(att_origin_id):
                    await self.context.journal.mark_attachment_processed(att_origin_id, reference)

            if stage != RevisionStage.TEXT_CORRECTED:
                if rev.attachment_references and self.utils.correct_description(wi):
                    await self.utils.save_work_item(wi)
                stage = RevisionStage.TEXT_CORRECTED

            await self.context.journal.mark_rev_processed(item.origin_id, wi.id, rev.index)
            stage = RevisionStage.COMMITTED
        except AbortMigrationError:
            raise
        except Exception as e:
            await self.errors.handle_error(
                e,
                {"revision": str(rev), "wi_id": item.wi_id, "stage": stage.value},
            )
            migration_logger.log_revision_processed(
                item.origin_id,
                rev.index,
                item.wi_id,
                "failed",
                (time.monotonic() - start_time) * 1000,
            )
            return False

        if incomplete:
            self.errors.warning(
                "revision_partially_imported",
                revision=str(rev),
                wi_id=wi.id,
                message="not all changes were saved",
            )

        migration_logger.log_revision_processed(
            item.origin_id,
            rev.index,
            wi.id,
            "incomplete" if incomplete else "imported",
            (time.monotonic() - start_time) * 1000,
        )
        return True

    async def _ensure_classification_fields(self, wi: WorkItem, rev: WiRevision) -> None:
        """Place a new work item under the base area and iteration."""
        if rev.index != 0:
            return
        if not has_any_by_ref_name(rev.fields, WiFieldReference.AREA_PATH):
            wi.set_field(
                WiFieldReference.AREA_PATH,
                await self.classification_path(ClassificationKind.AREA, None),
            )
        if not has_any_by_ref_name(rev.fields, WiFieldReference.ITERATION_PATH):
            wi.set_field(
                WiFieldReference.ITERATION_PATH,
                await self.classification_path(ClassificationKind.ITERATION, None),
            )

    async def _apply_fields(self, wi: WorkItem, rev: WiRevision) -> None:
        for field in rev.fields:
            name = field.reference_name
            value = field.raw

            if name == WiFieldReference.CHANGED_DATE:
                continue
            if name == WiFieldReference.AREA_PATH:
                wi.set_field(name, await self.classification_path(ClassificationKind.AREA, value))
            elif name == WiFieldReference.ITERATION_PATH:
                wi.set_field(
                    name, await self.classification_path(ClassificationKind.ITERATION, value)
                )
            elif value is None or value == "":
                if name in WiFieldReference.CLEARABLE:
                    wi.set_field(name, None)
            else:
                wi.set_field(name, value)

        # A comment replayed twice would show up twice
        if not has_any_by_ref_name(rev.fields, WiFieldReference.HISTORY):
            wi.discard_field(WiFieldReference.HISTORY)

    async def classification_path(self, kind: ClassificationKind, value: Optional[str]) -> str:
        """Compose a field value with the base path and make sure the node exists.

        Args:
            kind: Area or iteration tree
            value: Path from the revision, may be empty

        Returns:
            Full path starting with the project name, ``\\`` separated
        """
        if kind == ClassificationKind.AREA:
            base = self.settings.devops.base_area_path
        else:
            base = self.settings.devops.base_iteration_path

        segments = [s for s in re.split(r"[\\/]", f"{base or ''}/{value or ''}") if s]
        if segments and segments[0].lower() == self.project_name.lower():
            segments = segments[1:]

        if segments:
            await self.classifications.ensure(kind, "/".join(segments))
        return "\\".join([self.project_name] + segments)

    def _apply_links(self, wi: WorkItem, rev: WiRevision) -> bool:
        success = True
        added: List[str] = []
        removed: List[str] = []

        for link in rev.links:
            if link.change == ReferenceChangeType.ADDED:
                if self.utils.add_link(link, wi):
                    added.append(f"{link.wi_type} {link.target_origin_id}")
                else:
                    success = False
            elif self.utils.remove_link(link, wi):
                removed.append(f"{link.wi_type} {link.target_origin_id}")
            else:
                success = False

        if (added or removed) and not has_any_by_ref_name(rev.fields, WiFieldReference.HISTORY):
            note = ["Imported link changes."]
            if added:
                note.append("Added link(s): " + "; ".join(added) + ".")
            if removed:
                note.append("Removed link(s): " + "; ".join(removed) + ".")
            wi.set_field(WiFieldReference.HISTORY, " ".join(note))
        return success
