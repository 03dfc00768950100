"""Migration orchestrator for Jira to Azure DevOps migration."""

import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from workitem_migrator.api.devops_client import DevOpsClient
from workitem_migrator.api.jira_client import JiraClient
from workitem_migrator.config import Config
from workitem_migrator.context import MigrationContext
from workitem_migrator.contract.provider import WiItemProvider
from workitem_migrator.core.agent import Agent
from workitem_migrator.core.journal import Journal, MigrationRun
from workitem_migrator.core.plan import ExecutionPlanBuilder
from workitem_migrator.export.mapper import JiraMapper, parse_user_mappings
from workitem_migrator.export.provider import JiraProvider
from workitem_migrator.export.revisions import JiraItem, JiraSprint
from workitem_migrator.logging import logger
from workitem_migrator.utils.errors import AbortMigrationError, ErrorHandler, MigrationError
from workitem_migrator.utils.progress import ProgressTracker


class MigrationOrchestrator:
    """Runs the export and import phases."""

    def __init__(
        self,
        config: Config,
        progress_tracker: Optional[ProgressTracker] = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Migration configuration
            progress_tracker: Progress display, a live one by default
        """
        self.config = config
        self.logger = logger.get_logger("orchestrator")
        self.progress_tracker = progress_tracker or ProgressTracker()
        self.error_handler = ErrorHandler(config.migration.continue_on_critical)
        self.current_run: Optional[MigrationRun] = None

    # Export

    async def export(self, force: bool = False) -> Dict[str, Any]:
        """Export Jira issues and sprints into the workspace.

        Args:
            force: Export again issues that already have a record

        Returns:
            Export statistics
        """
        workspace = self.config.workspace
        workspace.path.mkdir(parents=True, exist_ok=True)
        workspace.attachments_path.mkdir(parents=True, exist_ok=True)

        journal = Journal(workspace.journal_path)
        await journal.initialize()
        items = WiItemProvider(workspace.path, workspace.sprints_folder)

        logger.log_session_start("export", self.config.safe_dump())
        self.current_run = await journal.create_run(
            MigrationRun(
                command="export",
                started_at=datetime.now(timezone.utc),
                forced=force,
                configuration=self.config.safe_dump(),
            )
        )

        sprints = 0
        try:
            async with JiraClient(self.config.jira) as client:
                if not await client.test_connection():
                    raise MigrationError("Failed to connect to Jira")

                jira = JiraProvider(
                    client,
                    self.config.jira,
                    workspace.attachments_path,
                    self.config.migration.download_attachments,
                )
                await jira.initialize()
                mapper = JiraMapper(
                    jira,
                    self.config.mapping,
                    parse_user_mappings(workspace.user_mapping_file),
                )

                for field_name in (self.config.jira.epic_link_field, self.config.jira.sprint_field):
                    if jira.get_custom_id(field_name) is None:
                        self.error_handler.warning("custom_field_not_found", field=field_name)

                sprints = await self._export_sprints(jira, mapper, items)
                await self._export_items(jira, mapper, items, force)
        except AbortMigrationError as e:
            self.current_run.aborted = True
            self.current_run.error_log.append(str(e))
            self.logger.error("export_aborted", error=str(e))
        finally:
            progress = self.progress_tracker.finish()
            self.current_run.completed_at = datetime.now(timezone.utc)
            self.current_run.warnings = self.error_handler.warning_count
            await journal.update_run(self.current_run)

        summary = logger.log_session_end(
            "export", self.current_run.total_items, self.current_run.total_revisions
        )
        return {
            **summary,
            "status": "aborted" if self.current_run.aborted else "completed",
            "sprints": sprints,
            "items": self.current_run.total_items,
            "revisions": self.current_run.total_revisions,
            "skipped": progress.get("skipped_items", 0),
            "failed": progress.get("failed_items", 0),
        }

    async def _export_sprints(
        self, jira: JiraProvider, mapper: JiraMapper, items: WiItemProvider
    ) -> int:
        board_id = self.config.jira.board_id
        if not board_id:
            self.logger.info("sprint_export_skipped", reason="no board configured")
            return 0

        count = 0
        for data in await jira.get_sprints(board_id):
            iteration = mapper.map_sprint(JiraSprint.from_rest(data))
            if iteration is None:
                continue
            await items.save_iteration(iteration)
            count += 1

        self.logger.info("sprints_exported", board_id=board_id, sprints=count)
        return count

    async def _export_items(
        self,
        jira: JiraProvider,
        mapper: JiraMapper,
        items: WiItemProvider,
        force: bool,
    ) -> None:
        keys = [key async for key in jira.enumerate_issue_keys()]
        self.progress_tracker.initialize(len(keys), "Exporting issues...", unit="issues")

        for key in keys:
            if not force and items.item_path(key).exists():
                self.logger.debug("issue_already_exported", key=key)
                self.progress_tracker.advance("skipped", key)
                continue

            try:
                jira_item = await JiraItem.create_from_rest(key, jira)
                wi_item = mapper.map(jira_item) if jira_item else None
                if wi_item is None:
                    self.progress_tracker.advance("skipped", key)
                    continue

                await items.save(wi_item)
            except AbortMigrationError:
                raise
            except Exception as e:
                await self.error_handler.handle_error(e, {"key": key})
                self.progress_tracker.advance("failed", key)
                continue

            self.current_run.total_items += 1
            self.current_run.total_revisions += len(wi_item.revisions)
            self.logger.info("issue_exported", key=key, revisions=len(wi_item.revisions))
            self.progress_tracker.advance("completed", key)

    # Import

    async def replay(
        self,
        force: bool = False,
        confirm: Optional[Callable[[str], bool]] = None,
    ) -> Dict[str, Any]:
        """Replay the exported revisions into Azure DevOps.

        Args:
            force: Ignore the journal and import every revision again
            confirm: Asked before creating a missing project

        Returns:
            Import statistics

        Raises:
            MigrationError: If the target project is not available
        """
        start_time = time.monotonic()
        context = await MigrationContext.create(self.config, force_fresh=force)
        journal = context.journal

        plan = await ExecutionPlanBuilder(context).build()

        logger.log_session_start("import", self.config.safe_dump())
        self.current_run = await journal.create_run(
            MigrationRun(
                command="import",
                started_at=datetime.now(timezone.utc),
                forced=force,
                total_items=plan.item_count,
                total_revisions=plan.revision_count,
                configuration=self.config.safe_dump(),
            )
        )
        run = self.current_run

        try:
            async with DevOpsClient(self.config.devops) as client:
                agent = await Agent.initialize(
                    context, client, self.config, self.error_handler, confirm
                )
                if agent is None:
                    run.aborted = True
                    raise MigrationError(
                        f"Azure DevOps project '{self.config.devops.project}' is not available"
                    )

                self.progress_tracker.initialize(plan.revision_count, "Importing revisions...")
                for execution_item in plan:
                    label = f"{execution_item.origin_id}/{execution_item.revision.index}"
                    if not force and journal.is_item_migrated(
                        execution_item.origin_id, execution_item.revision.index
                    ):
                        run.skipped_revisions += 1
                        self.progress_tracker.advance("skipped", label)
                        continue

                    try:
                        imported = await agent.import_revision(execution_item)
                    except AbortMigrationError as e:
                        run.aborted = True
                        run.error_log.append(str(e))
                        self.logger.error("import_aborted", revision=label, error=str(e))
                        break
                    except Exception as e:
                        imported = False
                        run.error_log.append(f"{label}: {e}")
                        self.logger.error("revision_failed", revision=label, error=str(e), exc_info=e)

                    if imported:
                        run.processed_revisions += 1
                        self.progress_tracker.advance("completed", label)
                    else:
                        run.failed_revisions += 1
                        self.progress_tracker.advance("failed", label)
        finally:
            self.progress_tracker.finish()
            run.completed_at = datetime.now(timezone.utc)
            run.warnings = self.error_handler.warning_count
            await journal.update_run(run)

        summary = logger.log_session_end("import", plan.item_count, run.processed_revisions)
        return {
            **summary,
            "status": "aborted" if run.aborted else "completed",
            "items": plan.item_count,
            "revisions": plan.revision_count,
            "processed": run.processed_revisions,
            "skipped": run.skipped_revisions,
            "failed": run.failed_revisions,
            "duration_seconds": time.monotonic() - start_time,
            "error_summary": self.error_handler.get_error_summary(),
        }
