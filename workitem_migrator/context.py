"""Per-run migration context shared by the plan builder and the agent."""

from pathlib import Path
from typing import AsyncIterator, Dict, Optional

from workitem_migrator.config import Config
from workitem_migrator.contract.models import WiItem, WiIteration
from workitem_migrator.contract.provider import WiItemProvider
from workitem_migrator.core.journal import Journal
from workitem_migrator.export.mapper import parse_user_mappings
from workitem_migrator.logging import get_logger


class MigrationContext:
    """Workspace paths, journal, item provider and user mapping of one run.

    Built once per run with ``create`` and handed to every component.
    """

    def __init__(
        self,
        config: Config,
        journal: Journal,
        provider: WiItemProvider,
        user_mapping: Dict[str, str],
        force_fresh: bool = False,
    ) -> None:
        self.config = config
        self.journal = journal
        self.provider = provider
        self.user_mapping = user_mapping
        self.force_fresh = force_fresh
        self.logger = get_logger("context")
        self._iterations: Dict[str, Optional[WiIteration]] = {}

    @classmethod
    async def create(cls, config: Config, force_fresh: bool = False) -> "MigrationContext":
        """Create the context and open the journal.

        Args:
            config: Migration configuration
            force_fresh: Ignore previous journal entries

        Returns:
            Initialized context
        """
        workspace = config.workspace
        workspace.path.mkdir(parents=True, exist_ok=True)

        journal = Journal(workspace.journal_path)
        await journal.initialize(fresh=force_fresh)

        provider = WiItemProvider(workspace.path, workspace.sprints_folder)
        user_mapping = parse_user_mappings(workspace.user_mapping_file)

        return cls(config, journal, provider, user_mapping, force_fresh)

    @property
    def workspace(self) -> Path:
        return self.config.workspace.path

    @property
    def attachments_dir(self) -> Path:
        return self.config.workspace.attachments_path

    async def enumerate_all_items(self) -> AsyncIterator[WiItem]:
        async for item in self.provider.enumerate_all_items():
            item.wi_id = self.journal.get_migrated_id(item.origin_id)
            yield item

    async def get_iteration(self, path: str) -> Optional[WiIteration]:
        """Get the exported iteration named by the last segment of a path."""
        name = path.replace("\\", "/").rstrip("/").rsplit("/", 1)[-1]
        if name not in self._iterations:
            self._iterations[name] = await self.provider.load_iteration(name)
        return self._iterations[name]
