"""Persistence of revision records in the migration workspace."""

import re
from pathlib import Path
from typing import AsyncIterator, Optional

import aiofiles
from pydantic import ValidationError

from workitem_migrator.contract.models import WiItem, WiIteration
from workitem_migrator.logging import get_logger

# Stray escapes left behind by older exports
_UNICODE_ESCAPE = re.compile(r"\\u[0-9A-Fa-f]{4}")


class WiItemProvider:
    """Reads and writes one JSON record per item and per iteration."""

    def __init__(self, items_dir: Path, sprints_folder: str = "sprints") -> None:
        """Initialize the provider.

        Args:
            items_dir: Workspace directory holding ``{origin_id}.json`` files
            sprints_folder: Sub-folder holding ``{name}.json`` iteration files
        """
        self.items_dir = items_dir
        self.sprints_dir = items_dir / sprints_folder
        self.logger = get_logger("item_provider")

    def item_path(self, origin_id: str) -> Path:
        return self.items_dir / f"{origin_id}.json"

    def iteration_path(self, name: str) -> Path:
        return self.sprints_dir / f"{name}.json"

    async def save(self, item: WiItem) -> Path:
        """Persist an item.

        Args:
            item: Item to write

        Returns:
            Path of the written file
        """
        path = self.item_path(item.origin_id)
        await self._write(path, item.model_dump_json(indent=2))
        return path

    async def save_iteration(self, iteration: WiIteration) -> Path:
        path = self.iteration_path(iteration.name)
        await self._write(path, iteration.model_dump_json(indent=2))
        return path

    async def load(self, origin_id: str) -> WiItem:
        """Load an item by origin id.

        Args:
            origin_id: Source item key

        Returns:
            Item with ``parent_origin_id`` set on each revision

        Raises:
            FileNotFoundError: If the item was never exported
        """
        return await self.load_from_file(self.item_path(origin_id))

    async def load_from_file(self, path: Path) -> WiItem:
        content = await self._read(path)
        item = WiItem.model_validate_json(content)
        for rev in item.revisions:
            rev.parent_origin_id = item.origin_id
        return item

    async def load_iteration(self, name: str) -> Optional[WiIteration]:
        """Load an exported iteration, or None if there is none by that name."""
        path = self.iteration_path(name)
        if not path.exists():
            return None
        return WiIteration.model_validate_json(await self._read(path))

    async def enumerate_all_items(self) -> AsyncIterator[WiItem]:
        """Yield every readable item record of the workspace.

        Files that are not item records are skipped with a warning.
        """
        if not self.items_dir.exists():
            return

        for path in sorted(self.items_dir.glob("*.json")):
            try:
                yield await self.load_from_file(path)
            except (ValidationError, ValueError, OSError) as e:
                self.logger.warning(
                    "item_file_skipped",
                    path=str(path),
                    reason="perhaps not a migration file",
                    error=str(e),
                )

    async def _read(self, path: Path) -> str:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()

        if _UNICODE_ESCAPE.search(content):
            self.logger.warning("unicode_escapes_removed", path=str(path))
            content = _UNICODE_ESCAPE.sub("", content)
        return content

    async def _write(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(content)
