"""Global replay order across all exported items."""

from datetime import datetime
from typing import Dict, List, Optional, Tuple

from workitem_migrator.contract.models import WiRevision
from workitem_migrator.logging import get_logger


class RevisionReference:
    """Position of one revision in the replay order."""

    def __init__(self, origin_id: str, revision: WiRevision) -> None:
        self.origin_id = origin_id
        self.revision = revision

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        return (self.revision.time, self.origin_id)

    def __repr__(self) -> str:
        return f"RevisionReference({self.origin_id!r}, {self.revision.index})"


class ExecutionItem:
    """The unit handed to the agent."""

    def __init__(
        self, origin_id: str, revision: WiRevision, wi_id: Optional[int], wi_type: str
    ) -> None:
        self.origin_id = origin_id
        self.revision = revision
        self.wi_id = wi_id
        self.wi_type = wi_type

    def __str__(self) -> str:
        return f"{self.origin_id}/{self.revision.index}, {self.wi_id or 'new'}, {self.wi_type}"


class ExecutionPlan:
    """Queue of revisions in (time, origin id) order."""

    def __init__(self, references: List[RevisionReference], types: Dict[str, str], context) -> None:
        self._queue = references
        self._position = 0
        self._types = types
        self.context = context

    @property
    def item_count(self) -> int:
        return len({r.origin_id for r in self._queue})

    @property
    def revision_count(self) -> int:
        return len(self._queue)

    @property
    def remaining(self) -> int:
        return len(self._queue) - self._position

    def pop(self) -> Optional[ExecutionItem]:
        """Take the next revision.

        The work item id is read from the journal when popping, so items
        created by earlier revisions of this run are found.

        Returns:
            Next execution item, or None when the plan is exhausted
        """
        if self._position >= len(self._queue):
            return None

        reference = self._queue[self._position]
        self._position += 1
        return ExecutionItem(
            reference.origin_id,
            reference.revision,
            self.context.journal.get_migrated_id(reference.origin_id),
            self._types[reference.origin_id],
        )

    def __iter__(self):
        while True:
            item = self.pop()
            if item is None:
                return
            yield item


class ExecutionPlanBuilder:
    """Collects the revisions of every exported item into one plan."""

    def __init__(self, context) -> None:
        self.context = context
        self.logger = get_logger("plan_builder")

    async def build(self) -> ExecutionPlan:
        """Build the plan from the workspace.

        Returns:
            Plan sorted by revision time, ties by origin id
        """
        references: List[RevisionReference] = []
        types: Dict[str, str] = {}

        async for item in self.context.enumerate_all_items():
            types[item.origin_id] = item.type
            for revision in item.revisions:
                revision.parent_origin_id = item.origin_id
                references.append(RevisionReference(item.origin_id, revision))

        references.sort(key=lambda r: r.sort_key)

        plan = ExecutionPlan(references, types, self.context)
        self.logger.info(
            "execution_plan_built",
            items=plan.item_count,
            revisions=plan.revision_count,
        )
        return plan
