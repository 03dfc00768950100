"""Work item records exchanged between the export and import phases."""

from workitem_migrator.contract.models import (
    WiAttachment,
    WiField,
    WiItem,
    WiIteration,
    WiLink,
    WiRevision,
)
from workitem_migrator.contract.provider import WiItemProvider

__all__ = [
    "WiAttachment",
    "WiField",
    "WiItem",
    "WiItemProvider",
    "WiIteration",
    "WiLink",
    "WiRevision",
]
