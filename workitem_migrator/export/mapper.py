"""Translation of Jira revisions into work item revision records."""

from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from workitem_migrator.config import FieldMapEntry, MappingConfig
from workitem_migrator.contract.fields import WiFieldReference, WiRelationType
from workitem_migrator.contract.models import (
    IdentityValue,
    ReferenceChangeType,
    WiAttachment,
    WiField,
    WiItem,
    WiIteration,
    WiLink,
    WiRevision,
    field_value,
)
from workitem_migrator.export.revisions import (
    COMMENT_FIELD,
    EPIC_LINK_TYPE,
    PARENT_LINK_TYPE,
    JiraItem,
    JiraRevision,
    JiraSprint,
    RevisionChangeType,
)
from workitem_migrator.logging import get_logger
from workitem_migrator.utils.revision import referenced_file_names

DEFAULT_USER = "*"


def parse_user_mappings(path: Optional[Path]) -> Dict[str, str]:
    """Read ``source=target`` user mappings.

    Blank lines and lines starting with ``#`` are ignored.

    Args:
        path: Mapping file, may be None

    Returns:
        Source identity to target identity
    """
    mappings: Dict[str, str] = {}
    if not path:
        return mappings
    if not path.exists():
        get_logger("mapper").warning("user_mapping_file_missing", path=str(path))
        return mappings

    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        source, target = line.split("=", 1)
        mappings.setdefault(source.strip(), target.strip())
    return mappings


class BaseMapper:
    """User resolution and rule merging shared by mappers."""

    def __init__(self, user_mapping: Dict[str, str]) -> None:
        self.user_mapping = user_mapping
        self.logger = get_logger("mapper")

    def map_user(self, source_user: Optional[str]) -> Optional[str]:
        """Resolve a source identity through the user mapping.

        Unknown users fall back to the ``*`` entry, else to themselves; the
        fallback is cached so each user is reported once.
        """
        if not source_user:
            return None

        if source_user in self.user_mapping:
            return self.user_mapping[source_user]

        if DEFAULT_USER in self.user_mapping:
            target = self.user_mapping[DEFAULT_USER]
            self.logger.warning("user_mapped_to_default", user=source_user, target=target)
        else:
            target = source_user
            self.logger.warning("user_not_mapped", user=source_user)

        self.user_mapping[source_user] = target
        return target

    @staticmethod
    def merge_mapping(*mappings: Dict[str, Any]) -> Dict[str, Any]:
        """Merge mappings; for duplicate keys the first mapping wins."""
        merged: Dict[str, Any] = {}
        for mapping in mappings:
            for key, value in mapping.items():
                merged.setdefault(key, value)
        return merged


class FieldRule:
    """Source field and value function of one target field."""

    def __init__(self, source: str, mapper: Callable[[JiraRevision, Any], Any]) -> None:
        self.source = source
        self.mapper = mapper

    def __call__(self, revision: JiraRevision) -> Any:
        if self.source not in revision.fields:
            return _UNCHANGED
        return self.mapper(revision, revision.fields[self.source])


class _Unchanged:
    def __repr__(self) -> str:
        return "UNCHANGED"


_UNCHANGED = _Unchanged()

# Target field to rule
FieldMapping = Dict[str, FieldRule]

# Target identities of these fields are resolved through the user mapping
_USER_FIELDS = (
    WiFieldReference.ASSIGNED_TO,
    WiFieldReference.CREATED_BY,
    WiFieldReference.CHANGED_BY,
    WiFieldReference.ACTIVATED_BY,
    WiFieldReference.CLOSED_BY,
    WiFieldReference.RESOLVED_BY,
)


class JiraMapper(BaseMapper):
    """Maps Jira items and revisions to work item records."""

    def __init__(self, provider: Any, config: MappingConfig, user_mapping: Dict[str, str]) -> None:
        """Initialize the mapper.

        Args:
            provider: JiraProvider (settings and field id lookups)
            config: Type, field and link maps
            user_mapping: Source to target identities
        """
        super().__init__(user_mapping)
        self.provider = provider
        self.config = config
        self.type_map: Dict[str, str] = {t.source: t.target for t in config.type_map}
        self.link_map = {entry.source: entry for entry in config.link_map}
        self.field_mappings = self.initialize_field_mappings()

    # Field mappings

    def initialize_field_mappings(self) -> Dict[str, FieldMapping]:
        """Build the field mapping of every target type.

        Rules for all types are applied first, so they win over type
        specific rules for the same target field.

        Returns:
            Target type to (target field to rule)
        """
        result: Dict[str, FieldMapping] = {}
        for wi_type in sorted(set(self.type_map.values())):
            common: FieldMapping = {}
            specific: FieldMapping = {}
            for entry in self.config.field_map:
                if wi_type in entry.not_for:
                    continue
                if entry.is_common:
                    common.setdefault(entry.target, self._create_rule(entry))
                elif entry.applies_to(wi_type):
                    specific.setdefault(entry.target, self._create_rule(entry))
            result[wi_type] = self.merge_mapping(common, specific)
        return result

    def _create_rule(self, entry: FieldMapEntry) -> FieldRule:
        source = entry.source
        if entry.source_type == "name":
            source = self.provider.get_custom_id(entry.source) or entry.source

        value_mapper = self._value_mappers().get(entry.mapper or "MapValue")
        if value_mapper is None:
            raise ValueError(f"Unknown field mapper '{entry.mapper}' for {entry.target}")

        if not entry.mapping:
            return FieldRule(source, value_mapper)

        translation = entry.mapping

        def translate(revision: JiraRevision, value: Any) -> Any:
            mapped = value_mapper(revision, value)
            if mapped is None:
                return None
            return translation.get(str(mapped), mapped)

        return FieldRule(source, translate)

    def _value_mappers(self) -> Dict[str, Callable[[JiraRevision, Any], Any]]:
        return {
            "MapTitle": self.map_title,
            "MapTitleWithoutKey": self.map_title_without_key,
            "MapUser": lambda r, v: self.map_user(v),
            "MapSprint": self.map_sprint_field,
            "MapTags": self.map_tags,
            "MapArray": self.map_array,
            "MapValue": self.map_value,
            "MapRemainingWork": self.map_remaining_work,
            "MapRendered": self.map_rendered,
        }

    @staticmethod
    def map_title(revision: JiraRevision, value: Any) -> Optional[str]:
        if value is None:
            return None
        return f"[{revision.origin_id}] {value}"

    @staticmethod
    def map_title_without_key(revision: JiraRevision, value: Any) -> Optional[str]:
        return None if value is None else str(value)

    def map_sprint_field(self, revision: JiraRevision, value: Any) -> Optional[str]:
        """The last sprint of an issue becomes its iteration."""
        if not value:
            return None
        sprints = value if isinstance(value, list) else [value]
        return str(sprints[-1]).strip() or None

    @staticmethod
    def map_tags(revision: JiraRevision, value: Any) -> Optional[str]:
        if not value:
            return None
        tags = value if isinstance(value, list) else str(value).split(" ")
        return "; ".join(t for t in tags if t)

    @staticmethod
    def map_array(revision: JiraRevision, value: Any) -> Optional[str]:
        if not value:
            return None
        if isinstance(value, list):
            return ", ".join(str(v) for v in value)
        return str(value)

    @staticmethod
    def map_value(revision: JiraRevision, value: Any) -> Any:
        if isinstance(value, list):
            return ", ".join(str(v) for v in value) if value else None
        return value

    @staticmethod
    def map_remaining_work(revision: JiraRevision, value: Any) -> Optional[float]:
        """Jira logs seconds, the target expects hours."""
        if value in (None, ""):
            return None
        try:
            return round(float(value) / 3600, 2)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def map_rendered(revision: JiraRevision, value: Any) -> Optional[str]:
        return None if value is None else str(value)

    # Items and revisions

    def map(self, item: Optional[JiraItem]) -> Optional[WiItem]:
        """Map an item with all its revisions.

        Args:
            item: Source item

        Returns:
            Work item record, or None when the issue type is not mapped

        Raises:
            ValueError: If item is None
        """
        if item is None:
            raise ValueError("item must not be None")

        wi_type = self.type_map.get(item.type)
        if wi_type is None:
            self.logger.warning("issue_type_not_mapped", key=item.key, type=item.type)
            return None

        wi_item = WiItem(origin_id=item.key, type=wi_type)
        for revision in item.revisions:
            wi_revision = self.map_revision(revision, wi_type)
            if wi_revision is None:
                continue
            wi_revision.index = len(wi_item.revisions)
            wi_item.revisions.append(wi_revision)

        return wi_item

    def map_revision(self, revision: Optional[JiraRevision], wi_type: Optional[str] = None) -> Optional[WiRevision]:
        """Map one revision.

        Returns:
            Revision record, or None if nothing is left to replay

        Raises:
            ValueError: If revision is None
        """
        if revision is None:
            raise ValueError("revision must not be None")

        wi_type = wi_type or self.type_map.get(revision.type, revision.type)
        fields = self.map_fields(revision, wi_type)
        links = self.map_links(revision)
        attachments = self.map_attachments(revision)

        if not fields and not links and not attachments:
            return None

        wi_revision = WiRevision(
            parent_origin_id=revision.origin_id,
            index=revision.index,
            time=revision.time,
            author=self.map_user(revision.author),
            fields=fields,
            links=links,
            attachments=attachments,
        )
        wi_revision.attachment_references = self._has_attachment_references(revision, wi_revision)
        return wi_revision

    def map_fields(self, revision: Optional[JiraRevision], wi_type: Optional[str] = None) -> List[WiField]:
        """Map the field changes of a revision.

        Values that are not scalars after mapping are dropped with a warning.

        Raises:
            ValueError: If revision is None
        """
        if revision is None:
            raise ValueError("revision must not be None")

        wi_type = wi_type or self.type_map.get(revision.type, revision.type)
        rules = self.field_mappings.get(wi_type, {})

        fields: List[WiField] = []
        for target, rule in rules.items():
            value = rule(revision)
            if value is _UNCHANGED:
                continue
            if target in _USER_FIELDS and value is not None:
                value = IdentityValue(value=str(value))
            try:
                fields.append(WiField(reference_name=target, value=field_value(value)))
            except TypeError as e:
                self.logger.warning(
                    "field_value_rejected",
                    key=revision.origin_id,
                    index=revision.index,
                    field=target,
                    error=str(e),
                )

        if COMMENT_FIELD in revision.fields and not any(
            f.reference_name == WiFieldReference.HISTORY for f in fields
        ):
            comment = revision.fields[COMMENT_FIELD]
            if comment:
                fields.append(WiField(reference_name=WiFieldReference.HISTORY, value=comment))

        return fields

    def map_links(self, revision: Optional[JiraRevision]) -> List[WiLink]:
        """Map the link actions of a revision.

        Raises:
            ValueError: If revision is None
        """
        if revision is None:
            raise ValueError("revision must not be None")

        links: List[WiLink] = []
        for action in revision.link_actions:
            link = action.value
            entry = self.link_map.get(link.link_type)
            if entry is None and link.link_type in (EPIC_LINK_TYPE, PARENT_LINK_TYPE):
                target_type = WiRelationType.PARENT
            elif entry is None:
                self.logger.warning(
                    "link_type_not_mapped", key=revision.origin_id, link_type=link.link_type
                )
                continue
            elif link.inward:
                if not entry.inward_target:
                    # The outward side of the other issue carries this link
                    continue
                target_type = entry.inward_target
            else:
                target_type = entry.target

            links.append(
                WiLink(
                    change=_change(action.change_type),
                    source_origin_id=link.source_item,
                    target_origin_id=link.target_item,
                    wi_type=target_type,
                )
            )
        return links

    def map_attachments(self, revision: Optional[JiraRevision]) -> List[WiAttachment]:
        """Map the attachment actions of a revision.

        Raises:
            ValueError: If revision is None
        """
        if revision is None:
            raise ValueError("revision must not be None")

        attachments: List[WiAttachment] = []
        for action in revision.attachment_actions:
            attachment = action.value
            file_path = attachment.local_path or Path(attachment.id) / attachment.filename
            attachments.append(
                WiAttachment(
                    change=_change(action.change_type),
                    att_origin_id=attachment.id,
                    file_path=str(file_path),
                    comment=attachment.comment or "Imported from Jira",
                )
            )
        return attachments

    def map_sprint(self, sprint: Optional[JiraSprint]) -> Optional[WiIteration]:
        if sprint is None:
            raise ValueError("sprint must not be None")
        if not sprint.name:
            return None
        return WiIteration(
            name=sprint.name,
            origin_id=str(sprint.id),
            state=sprint.state,
            goal=sprint.goal,
            start_date=sprint.start_date,
            end_date=sprint.end_date,
            complete_date=sprint.complete_date,
        )

    def _has_attachment_references(self, revision: JiraRevision, wi_revision: WiRevision) -> bool:
        """Check whether rich text of the revision mentions one of the item's files."""
        texts = [
            str(f.raw)
            for f in wi_revision.fields
            if f.reference_name in WiFieldReference.RICH_TEXT and f.raw
        ]
        if not texts:
            return False

        file_names = {
            action.value.filename
            for rev in revision.parent_item.revisions
            for action in rev.attachment_actions
        }
        return any(not file_names.isdisjoint(referenced_file_names(text)) for text in texts)


def _change(change_type: RevisionChangeType) -> ReferenceChangeType:
    return ReferenceChangeType(change_type.value)
