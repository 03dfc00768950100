"""Tests for mapping Jira revisions to work item records."""

import pytest

from workitem_migrator.config import FieldMapEntry, LinkMapEntry, MappingConfig, TypeMapEntry
from workitem_migrator.contract.fields import WiFieldReference, WiRelationType
from workitem_migrator.contract.models import IdentityValue, ReferenceChangeType
from workitem_migrator.export.mapper import BaseMapper, JiraMapper, parse_user_mappings
from workitem_migrator.export.revisions import (
    COMMENT_FIELD,
    JiraAttachment,
    JiraItem,
    JiraLink,
    JiraRevision,
    JiraSprint,
    RevisionAction,
    RevisionChangeType,
)

from conftest import utc


@pytest.fixture
def mapping_config():
    return MappingConfig(
        type_map=[
            TypeMapEntry(source="Story", target="User Story"),
            TypeMapEntry(source="Bug", target="Bug"),
        ],
        field_map=[
            FieldMapEntry(source="summary", target=WiFieldReference.TITLE, mapper="MapTitle"),
            FieldMapEntry(source="Assignee", source_type="name", target=WiFieldReference.ASSIGNED_TO, mapper="MapUser"),
            FieldMapEntry(source="labels", target=WiFieldReference.TAGS, mapper="MapTags"),
            FieldMapEntry(source="Sprint", source_type="name", target=WiFieldReference.ITERATION_PATH, mapper="MapSprint"),
            FieldMapEntry(
                source="priority",
                target=WiFieldReference.PRIORITY,
                mapping={"Highest": "1", "High": "2", "Low": "4"},
            ),
            FieldMapEntry(
                source="description",
                target=WiFieldReference.REPRO_STEPS,
                for_types=["Bug"],
                mapper="MapRendered",
            ),
            FieldMapEntry(
                source="description",
                target=WiFieldReference.DESCRIPTION,
                not_for=["Bug"],
                mapper="MapRendered",
            ),
            FieldMapEntry(source="timeestimate", target=WiFieldReference.REMAINING_WORK, mapper="MapRemainingWork"),
        ],
        link_map=[
            LinkMapEntry(source="Relates", target=WiRelationType.RELATED),
            LinkMapEntry(source="Blocks", target="System.LinkTypes.Dependency-Forward"),
        ],
    )


@pytest.fixture
def mapper(jira_provider, mapping_config):
    return JiraMapper(jira_provider, mapping_config, {"alice": "alice@corp.com"})


def _item(key="PRJ-1", type="Story"):
    return JiraItem(key, type)


def _revision(item, index=0, fields=None, links=None, attachments=None, author="alice"):
    revision = JiraRevision(
        item,
        utc(2021, 1, 1 + index),
        author,
        fields or {},
        links or [],
        attachments or [],
        index=index,
    )
    item.revisions.append(revision)
    return revision


def test_parse_user_mappings(tmp_path):
    """Comments and blank lines are skipped and the first entry wins."""
    path = tmp_path / "users.txt"
    path.write_text(
        "# source=target\n"
        "\n"
        "alice=alice@corp.com\n"
        "alice=other@corp.com\n"
        " bob = bob@corp.com \n"
        "*=fallback@corp.com\n",
        encoding="utf-8",
    )

    assert parse_user_mappings(path) == {
        "alice": "alice@corp.com",
        "bob": "bob@corp.com",
        "*": "fallback@corp.com",
    }


def test_parse_user_mappings_without_file(tmp_path):
    """A missing or unset file gives an empty mapping."""
    assert parse_user_mappings(None) == {}
    assert parse_user_mappings(tmp_path / "missing.txt") == {}


def test_map_user_default_and_passthrough():
    """Unknown users use the default entry, or stay as they are without one."""
    mapper = BaseMapper({"alice": "alice@corp.com", "*": "default@corp.com"})
    assert mapper.map_user("alice") == "alice@corp.com"
    assert mapper.map_user("zoe") == "default@corp.com"
    assert mapper.map_user(None) is None

    plain = BaseMapper({})
    assert plain.map_user("zoe") == "zoe"


def test_merge_mapping_first_wins():
    """Earlier mappings win for duplicate keys."""
    assert BaseMapper.merge_mapping({"a": 1}, {"a": 2, "b": 3}) == {"a": 1, "b": 3}


def test_map_none_item_raises(mapper):
    """Mapping nothing is an error."""
    with pytest.raises(ValueError):
        mapper.map(None)
    with pytest.raises(ValueError):
        mapper.map_revision(None)


def test_unmapped_type_is_skipped(mapper):
    """Issue types without a type map entry are not exported."""
    item = _item(type="Sub-task")
    _revision(item, fields={"summary": "x"})
    assert mapper.map(item) is None


def test_map_title_and_user(mapper):
    """The title carries the key and users are mapped identities."""
    item = _item()
    _revision(item, fields={"summary": "Hello", "assignee": "alice"})

    wi_item = mapper.map(item)

    revision = wi_item.revisions[0]
    assert wi_item.type == "User Story"
    assert revision.get_field(WiFieldReference.TITLE).raw == "[PRJ-1] Hello"
    assignee = revision.get_field(WiFieldReference.ASSIGNED_TO)
    assert isinstance(assignee.value, IdentityValue)
    assert assignee.raw == "alice@corp.com"
    assert revision.author == "alice@corp.com"
    assert revision.parent_origin_id == "PRJ-1"


def test_value_translation_and_converters(mapper):
    """Value maps, tags, sprints and remaining work are converted."""
    item = _item()
    _revision(
        item,
        fields={
            "priority": "High",
            "labels": ["backend", "urgent"],
            "customfield_10010": ["Sprint 1", "Sprint 2"],
            "timeestimate": 5400,
        },
    )

    revision = mapper.map(item).revisions[0]

    assert revision.get_field(WiFieldReference.PRIORITY).raw == "2"
    assert revision.get_field(WiFieldReference.TAGS).raw == "backend; urgent"
    assert revision.get_field(WiFieldReference.ITERATION_PATH).raw == "Sprint 2"
    assert revision.get_field(WiFieldReference.REMAINING_WORK).raw == 1.5


def test_type_specific_rules(mapper):
    """Bugs get repro steps and other types a description."""
    bug = _item("PRJ-2", "Bug")
    _revision(bug, fields={"description": "<p>steps</p>"})
    story = _item("PRJ-3", "Story")
    _revision(story, fields={"description": "<p>text</p>"})

    bug_revision = mapper.map(bug).revisions[0]
    story_revision = mapper.map(story).revisions[0]

    assert bug_revision.get_field(WiFieldReference.REPRO_STEPS).raw == "<p>steps</p>"
    assert bug_revision.get_field(WiFieldReference.DESCRIPTION) is None
    assert story_revision.get_field(WiFieldReference.DESCRIPTION).raw == "<p>text</p>"
    assert story_revision.get_field(WiFieldReference.REPRO_STEPS) is None


def test_cleared_field_is_explicitly_empty(mapper):
    """A field set to nothing maps to an empty value, not to no change."""
    item = _item()
    _revision(item, fields={"summary": "x"})
    _revision(item, index=1, fields={"labels": []})

    revision = mapper.map(item).revisions[1]
    tags = revision.get_field(WiFieldReference.TAGS)
    assert tags is not None
    assert tags.raw is None


def test_empty_revision_is_dropped_and_indexes_stay_contiguous(mapper):
    """Revisions without mapped changes are skipped."""
    item = _item()
    _revision(item, fields={"summary": "x"})
    _revision(item, index=1, fields={"unmapped_field": "y"})
    _revision(item, index=2, fields={"summary": "z"})

    wi_item = mapper.map(item)

    assert [r.index for r in wi_item.revisions] == [0, 1]
    assert wi_item.revisions[1].get_field(WiFieldReference.TITLE).raw == "[PRJ-1] z"


def test_comment_becomes_history(mapper):
    """Comments are replayed through the history field."""
    item = _item()
    _revision(item, fields={COMMENT_FIELD: "<p>Looks good</p>"})

    revision = mapper.map(item).revisions[0]
    assert revision.get_field(WiFieldReference.HISTORY).raw == "<p>Looks good</p>"


def test_links_are_mapped(mapper):
    """Mapped, epic and inward links follow the link map."""
    item = _item()
    _revision(
        item,
        fields={"summary": "x"},
        links=[
            RevisionAction(RevisionChangeType.ADDED, JiraLink("PRJ-1", "PRJ-2", "Relates")),
            RevisionAction(RevisionChangeType.REMOVED, JiraLink("PRJ-1", "PRJ-3", "Epic")),
            RevisionAction(RevisionChangeType.ADDED, JiraLink("PRJ-1", "PRJ-4", "Blocks", inward=True)),
            RevisionAction(RevisionChangeType.ADDED, JiraLink("PRJ-1", "PRJ-5", "Unknown")),
        ],
    )

    links = mapper.map(item).revisions[0].links

    assert [(link.change, link.target_origin_id, link.wi_type) for link in links] == [
        (ReferenceChangeType.ADDED, "PRJ-2", WiRelationType.RELATED),
        (ReferenceChangeType.REMOVED, "PRJ-3", WiRelationType.PARENT),
    ]


def test_attachments_are_mapped(mapper, tmp_path):
    """Attachments point at their downloaded file."""
    local = tmp_path / "10" / "shot.png"
    item = _item()
    _revision(
        item,
        attachments=[
            RevisionAction(
                RevisionChangeType.ADDED, JiraAttachment("10", "shot.png", local_path=local)
            )
        ],
    )

    attachment = mapper.map(item).revisions[0].attachments[0]
    assert attachment.change == ReferenceChangeType.ADDED
    assert attachment.att_origin_id == "10"
    assert attachment.file_path == str(local)
    assert attachment.comment == "Imported from Jira"


def test_attachment_references_are_detected(mapper):
    """Rich text mentioning an attached file is flagged."""
    item = _item()
    _revision(
        item,
        fields={"description": '<img src="shot.png">'},
        attachments=[
            RevisionAction(RevisionChangeType.ADDED, JiraAttachment("10", "shot.png"))
        ],
    )

    assert mapper.map(item).revisions[0].attachment_references


def test_map_sprint(mapper):
    """Sprints become iterations with their dates."""
    sprint = JiraSprint(7, "Sprint 7", state="closed", start_date=utc(2021, 1, 4), end_date=utc(2021, 1, 18))

    iteration = mapper.map_sprint(sprint)

    assert iteration.name == "Sprint 7"
    assert iteration.origin_id == "7"
    assert iteration.end_date == utc(2021, 1, 18)


def test_attachment_references_need_whole_file_name(mapper):
    """A reference to ``data.png`` does not count as one to ``a.png``."""
    item = _item()
    _revision(
        item,
        fields={"description": '<p><img src="/secure/attachment/11/data.png"></p>'},
        attachments=[RevisionAction(RevisionChangeType.ADDED, JiraAttachment("10", "a.png"))],
    )

    assert not mapper.map(item).revisions[0].attachment_references
