"""Tests for reading and writing workspace records."""

import pytest

from workitem_migrator.contract.models import (
    ReferenceChangeType,
    WiAttachment,
    WiField,
    WiItem,
    WiIteration,
    WiLink,
    WiRevision,
)
from workitem_migrator.contract.provider import WiItemProvider

from conftest import utc


def _item() -> WiItem:
    return WiItem(
        origin_id="PRJ-1",
        type="User Story",
        revisions=[
            WiRevision(
                index=0,
                time=utc(2021, 1, 1),
                author="alice@corp.com",
                fields=[WiField(reference_name="System.Title", value="[PRJ-1] Hello")],
                links=[
                    WiLink(
                        change=ReferenceChangeType.ADDED,
                        source_origin_id="PRJ-1",
                        target_origin_id="PRJ-2",
                        wi_type="System.LinkTypes.Related",
                    )
                ],
                attachments=[
                    WiAttachment(
                        change=ReferenceChangeType.ADDED,
                        att_origin_id="10",
                        file_path="/tmp/10/a.png",
                    )
                ],
            )
        ],
    )


async def test_save_and_load(tmp_path):
    """A saved item loads back with parent ids on its revisions."""
    provider = WiItemProvider(tmp_path)

    path = await provider.save(_item())
    loaded = await provider.load("PRJ-1")

    assert path == tmp_path / "PRJ-1.json"
    assert loaded.type == "User Story"
    assert loaded.revisions[0].parent_origin_id == "PRJ-1"
    assert loaded.revisions[0].links[0].target_origin_id == "PRJ-2"
    assert loaded.revisions[0].attachments[0].file_name == "a.png"


async def test_unicode_escapes_are_stripped(tmp_path):
    """Stray escape sequences are removed before parsing."""
    provider = WiItemProvider(tmp_path)
    (tmp_path / "PRJ-9.json").write_text(
        '{"origin_id": "PRJ-9", "type": "Bug", "revisions": [{"index": 0, '
        '"time": "2021-01-01T00:00:00Z", "fields": [{"reference_name": "System.Title", '
        '"value": {"kind": "string", "value": "Caf\\u00e9"}}]}]}',
        encoding="utf-8",
    )

    item = await provider.load("PRJ-9")

    assert item.revisions[0].fields[0].raw == "Caf"


async def test_load_missing_item_raises(tmp_path):
    """Loading an item that was never exported fails."""
    provider = WiItemProvider(tmp_path)
    with pytest.raises(FileNotFoundError):
        await provider.load("PRJ-404")


async def test_enumerate_skips_foreign_files(tmp_path):
    """Files that are not item records are skipped."""
    provider = WiItemProvider(tmp_path)
    await provider.save(_item())
    (tmp_path / "notes.json").write_text('{"hello": "world"}', encoding="utf-8")
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")

    items = [item async for item in provider.enumerate_all_items()]

    assert [item.origin_id for item in items] == ["PRJ-1"]


async def test_enumerate_empty_workspace(tmp_path):
    """A workspace that does not exist yields nothing."""
    provider = WiItemProvider(tmp_path / "missing")
    assert [item async for item in provider.enumerate_all_items()] == []


async def test_iterations_are_kept_apart(tmp_path):
    """Iterations are stored in their own folder and not enumerated as items."""
    provider = WiItemProvider(tmp_path)
    await provider.save_iteration(
        WiIteration(name="Sprint 1", origin_id="7", start_date=utc(2021, 1, 4))
    )

    iteration = await provider.load_iteration("Sprint 1")

    assert (tmp_path / "sprints" / "Sprint 1.json").exists()
    assert iteration.start_date == utc(2021, 1, 4)
    assert await provider.load_iteration("Sprint 2") is None
    assert [item async for item in provider.enumerate_all_items()] == []
