"""Tests for the replay journal."""

from datetime import datetime, timezone

from workitem_migrator.core.journal import Journal, MigrationRun


async def _journal(tmp_path, fresh=False) -> Journal:
    journal = Journal(tmp_path / "journal.db")
    await journal.initialize(fresh=fresh)
    return journal


async def test_entries_survive_reopening(tmp_path):
    """Revisions, items and attachments are read back from disk."""
    journal = await _journal(tmp_path)
    await journal.mark_rev_processed("PRJ-1", 100, 0)
    await journal.mark_rev_processed("PRJ-1", 100, 1)
    await journal.mark_attachment_processed("10", "https://example.com/a.png")

    reopened = await _journal(tmp_path)

    assert reopened.get_migrated_id("PRJ-1") == 100
    assert reopened.is_item_migrated("PRJ-1", 0)
    assert reopened.is_item_migrated("PRJ-1", 1)
    assert not reopened.is_item_migrated("PRJ-1", 2)
    assert reopened.is_attachment_migrated("10")
    assert reopened.get_attachment_reference("10") == "https://example.com/a.png"
    assert reopened.get_migrated_id("PRJ-2") is None


async def test_first_work_item_id_wins(tmp_path):
    """A later revision cannot move an item to another work item."""
    journal = await _journal(tmp_path)
    await journal.mark_rev_processed("PRJ-1", 100, 0)
    await journal.mark_rev_processed("PRJ-1", 200, 1)

    assert journal.get_migrated_id("PRJ-1") == 100
    assert (await _journal(tmp_path)).get_migrated_id("PRJ-1") == 100


async def test_fresh_start_keeps_run_history(tmp_path):
    """A fresh journal forgets entries but not previous runs."""
    journal = await _journal(tmp_path)
    await journal.mark_rev_processed("PRJ-1", 100, 0)
    await journal.mark_attachment_processed("10", "https://example.com/a.png")
    await journal.create_run(MigrationRun(started_at=datetime.now(timezone.utc)))

    fresh = await _journal(tmp_path, fresh=True)
    statistics = await fresh.get_statistics()

    assert fresh.get_migrated_id("PRJ-1") is None
    assert not fresh.is_item_migrated("PRJ-1", 0)
    assert not fresh.is_attachment_migrated("10")
    assert statistics["migrated_items"] == 0
    assert statistics["runs"] == 1


async def test_run_round_trip(tmp_path):
    """Run statistics are updated in place."""
    journal = await _journal(tmp_path)
    run = await journal.create_run(
        MigrationRun(command="import", started_at=datetime.now(timezone.utc), total_revisions=3)
    )
    run.processed_revisions = 2
    run.failed_revisions = 1
    run.aborted = True
    run.error_log.append("PRJ-1/2: boom")
    run.completed_at = datetime.now(timezone.utc)
    await journal.update_run(run)

    latest = await journal.get_latest_run("import")

    assert latest.id == run.id
    assert latest.processed_revisions == 2
    assert latest.failed_revisions == 1
    assert latest.aborted
    assert latest.error_log == ["PRJ-1/2: boom"]
    assert await journal.get_latest_run("export") is None


async def test_migrated_items_report(tmp_path):
    """The detailed report counts revisions per item."""
    journal = await _journal(tmp_path)
    await journal.mark_rev_processed("PRJ-2", 101, 0)
    await journal.mark_rev_processed("PRJ-1", 100, 0)
    await journal.mark_rev_processed("PRJ-1", 100, 1)

    rows = await journal.get_migrated_items()

    assert [(r["origin_id"], r["wi_id"], r["revisions"]) for r in rows] == [
        ("PRJ-1", 100, 2),
        ("PRJ-2", 101, 1),
    ]
