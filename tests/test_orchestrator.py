"""Tests for the replay run."""

import pytest

from workitem_migrator.api.devops_client import WorkItem
from workitem_migrator.contract.models import WiField, WiItem, WiRevision
from workitem_migrator.contract.provider import WiItemProvider
from workitem_migrator.core.journal import Journal
from workitem_migrator.core.orchestrator import MigrationOrchestrator
from workitem_migrator.utils.errors import MigrationError

from conftest import FakeDevOpsClient, utc


class IdlessDevOpsClient(FakeDevOpsClient):
    """Saves work items without handing out an id."""

    async def create_work_item(self, wi_type, patch):
        self.patches.append(patch)
        return WorkItem(wi_type)


async def _export(config, *items):
    provider = WiItemProvider(config.workspace.path, config.workspace.sprints_folder)
    for origin_id, days in items:
        await provider.save(
            WiItem(
                origin_id=origin_id,
                type="User Story",
                revisions=[
                    WiRevision(
                        index=index,
                        time=utc(2021, 1, day),
                        author="alice@corp.com",
                        fields=[WiField(reference_name="System.Title", value=f"{origin_id} v{index}")],
                    )
                    for index, day in enumerate(days)
                ],
            )
        )


@pytest.fixture
def use_client(monkeypatch):
    def install(client):
        monkeypatch.setattr(
            "workitem_migrator.core.orchestrator.DevOpsClient", lambda settings: client
        )
        return client

    return install


async def test_replay_imports_every_revision(config, quiet_progress, use_client):
    """All revisions are imported in order into one work item per item."""
    client = use_client(FakeDevOpsClient())
    await _export(config, ("PRJ-1", (1, 3)), ("PRJ-2", (2,)))

    result = await MigrationOrchestrator(config, quiet_progress).replay()

    assert result["status"] == "completed"
    assert result["items"] == 2
    assert result["processed"] == 3
    assert result["failed"] == 0
    assert client.items[100]["fields"]["System.Title"] == "PRJ-1 v1"
    assert client.items[101]["fields"]["System.Title"] == "PRJ-2 v0"


async def test_second_run_skips_journaled_revisions(config, quiet_progress, use_client):
    """A resumed run does not replay what is already journaled."""
    client = use_client(FakeDevOpsClient())
    await _export(config, ("PRJ-1", (1, 2)))
    await MigrationOrchestrator(config, quiet_progress).replay()
    client.patches.clear()

    result = await MigrationOrchestrator(config, quiet_progress).replay()

    assert result["processed"] == 0
    assert result["skipped"] == 2
    assert client.patches == []


async def test_forced_run_starts_over(config, quiet_progress, use_client):
    """Forcing a run forgets the journal and creates the items again."""
    client = use_client(FakeDevOpsClient())
    await _export(config, ("PRJ-1", (1,)))
    await MigrationOrchestrator(config, quiet_progress).replay()

    result = await MigrationOrchestrator(config, quiet_progress).replay(force=True)

    assert result["processed"] == 1
    assert sorted(client.items) == [100, 101]


async def test_critical_failure_aborts_run(config, quiet_progress, use_client):
    """A work item saved without an id stops the run."""
    use_client(IdlessDevOpsClient())
    await _export(config, ("PRJ-1", (1, 2)), ("PRJ-2", (3,)))

    result = await MigrationOrchestrator(config, quiet_progress).replay()

    assert result["status"] == "aborted"
    assert result["processed"] == 0

    journal = Journal(config.workspace.journal_path)
    await journal.initialize()
    run = await journal.get_latest_run("import")
    assert run.aborted
    assert run.completed_at is not None
    assert not journal.is_item_migrated("PRJ-1", 0)


async def test_missing_project_fails_run(config, quiet_progress, use_client):
    """Without a target project nothing is replayed."""
    use_client(FakeDevOpsClient(project=None))
    await _export(config, ("PRJ-1", (1,)))

    with pytest.raises(MigrationError):
        await MigrationOrchestrator(config, quiet_progress).replay()

    journal = Journal(config.workspace.journal_path)
    await journal.initialize()
    assert (await journal.get_latest_run("import")).aborted
