# tests/unit/test_project_store.py
"""
Unit tests for SQLiteProjectStore.

Tests cover projects, atomic versioned file writes, conversation messages
and deployment records.
"""

import asyncio
from pathlib import Path

import pytest
import pytest_asyncio

from buildloop.agent.changes import ChangeSet, FileChange
from buildloop.projects.models import DeploymentStatus, ProjectStatus
from buildloop.projects.store import SQLiteProjectStore


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> SQLiteProjectStore:
    store = SQLiteProjectStore(str(tmp_path / "projects.db"))
    await store.initialize()
    yield store
    await store.close()


def _changes(*files: FileChange, summary: str = "change") -> ChangeSet:
    return ChangeSet(files=list(files), summary=summary)


@pytest.mark.asyncio
async def test_create_and_get_project(store: SQLiteProjectStore):
    project = await store.create_project("Todo App")

    fetched = await store.get_project(project.project_id)

    assert fetched.name == "Todo App"
    assert fetched.status == ProjectStatus.DRAFT
    assert fetched.current_version == 0
    assert fetched.env_vars_needed == []
    assert await store.get_project("missing") is None


@pytest.mark.asyncio
async def test_update_project(store: SQLiteProjectStore):
    project = await store.create_project("Todo App")

    await store.update_project(
        project.project_id,
        status=ProjectStatus.BUILDING,
        build_progress=40,
        env_vars_needed=["API_KEY"],
    )

    fetched = await store.get_project(project.project_id)
    assert fetched.status == ProjectStatus.BUILDING
    assert fetched.build_progress == 40
    assert fetched.env_vars_needed == ["API_KEY"]


@pytest.mark.asyncio
async def test_update_project_rejects_bad_input(store: SQLiteProjectStore):
    project = await store.create_project("Todo App")

    with pytest.raises(ValueError, match="Invalid field names"):
        await store.update_project(project.project_id, current_version=7)
    with pytest.raises(ValueError, match="not found"):
        await store.update_project("missing", build_progress=1)


@pytest.mark.asyncio
async def test_write_files_creates_versions(store: SQLiteProjectStore):
    project = await store.create_project("Todo App")
    pid = project.project_id

    v1 = await store.write_files(
        pid,
        _changes(
            FileChange("package.json", "create", "{}"),
            FileChange("src/App.jsx", "create", "export default 1;"),
        ),
        "make a todo app",
    )
    v2 = await store.write_files(
        pid,
        _changes(
            FileChange("src/App.jsx", "modify", "export default 2;"),
            FileChange("package.json", "delete"),
        ),
    )

    assert (v1.version_number, v2.version_number) == (1, 2)
    assert v1.diff_summary == "2 created, 0 modified, 0 deleted"
    assert v2.diff_summary == "0 created, 1 modified, 1 deleted"
    assert v2.snapshot == {"src/App.jsx": "export default 2;"}

    files = await store.list_files(pid)
    assert [(f.path, f.language) for f in files] == [("src/App.jsx", "jsx")]
    assert await store.read_file(pid, "package.json") is None
    assert (await store.get_project(pid)).current_version == 2

    # Old snapshots are immutable
    old = await store.get_version(pid, 1)
    assert old.snapshot == {"package.json": "{}", "src/App.jsx": "export default 1;"}
    assert old.prompt_summary == "make a todo app"
    assert [v.version_number for v in await store.list_versions(pid)] == [1, 2]


@pytest.mark.asyncio
async def test_concurrent_writes_get_distinct_versions(store: SQLiteProjectStore):
    project = await store.create_project("Todo App")

    versions = await asyncio.gather(
        *(
            store.write_files(
                project.project_id, _changes(FileChange(f"f{i}.txt", "create", str(i)))
            )
            for i in range(3)
        )
    )

    assert sorted(v.version_number for v in versions) == [1, 2, 3]
    assert len(await store.list_files(project.project_id)) == 3


@pytest.mark.asyncio
async def test_messages_are_ordered_and_limited(store: SQLiteProjectStore):
    project = await store.create_project("Todo App")
    pid = project.project_id

    first = await store.add_message(pid, pid, "user", "make a todo app")
    await store.add_message(pid, pid, "assistant", "Done", metadata={"version": 1})
    await store.add_message(pid, pid, "user", "add dark mode")

    all_messages = await store.list_messages(pid)
    last_two = await store.list_messages(pid, limit=2)

    assert [m.content for m in all_messages] == ["make a todo app", "Done", "add dark mode"]
    assert [m.content for m in last_two] == ["Done", "add dark mode"]
    assert last_two[0].metadata == {"version": 1}
    assert (await store.get_message(first.message_id)).role == "user"

    assert await store.delete_message(first.message_id)
    assert not await store.delete_message(first.message_id)
    assert await store.get_message(first.message_id) is None


@pytest.mark.asyncio
async def test_deployment_records(store: SQLiteProjectStore):
    project = await store.create_project("Todo App")

    deployment = await store.create_deployment(project.project_id, "job-1", 1)
    await store.update_deployment(
        deployment.deployment_id,
        status=DeploymentStatus.SUCCESS,
        provider_ref={"deployment_id": "dep-9"},
        url="https://todo.example.app",
    )

    fetched = await store.get_deployment_for_job("job-1")
    assert fetched.deployment_id == deployment.deployment_id
    assert fetched.status == DeploymentStatus.SUCCESS
    assert fetched.provider_ref == {"deployment_id": "dep-9"}
    assert fetched.url == "https://todo.example.app"
    assert len(await store.list_deployments(project.project_id)) == 1
    assert await store.get_deployment_for_job("other") is None
