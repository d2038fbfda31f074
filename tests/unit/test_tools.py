# tests/unit/test_tools.py
"""
Integration tests for the tool service layer.

Tests the tool functions directly (without the MCP wrapper) against real
SQLite stores in a temp directory.
"""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from fastmcp.exceptions import ToolError

from buildloop.agent.changes import ChangeSet, FileChange
from buildloop.background.build_worker import CANCELLED_MESSAGE
from buildloop.models.jobs import JobState
from buildloop.models.sqlite_store import SQLiteJobStore
from buildloop.progress.bus import EVENT_ERROR, ProgressBus
from buildloop.projects.models import ProjectStatus
from buildloop.projects.store import SQLiteProjectStore
from buildloop.queue.work_queue import WorkQueue
from buildloop.tools.build_status import build_status
from buildloop.tools.cancel_build import cancel_build
from buildloop.tools.create_project import create_project
from buildloop.tools.list_versions import list_versions
from buildloop.tools.queue_stats import queue_stats
from buildloop.tools.send_message import send_message
from buildloop.validation.sanitize import sanitize_id, sanitize_model, sanitize_text


@pytest_asyncio.fixture
async def env(tmp_path: Path):
    db_path = str(tmp_path / "tools.db")
    job_store = SQLiteJobStore(db_path)
    store = SQLiteProjectStore(db_path)
    await job_store.initialize()
    await store.initialize()
    return {
        "store": store,
        "build_queue": WorkQueue("build", job_store),
        "deploy_queue": WorkQueue("deploy", job_store),
        "bus": ProgressBus(),
    }


async def _project(env, name="Todo App") -> str:
    return (await create_project(name, store=env["store"]))["project_id"]


async def _send(env, project_id, message="Make a todo app", model=None):
    return await send_message(
        project_id, message, model, None, store=env["store"], queue=env["build_queue"]
    )


class TestSanitize:
    def test_text_is_stripped_and_truncated(self):
        assert sanitize_text("  hi  ") == "hi"
        assert len(sanitize_text("x" * 50, max_length=10)) == 10

    def test_empty_text_rejected(self):
        with pytest.raises(ToolError, match="cannot be empty"):
            sanitize_text("   ")

    @pytest.mark.parametrize("value", ["short", "has spaces in it", "../../etc/passwd", None])
    def test_bad_ids_rejected(self, value):
        with pytest.raises(ToolError, match="Invalid project ID"):
            sanitize_id(value, "project")

    def test_model(self):
        assert sanitize_model(None) == "auto"
        assert sanitize_model(" ") == "auto"
        assert sanitize_model("qwen2.5-coder:32b") == "qwen2.5-coder:32b"
        assert sanitize_model("accounts/fireworks/models/llama-v3") == "accounts/fireworks/models/llama-v3"
        with pytest.raises(ToolError):
            sanitize_model("rm -rf /")


@pytest.mark.asyncio
async def test_create_project(env):
    result = await create_project("  Todo App ", store=env["store"])

    assert result["name"] == "Todo App"
    assert result["status"] == "draft"
    assert result["conversation_id"] == result["project_id"]


@pytest.mark.asyncio
async def test_create_project_rejects_empty_name(env):
    with pytest.raises(ToolError):
        await create_project("", store=env["store"])


@pytest.mark.asyncio
async def test_send_message_queues_build(env):
    pid = await _project(env)

    result = await _send(env, pid, model="gpt-4o")

    assert result["status"] == "queued"
    assert result["model"] == "gpt-4o"
    job = await env["build_queue"].get(result["job_id"])
    assert job.state == JobState.WAITING
    assert job.payload["message_id"] == result["message_id"]
    assert job.payload["conversation_id"] == pid

    messages = await env["store"].list_messages(pid)
    assert [(m.role, m.content) for m in messages] == [("user", "Make a todo app")]


@pytest.mark.asyncio
async def test_send_message_rejects_second_build(env):
    pid = await _project(env)
    await _send(env, pid)

    with pytest.raises(ToolError, match="already queued or running"):
        await _send(env, pid, "Add dark mode")

    # The rejected message was not stored
    assert len(await env["store"].list_messages(pid)) == 1


@pytest.mark.asyncio
async def test_send_message_unknown_project(env):
    with pytest.raises(ToolError, match="not found"):
        await _send(env, "0123456789ab")


@pytest.mark.asyncio
async def test_build_status(env):
    pid = await _project(env)
    sent = await _send(env, pid)

    status = await build_status(
        pid,
        store=env["store"],
        build_queue=env["build_queue"],
        deploy_queue=env["deploy_queue"],
    )

    assert status["status"] == "draft"
    assert status["current_version"] == 0
    assert status["build_job"]["job_id"] == sent["job_id"]
    assert status["build_job"]["state"] == "waiting"
    assert status["deploy_job"] is None


@pytest.mark.asyncio
async def test_build_status_unknown_project(env):
    with pytest.raises(ToolError, match="not found"):
        await build_status("0123456789ab", store=env["store"], build_queue=env["build_queue"])


@pytest.mark.asyncio
async def test_cancel_queued_build(env):
    pid = await _project(env)
    sent = await _send(env, pid)
    events = []
    env["bus"].subscribe(pid, events.append)

    result = await cancel_build(pid, store=env["store"], queue=env["build_queue"], bus=env["bus"])

    assert result["cancelled"]
    assert result["jobs_cancelled"] == [sent["job_id"]]
    job = await env["build_queue"].get(sent["job_id"])
    assert job.state == JobState.FAILED

    project = await env["store"].get_project(pid)
    assert project.status == ProjectStatus.FAILED
    assert project.error_message == CANCELLED_MESSAGE
    assert events[-1].type == EVENT_ERROR

    # A new message can be sent once the build is cancelled
    assert (await _send(env, pid, "Try again"))["status"] == "queued"


@pytest.mark.asyncio
async def test_cancel_running_build_flags_project(env):
    pid = await _project(env)
    sent = await _send(env, pid)
    await env["build_queue"].dequeue("worker:0")
    await env["store"].update_project(pid, status=ProjectStatus.BUILDING)

    result = await cancel_build(pid, store=env["store"], queue=env["build_queue"])

    assert result["cancelled"]
    assert result["jobs_cancelled"] == []
    assert "next step" in result["message"]
    # The worker observes the flag; the job itself is left to it
    assert (await env["build_queue"].get(sent["job_id"])).state == JobState.ACTIVE
    assert (await env["store"].get_project(pid)).error_message == CANCELLED_MESSAGE


@pytest.mark.asyncio
async def test_cancel_without_build(env):
    pid = await _project(env)

    result = await cancel_build(pid, store=env["store"], queue=env["build_queue"])

    assert not result["cancelled"]
    assert (await env["store"].get_project(pid)).status == ProjectStatus.DRAFT


@pytest.mark.asyncio
async def test_queue_stats(env):
    pid = await _project(env)
    await _send(env, pid)

    stats = await queue_stats(env["build_queue"], env["deploy_queue"])

    assert stats["build"]["waiting"] == 1
    assert stats["deploy"] == {
        "waiting": 0,
        "active": 0,
        "completed": 0,
        "failed": 0,
        "delayed": 0,
    }


@pytest.mark.asyncio
async def test_list_versions(env):
    pid = await _project(env)
    await env["store"].write_files(
        pid, ChangeSet(files=[FileChange("index.html", "create", "<p>v1</p>")]), "first"
    )
    await env["store"].write_files(
        pid, ChangeSet(files=[FileChange("index.html", "modify", "<p>v2</p>")]), "second"
    )

    result = await list_versions(pid, store=env["store"])

    assert result["current_version"] == 2
    assert [v["version_number"] for v in result["versions"]] == [1, 2]
    assert result["versions"][0]["prompt_summary"] == "first"
    assert result["versions"][1]["diff_summary"] == "0 created, 1 modified, 0 deleted"
    assert result["versions"][1]["file_count"] == 1


@pytest.mark.asyncio
async def test_send_message_race_removes_stored_message(env):
    pid = await _project(env)
    await _send(env, pid)
    # Pre-check misses the open job; the exclusive enqueue still refuses
    env["build_queue"].jobs_for_project = AsyncMock(return_value=[])

    with pytest.raises(ToolError, match="already queued or running"):
        await _send(env, pid, "Add dark mode")

    messages = await env["store"].list_messages(pid)
    assert [m.content for m in messages] == ["Make a todo app"]
