# tests/unit/test_iteration_agent.py
"""
Unit tests for IterationAgent.

A scripted fake model client drives the loop against a real SQLite project
store, so every test exercises tool execution, validation and persistence.
"""

import asyncio
import copy
import json
from pathlib import Path

import pytest
import pytest_asyncio

from buildloop.agent.changes import ChangeSet, FileChange
from buildloop.agent.iteration import (
    AgentState,
    ConversationContext,
    IterationAgent,
)
from buildloop.config.schema import AgentConfig
from buildloop.errors import (
    BuildCancelled,
    MaxTurnsExceeded,
    ModelUnavailable,
    NoChangesProduced,
    ValidationExhausted,
)
from buildloop.llm.types import AgentMessage, AgentToolCall
from buildloop.progress.bus import JobProgress, ProgressBus
from buildloop.projects.store import SQLiteProjectStore

APP_JSX = "export default function App() {\n  return <h1>Todos</h1>;\n}\n"


class ScriptedClient:
    """Fake ModelClient that replays canned responses and records requests."""

    provider = "openai"
    model = "fake-model"

    def __init__(self, responses: list[AgentMessage], delay: float = 0.0) -> None:
        self._responses = list(responses)
        self._delay = delay
        self.requests: list[list[dict]] = []
        self.tools: list[dict] | None = None

    async def send(self, messages, tools, model=None):
        self.requests.append(copy.deepcopy(messages))
        self.tools = tools
        if self._delay:
            await asyncio.sleep(self._delay)
        if not self._responses:
            return AgentMessage(content="I have nothing more to add.", tool_calls=None)
        return self._responses.pop(0)

    async def health_check(self):
        return True


def _apply(*files: dict, summary: str = "Built the app", call_id: str = "") -> AgentMessage:
    return AgentMessage(
        content=None,
        tool_calls=[
            AgentToolCall(
                id=call_id,
                name="apply_changes",
                arguments={"files": list(files), "summary": summary},
            )
        ],
    )


def _read(*paths: str) -> AgentMessage:
    return AgentMessage(
        content=None,
        tool_calls=[AgentToolCall(id="", name="read_files", arguments={"paths": list(paths)})],
    )


def _text(content: str) -> AgentMessage:
    return AgentMessage(content=content, tool_calls=None)


def _tool_results(request: list[dict]) -> list[dict]:
    return [json.loads(m["content"]) for m in request if m["role"] == "tool"]


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> SQLiteProjectStore:
    store = SQLiteProjectStore(str(tmp_path / "agent.db"))
    await store.initialize()
    return store


@pytest_asyncio.fixture
async def project_id(store: SQLiteProjectStore) -> str:
    project = await store.create_project("Todo App")
    return project.project_id


CONTEXT = ConversationContext(user_message="Make a todo app", project_name="Todo App")


@pytest.mark.asyncio
async def test_scaffold_in_one_turn(store, project_id):
    client = ScriptedClient(
        [
            _apply(
                {"path": "src/App.jsx", "action": "create", "content": APP_JSX},
                {"path": "package.json", "action": "create", "content": '{"name": "todo"}'},
            )
        ]
    )
    agent = IterationAgent(client, store)

    result = await agent.run(project_id, CONTEXT)

    assert result.version.version_number == 1
    assert result.summary == "Built the app"
    assert not result.partial
    assert len(result.turns) == 1
    assert sorted(result.change_set.paths) == ["package.json", "src/App.jsx"]
    assert agent.state == AgentState.FINALIZING
    assert await store.read_file(project_id, "src/App.jsx") == APP_JSX

    first_request = client.requests[0]
    assert first_request[0]["role"] == "system"
    assert "(no files yet)" in first_request[0]["content"]
    assert first_request[-1]["content"].startswith("Make a todo app")
    assert [t["function"]["name"] for t in client.tools] == ["read_files", "apply_changes"]


@pytest.mark.asyncio
async def test_reads_then_modifies_existing_project(store, project_id):
    await store.write_files(
        project_id, ChangeSet(files=[FileChange("src/App.jsx", "create", APP_JSX)])
    )
    client = ScriptedClient(
        [
            _read("src/App.jsx", "missing.js"),
            _apply(
                {
                    "path": "src/App.jsx",
                    "action": "modify",
                    "content": APP_JSX.replace("Todos", "My Todos"),
                },
                summary="Renamed the heading",
            ),
        ]
    )
    agent = IterationAgent(client, store)

    result = await agent.run(project_id, CONTEXT)

    assert result.version.version_number == 2
    assert [f.action for f in result.change_set.files] == ["modify"]

    # The manifest lists existing files and no scaffold instructions are added
    assert "- src/App.jsx" in client.requests[0][0]["content"]
    assert client.requests[0][-1]["content"] == "Make a todo app"

    second_request = client.requests[1]
    assistant = second_request[-2]
    assert assistant["tool_calls"][0]["id"] == "call_0_0"
    assert second_request[-1]["tool_call_id"] == "call_0_0"
    read_result = _tool_results(second_request)[0]
    assert read_result["files"] == {"src/App.jsx": APP_JSX, "missing.js": None}


@pytest.mark.asyncio
async def test_rejected_changes_are_fixed_on_next_turn(store, project_id):
    client = ScriptedClient(
        [
            _apply({"path": "package.json", "action": "create", "content": '{"name": }'}),
            _apply({"path": "package.json", "action": "create", "content": '{"name": "todo"}'}),
        ]
    )
    agent = IterationAgent(client, store)

    result = await agent.run(project_id, CONTEXT)

    assert result.version.version_number == 1
    rejection = _tool_results(client.requests[1])[0]
    assert rejection["applied"] == 0
    assert rejection["validation"]["valid"] is False
    assert rejection["validation"]["errors"][0]["file"] == "package.json"
    # Nothing from the rejected proposal leaked into the version
    assert result.version.snapshot == {"package.json": '{"name": "todo"}'}


@pytest.mark.asyncio
async def test_validation_exhausted(store, project_id):
    bad = {"path": "package.json", "action": "create", "content": "{"}
    client = ScriptedClient([_apply(bad), _apply(bad)])
    agent = IterationAgent(client, store, AgentConfig(max_turns=2))

    with pytest.raises(ValidationExhausted) as exc_info:
        await agent.run(project_id, CONTEXT)

    assert exc_info.value.validation_errors[0]["type"] == "json"
    assert agent.state == AgentState.ABORTED
    assert await store.list_versions(project_id) == []


@pytest.mark.asyncio
async def test_text_answer_is_nudged_once(store, project_id):
    client = ScriptedClient(
        [
            _text("Sure, I can build that!"),
            _apply({"path": "index.html", "action": "create", "content": "<html></html>"}),
        ]
    )
    agent = IterationAgent(client, store)

    result = await agent.run(project_id, CONTEXT)

    assert result.version.version_number == 1
    nudge_request = client.requests[1]
    assert nudge_request[-2] == {"role": "assistant", "content": "Sure, I can build that!"}
    assert nudge_request[-1]["role"] == "user"


@pytest.mark.asyncio
async def test_text_answers_without_changes_fail(store, project_id):
    client = ScriptedClient([_text("Hello"), _text("Still hello")])
    agent = IterationAgent(client, store)

    with pytest.raises(NoChangesProduced):
        await agent.run(project_id, CONTEXT)


@pytest.mark.asyncio
async def test_final_answer_after_accepted_changes(store, project_id):
    client = ScriptedClient(
        [
            _apply({"path": "a.txt", "action": "create", "content": "a"}, summary="Added a"),
            _apply({"path": "b.txt", "action": "create", "content": "b"}, summary="Added b"),
            _text("All done."),
        ]
    )
    agent = IterationAgent(client, store, AgentConfig(finalize_on_apply=False))

    result = await agent.run(project_id, CONTEXT)

    assert len(result.turns) == 3
    assert sorted(result.change_set.paths) == ["a.txt", "b.txt"]
    assert result.summary == "Added a; Added b"
    assert not result.partial


@pytest.mark.asyncio
async def test_budget_exhausted_best_effort_is_partial(store, project_id):
    client = ScriptedClient([_apply({"path": "a.txt", "action": "create", "content": "a"})])
    agent = IterationAgent(client, store, AgentConfig(max_turns=1, finalize_on_apply=False))

    result = await agent.run(project_id, CONTEXT)

    assert result.partial
    assert result.version.version_number == 1


@pytest.mark.asyncio
async def test_budget_exhausted_fail_hard(store, project_id):
    client = ScriptedClient([_apply({"path": "a.txt", "action": "create", "content": "a"})])
    config = AgentConfig(max_turns=1, finalize_on_apply=False, exhaustion_policy="fail_hard")
    agent = IterationAgent(client, store, config)

    with pytest.raises(MaxTurnsExceeded):
        await agent.run(project_id, CONTEXT)

    assert await store.list_versions(project_id) == []


@pytest.mark.asyncio
async def test_reads_only_until_budget_runs_out(store, project_id):
    client = ScriptedClient([_read("a.txt"), _read("b.txt")])
    agent = IterationAgent(client, store, AgentConfig(max_turns=2))

    with pytest.raises(MaxTurnsExceeded):
        await agent.run(project_id, CONTEXT)


@pytest.mark.asyncio
async def test_create_then_delete_leaves_nothing_to_persist(store, project_id):
    client = ScriptedClient(
        [
            _apply({"path": "tmp.txt", "action": "create", "content": "x"}),
            _apply({"path": "tmp.txt", "action": "delete"}),
            _text("Cleaned up."),
        ]
    )
    agent = IterationAgent(client, store, AgentConfig(finalize_on_apply=False))

    with pytest.raises(NoChangesProduced):
        await agent.run(project_id, CONTEXT)


@pytest.mark.asyncio
async def test_unknown_tool_gets_error_result(store, project_id):
    client = ScriptedClient(
        [
            AgentMessage(
                content=None,
                tool_calls=[AgentToolCall(id="x1", name="run_shell", arguments={})],
            ),
            _apply({"path": "a.txt", "action": "create", "content": "a"}),
        ]
    )
    agent = IterationAgent(client, store)

    await agent.run(project_id, CONTEXT)

    error = _tool_results(client.requests[1])[0]
    assert "Unknown tool: run_shell" in error["error"]


@pytest.mark.asyncio
async def test_cancellation_stops_before_persisting(store, project_id):
    bus = ProgressBus()
    events = []
    bus.subscribe(project_id, events.append)
    progress = JobProgress(bus, project_id, "job-1")
    checks = iter([False, True])

    async def cancel_check():
        return next(checks)

    client = ScriptedClient(
        [_apply({"path": "a.txt", "action": "create", "content": "a"})]
    )
    agent = IterationAgent(client, store)

    with pytest.raises(BuildCancelled):
        await agent.run(project_id, CONTEXT, progress=progress, cancel_check=cancel_check)

    assert agent.state == AgentState.ABORTED
    assert progress.sealed
    assert await store.list_versions(project_id) == []
    assert all(e.type == "progress" for e in events)


@pytest.mark.asyncio
async def test_model_timeout_raises_model_unavailable(store, project_id):
    client = ScriptedClient([_text("too slow")], delay=1.0)
    agent = IterationAgent(client, store, AgentConfig(turn_timeout=0.05))

    with pytest.raises(ModelUnavailable):
        await agent.run(project_id, CONTEXT)

    assert agent.state == AgentState.ABORTED


@pytest.mark.asyncio
async def test_progress_stays_within_agent_range(store, project_id):
    bus = ProgressBus()
    events = []
    bus.subscribe(project_id, events.append)
    client = ScriptedClient(
        [_read("x"), _apply({"path": "a.txt", "action": "create", "content": "a"})]
    )
    agent = IterationAgent(client, store, AgentConfig(progress_start=10, progress_end=80))

    await agent.run(project_id, CONTEXT, progress=JobProgress(bus, project_id))

    percents = [e.percent for e in events]
    assert percents == sorted(percents)
    assert percents[0] == 10
    assert max(percents) <= 80
    assert events[-1].stage == "finalizing"


@pytest.mark.asyncio
async def test_history_is_included(store, project_id):
    context = ConversationContext(
        user_message="Add dark mode",
        history=[
            {"role": "user", "content": "Make a todo app"},
            {"role": "assistant", "content": "Built it"},
        ],
    )
    client = ScriptedClient([_apply({"path": "a.txt", "action": "create", "content": "a"})])
    agent = IterationAgent(client, store)

    await agent.run(project_id, context)

    roles = [m["role"] for m in client.requests[0]]
    assert roles == ["system", "user", "assistant", "user"]


@pytest.mark.asyncio
async def test_parser_crash_rejects_with_structural_errors(store, project_id, monkeypatch):
    def too_deep(*args, **kwargs):
        raise RecursionError("maximum recursion depth exceeded")

    monkeypatch.setattr("buildloop.agent.validator.esprima.parseModule", too_deep)
    client = ScriptedClient(
        [
            _apply(
                {"path": "a.js", "action": "create", "content": "export default 1;"},
                {"path": "a.js", "action": "create", "content": "export default 2;"},
                {"path": "../escape.js", "action": "create", "content": "export default 3;"},
            )
        ]
    )
    agent = IterationAgent(client, store, AgentConfig(max_turns=1))

    with pytest.raises(ValidationExhausted) as exc_info:
        await agent.run(project_id, CONTEXT)

    types = {error["type"] for error in exc_info.value.validation_errors}
    assert types == {"duplicate", "parser", "path"}
    assert await store.list_versions(project_id) == []
    assert await store.list_files(project_id) == []


@pytest.mark.asyncio
async def test_empty_file_content_is_rejected(store, project_id):
    client = ScriptedClient(
        [
            _apply({"path": "src/App.jsx", "action": "create", "content": ""}),
            _apply({"path": "src/App.jsx", "action": "create", "content": APP_JSX}),
        ]
    )
    agent = IterationAgent(client, store)

    result = await agent.run(project_id, CONTEXT)

    rejection = _tool_results(client.requests[1])[0]
    assert rejection["applied"] == 0
    assert [e["type"] for e in rejection["validation"]["errors"]] == ["content"]
    assert result.version.snapshot == {"src/App.jsx": APP_JSX}


@pytest.mark.asyncio
async def test_same_path_in_two_apply_calls_is_rejected(store, project_id):
    both = AgentMessage(
        content=None,
        tool_calls=[
            AgentToolCall(
                id="first",
                name="apply_changes",
                arguments={
                    "files": [{"path": "a.js", "action": "create", "content": "export default 1;"}]
                },
            ),
            AgentToolCall(
                id="second",
                name="apply_changes",
                arguments={
                    "files": [{"path": "a.js", "action": "create", "content": "export default 2;"}]
                },
            ),
        ],
    )
    client = ScriptedClient(
        [both, _apply({"path": "a.js", "action": "create", "content": "export default 2;"})]
    )
    agent = IterationAgent(client, store)

    result = await agent.run(project_id, CONTEXT)

    first, second = _tool_results(client.requests[1])
    assert first == second
    assert first["applied"] == 0
    assert [e["type"] for e in first["validation"]["errors"]] == ["duplicate"]
    # Only the corrected proposal was persisted
    assert [v.version_number for v in await store.list_versions(project_id)] == [1]
    assert result.version.snapshot == {"a.js": "export default 2;"}


@pytest.mark.asyncio
async def test_rejected_then_fixed_reports_validation_per_turn(store, project_id):
    bus = ProgressBus()
    events = []
    bus.subscribe(project_id, events.append)
    client = ScriptedClient(
        [
            _apply({"path": "package.json", "action": "create", "content": '{"name": }'}),
            _apply({"path": "package.json", "action": "create", "content": '{"name": "todo"}'}),
        ]
    )
    agent = IterationAgent(client, store)

    result = await agent.run(project_id, CONTEXT, progress=JobProgress(bus, project_id))

    assert result.version.version_number == 1
    assert len(result.turns) == 2
    assert [e.stage for e in events].count("validating changes") == 2
