# buildloop/agent/iteration.py
"""
IterationAgent: multi-turn tool-calling loop that turns one user request into
one validated, persisted ChangeSet.

States:
    GATHERING -> AWAITING_MODEL -> EXECUTING_TOOLS -> AWAITING_MODEL ... -> FINALIZING
    any state -> ABORTED (error, cancellation)

The model sees two tools (read_files, apply_changes). Proposed changes are
validated before they are staged; nothing reaches the FileStore until the
final ChangeSet is persisted as a new version in one transaction.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from buildloop.config.schema import AgentConfig, ValidatorConfig
from buildloop.errors import (
    BuildCancelled,
    BuildLoopError,
    MaxTurnsExceeded,
    ModelUnavailable,
    NoChangesProduced,
    PersistConflict,
    ValidationExhausted,
)
from buildloop.llm.types import (
    AgentMessage,
    AgentToolCall,
    ModelClient,
    assistant_message,
    tool_result_message,
)

from .catalog import APPLY_CHANGES, READ_FILES, ToolCatalog
from .changes import ChangeSet
from .prompts import load_prompt
from .session import ToolSession
from .validator import ValidationIssue, validate_change_set

if TYPE_CHECKING:
    from buildloop.progress.bus import JobProgress
    from buildloop.projects.models import VersionRecord
    from buildloop.projects.store import FileStore

logger = logging.getLogger(__name__)

STAGE_THINKING = "thinking"
STAGE_READING = "reading files"
STAGE_VALIDATING = "validating changes"
STAGE_FINALIZING = "finalizing"

MODE_SCAFFOLDING = "scaffolding"
MODE_ANALYZING = "analyzing"

CancelCheck = Callable[[], Awaitable[bool]]


class AgentState(Enum):
    GATHERING = "gathering"
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    FINALIZING = "finalizing"
    ABORTED = "aborted"


@dataclass
class ConversationContext:
    """What the user asked for, plus recent conversation for context."""

    user_message: str
    history: list[dict] = field(default_factory=list)  # [{"role", "content"}], oldest first
    project_name: str = ""


@dataclass
class AgentTurn:
    """One model round trip and the tool results it produced."""

    turn_index: int
    request_size: int
    response: AgentMessage
    tool_results: list[dict] = field(default_factory=list)


@dataclass
class AgentResult:
    change_set: ChangeSet
    summary: str
    version: "VersionRecord"
    partial: bool = False
    turns: list[AgentTurn] = field(default_factory=list)


class IterationAgent:
    """
    Drives one build: gather, converse with tools, validate, persist.

    Args:
        client: Model client (provider decides the tool schema format)
        store: FileStore the project is read from and persisted to
        config: Turn budget and policies
        catalog: Tools offered to the model
        validator_config: Which structural checks run on proposals
    """

    def __init__(
        self,
        client: ModelClient,
        store: "FileStore",
        config: AgentConfig | None = None,
        catalog: ToolCatalog | None = None,
        validator_config: ValidatorConfig | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._config = config or AgentConfig()
        self._catalog = catalog or ToolCatalog()
        self._validator = validator_config or ValidatorConfig()
        self._tools = self._catalog.for_provider(client.provider)
        self.state = AgentState.GATHERING

    async def run(
        self,
        project_id: str,
        context: ConversationContext,
        progress: "JobProgress | None" = None,
        cancel_check: CancelCheck | None = None,
        model: str | None = None,
    ) -> AgentResult:
        """
        Run the loop until a ChangeSet is persisted or the run aborts.

        Raises:
            ValidationExhausted: Every proposal failed validation
            NoChangesProduced: The model never proposed changes
            MaxTurnsExceeded: Turn budget exhausted
            ModelUnavailable: Model call failed or timed out
            BuildCancelled: cancel_check reported a cancellation
        """
        try:
            return await self._run(project_id, context, progress, cancel_check, model)
        except (BuildLoopError, asyncio.CancelledError):
            self.state = AgentState.ABORTED
            raise

    async def _run(
        self,
        project_id: str,
        context: ConversationContext,
        progress: "JobProgress | None",
        cancel_check: CancelCheck | None,
        model: str | None,
    ) -> AgentResult:
        self.state = AgentState.GATHERING
        project_files = await self._store.list_files(project_id)
        session = ToolSession(
            {f.path: f.content for f in project_files},
            {f.path: f.language for f in project_files},
            max_read_paths=self._config.max_read_paths,
        )
        messages = self._initial_messages(session, context)
        logger.info(
            f"Agent start: project={project_id}, files={len(project_files)}, "
            f"provider={self._client.provider}, max_turns={self._config.max_turns}"
        )

        turns: list[AgentTurn] = []
        nudged = False
        last_errors: list[dict] = []
        max_turns = self._config.max_turns

        for turn_index in range(max_turns):
            await self._check_cancelled(cancel_check, progress)

            self.state = AgentState.AWAITING_MODEL
            self._report(progress, turn_index, STAGE_THINKING, f"Turn {turn_index + 1}/{max_turns}")
            response = await self._call_model(messages, model)
            turn = AgentTurn(turn_index=turn_index, request_size=len(messages), response=response)
            turns.append(turn)

            if not response.tool_calls:
                if session.has_changes:
                    logger.info(f"Agent: final answer on turn {turn_index + 1}")
                    return await self._finalize(
                        project_id, context, session, turns, progress, cancel_check
                    )
                if nudged:
                    raise NoChangesProduced(
                        "Model answered without proposing any file changes"
                    )
                nudged = True
                logger.info(f"Agent: no tool call on turn {turn_index + 1}, nudging")
                messages.append(response.to_assistant_dict())
                messages.append({"role": "user", "content": load_prompt("nudge")})
                continue

            calls = [
                AgentToolCall(
                    id=call.id or f"call_{turn_index}_{i}",
                    name=call.name,
                    arguments=call.arguments,
                )
                for i, call in enumerate(response.tool_calls)
            ]
            messages.append(assistant_message(response.content, calls))

            self.state = AgentState.EXECUTING_TOOLS
            applying = any(call.name == APPLY_CHANGES for call in calls)
            self._report(
                progress,
                turn_index,
                STAGE_VALIDATING if applying else STAGE_READING,
                f"{len(calls)} tool call(s)",
            )
            results, accepted, errors = await self._execute_tools(session, calls)
            if applying and not accepted:
                last_errors = errors

            for call in calls:
                messages.append(tool_result_message(call.id, results[call.id]))
                turn.tool_results.append(
                    {"id": call.id, "name": call.name, "content": results[call.id]}
                )

            if accepted and self._config.finalize_on_apply:
                return await self._finalize(
                    project_id, context, session, turns, progress, cancel_check
                )

        # Turn budget exhausted
        if session.has_changes:
            if self._config.exhaustion_policy == "best_effort":
                logger.warning("Agent: turn budget exhausted, persisting partial result")
                return await self._finalize(
                    project_id, context, session, turns, progress, cancel_check, partial=True
                )
            raise MaxTurnsExceeded(
                f"Turn budget of {max_turns} exhausted before the model finished"
            )
        if last_errors:
            raise ValidationExhausted(
                f"Proposed changes still failed validation after {max_turns} turns",
                validation_errors=last_errors,
            )
        raise MaxTurnsExceeded(f"No changes were accepted within {max_turns} turns")

    def _initial_messages(self, session: ToolSession, context: ConversationContext) -> list[dict]:
        manifest = session.manifest()
        mode = MODE_ANALYZING if manifest else MODE_SCAFFOLDING
        system = load_prompt("system").format(
            project_name=context.project_name or "untitled",
            mode=mode,
            manifest="\n".join(f"- {path}" for path in manifest) or "(no files yet)",
            max_read_paths=self._config.max_read_paths,
        )
        messages = [{"role": "system", "content": system}]
        limit = self._config.history_messages
        history = context.history[-limit:] if limit else []
        for entry in history:
            if entry.get("role") in ("user", "assistant") and entry.get("content"):
                messages.append({"role": entry["role"], "content": entry["content"]})

        user = context.user_message
        if mode == MODE_SCAFFOLDING:
            user = f"{user}\n\n{load_prompt('scaffold')}"
        messages.append({"role": "user", "content": user})
        return messages

    async def _call_model(self, messages: list[dict], model: str | None) -> AgentMessage:
        timeout = self._config.turn_timeout
        try:
            return await asyncio.wait_for(
                self._client.send(messages, self._tools, model=model), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise ModelUnavailable(f"Model did not answer within {timeout:.0f}s") from e

    async def _execute_tools(
        self, session: ToolSession, calls: list[AgentToolCall]
    ) -> tuple[dict[str, str], bool, list[dict]]:
        """
        Run one turn's tool calls.

        Reads run concurrently. All apply_changes calls are merged into a
        single candidate and validated as a unit.

        Returns:
            (results by call id, candidate accepted, validation errors)
        """
        results: dict[str, str] = {}

        reads = [call for call in calls if call.name == READ_FILES]
        read_payloads = await asyncio.gather(
            *(session.read_files(call.arguments) for call in reads)
        )
        for call, payload in zip(reads, read_payloads):
            results[call.id] = json.dumps(payload)

        accepted = False
        errors: list[dict] = []
        applies = [call for call in calls if call.name == APPLY_CHANGES]
        if applies:
            candidate = ChangeSet()
            for call in applies:
                candidate = candidate.merged(ChangeSet.from_tool_arguments(call.arguments))

            issues = self._validate(candidate, session.files)
            if issues:
                errors = [issue.to_dict() for issue in issues]
                payload = {"applied": 0, "validation": {"valid": False, "errors": errors}}
                logger.info(f"apply_changes rejected: {len(errors)} error(s)")
            else:
                session.stage(candidate)
                accepted = True
                payload = {
                    "applied": len(candidate.files),
                    "validation": {"valid": True, "errors": []},
                }
                logger.info(f"apply_changes accepted: {len(candidate.files)} file(s)")
            content = json.dumps(payload)
            for call in applies:
                results[call.id] = content

        for call in calls:
            if call.id not in results:
                logger.warning(f"Model called unknown tool '{call.name}'")
                results[call.id] = json.dumps(
                    {
                        "error": f"Unknown tool: {call.name}. "
                        f"Available: {', '.join(self._catalog.names)}"
                    }
                )

        return results, accepted, errors

    def _validate(self, candidate: ChangeSet, existing: dict[str, str]) -> list[ValidationIssue]:
        return validate_change_set(
            candidate,
            existing,
            check_imports=self._validator.check_imports,
            check_javascript=self._validator.check_javascript,
        )

    async def _finalize(
        self,
        project_id: str,
        context: ConversationContext,
        session: ToolSession,
        turns: list[AgentTurn],
        progress: "JobProgress | None",
        cancel_check: CancelCheck | None,
        partial: bool = False,
    ) -> AgentResult:
        self.state = AgentState.FINALIZING
        await self._check_cancelled(cancel_check, progress)
        self._report(progress, self._config.max_turns, STAGE_FINALIZING, "Saving new version")

        change_set = session.result()
        if not change_set:
            raise NoChangesProduced("Accepted changes leave the project unchanged")

        version = await self._persist(project_id, change_set, context.user_message[:200])
        summary = change_set.summary or f"Updated {len(change_set.files)} file(s)"
        logger.info(
            f"Agent done: project={project_id}, version={version.version_number}, "
            f"files={len(change_set.files)}, turns={len(turns)}, partial={partial}"
        )
        return AgentResult(
            change_set=change_set,
            summary=summary,
            version=version,
            partial=partial,
            turns=turns,
        )

    async def _persist(
        self, project_id: str, change_set: ChangeSet, prompt_summary: str
    ) -> "VersionRecord":
        try:
            return await self._store.write_files(project_id, change_set, prompt_summary)
        except PersistConflict as e:
            logger.warning(f"Persist conflict for project {project_id}, retrying once: {e}")
            return await self._store.write_files(project_id, change_set, prompt_summary)

    async def _check_cancelled(
        self, cancel_check: CancelCheck | None, progress: "JobProgress | None"
    ) -> None:
        if cancel_check is None or not await cancel_check():
            return
        self.state = AgentState.ABORTED
        if progress is not None:
            progress.silence()
        raise BuildCancelled("Build cancelled by user")

    def _report(
        self, progress: "JobProgress | None", turn_index: int, stage: str, message: str = ""
    ) -> None:
        if progress is None:
            return
        start = self._config.progress_start
        end = self._config.progress_end
        percent = start + (end - start) * turn_index / self._config.max_turns
        progress.report(int(percent), stage, message)
