# buildloop/background/build_worker.py
"""
Build worker: runs the iteration agent for queued build jobs.

One job = one user message turned into one new project version, optionally
chained into a deploy job.
"""

import logging
from typing import Any, Awaitable, Callable

from buildloop.agent.iteration import (
    MODE_ANALYZING,
    MODE_SCAFFOLDING,
    ConversationContext,
    IterationAgent,
)
from buildloop.config.schema import BuildLoopConfig
from buildloop.errors import AgentError, BuildCancelled, ProjectNotFound
from buildloop.llm.factory import create_model_client
from buildloop.llm.types import ModelClient
from buildloop.models.jobs import JobRecord
from buildloop.progress.bus import EVENT_PROGRESS, JobProgress, ProgressBus, ProgressEvent
from buildloop.projects.models import ProjectStatus
from buildloop.projects.store import ProjectStore
from buildloop.queue.work_queue import WorkQueue

from .worker import QueueWorker

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"
STAGE_COMPLETE = "complete"
STAGE_BUILD_FAILED = "build_failed"
STAGE_RETRYING = "retrying"

ClientFactory = Callable[[str | None], ModelClient]


class BuildWorker(QueueWorker):
    """
    Consumes the build queue.

    Args:
        queue: Build WorkQueue
        store: Project store (files, versions, conversation)
        bus: ProgressBus for live progress
        config: Full configuration (agent, validator, providers)
        deploy_queue: Deploy WorkQueue; None disables chaining
        client_factory: model id or "auto" -> ModelClient (default: create_model_client)
    """

    def __init__(
        self,
        queue: WorkQueue,
        store: ProjectStore,
        bus: ProgressBus,
        config: BuildLoopConfig | None = None,
        deploy_queue: WorkQueue | None = None,
        client_factory: ClientFactory | None = None,
        concurrency: int | None = None,
        poll_interval: float | None = None,
    ) -> None:
        super().__init__(queue, concurrency=concurrency, poll_interval=poll_interval)
        self._store = store
        self._bus = bus
        self._config = config or BuildLoopConfig()
        self._deploy_queue = deploy_queue
        self._client_factory = client_factory or (
            lambda model: create_model_client(self._config, model)
        )

    async def handle(self, job: JobRecord) -> dict:
        payload = job.payload
        project_id = payload["project_id"]
        conversation_id = payload.get("conversation_id") or project_id

        project = await self._store.get_project(project_id)
        if project is None:
            raise ProjectNotFound(f"Project {project_id} not found")

        progress = JobProgress(self._bus, project_id, job.job_id)
        files = await self._store.list_files(project_id)
        mode = MODE_ANALYZING if files else MODE_SCAFFOLDING

        await self._store.update_project(
            project_id,
            status=ProjectStatus.BUILDING,
            build_progress=5,
            current_build_stage=mode,
            error_message=None,
        )
        progress.report(
            5,
            mode,
            "Analyzing your request" if files else "Scaffolding a new project",
        )

        user_text = await self._user_message(payload)
        history = await self._history(conversation_id, payload.get("message_id"))
        context = ConversationContext(
            user_message=user_text, history=history, project_name=project.name
        )

        async def cancelled() -> bool:
            current = await self._store.get_project(project_id)
            return (
                current is not None
                and current.status == ProjectStatus.FAILED
                and current.error_message == CANCELLED_MESSAGE
            )

        client = self._client_factory(payload.get("model"))
        agent = IterationAgent(
            client,
            self._store,
            self._config.agent,
            validator_config=self._config.validator,
        )
        result = await agent.run(project_id, context, progress=progress, cancel_check=cancelled)

        version = result.version
        # The version is saved; from here on nothing may fail the job, or a
        # retry would run the agent again and save a duplicate version.
        env_vars = list(dict.fromkeys(project.env_vars_needed + result.change_set.env_vars_needed))
        await self._after_save(
            job,
            "update project",
            self._store.update_project(
                project_id,
                status=ProjectStatus.READY,
                build_progress=90,
                current_build_stage="saving",
                env_vars_needed=env_vars,
            ),
        )
        progress.report(90, "saving", f"Saved version {version.version_number}")

        await self._after_save(
            job,
            "record assistant message",
            self._store.add_message(
                project_id,
                conversation_id,
                "assistant",
                self._summary_text(
                    result.summary,
                    result.change_set.paths,
                    version.version_number,
                    result.partial,
                ),
                metadata={
                    "version": version.version_number,
                    "files": result.change_set.paths,
                    "partial": result.partial,
                    "job_id": job.job_id,
                },
            ),
        )

        deploy_job_id = None
        if self._deploy_queue is not None and self._config.deploy.auto_deploy:
            deploy_job_id = await self._after_save(
                job,
                "enqueue deploy",
                self._deploy_queue.enqueue(
                    {
                        "project_id": project_id,
                        "version_number": version.version_number,
                        "build_job_id": job.job_id,
                    }
                ),
            )
            if deploy_job_id:
                progress.report(95, "queued_for_deploy", "Deployment queued")

        await self._after_save(
            job,
            "update project",
            self._store.update_project(
                project_id, build_progress=100, current_build_stage=STAGE_COMPLETE
            ),
        )
        progress.complete(STAGE_COMPLETE, result.summary)

        return {
            "version_number": version.version_number,
            "files_changed": len(result.change_set.files),
            "partial": result.partial,
            "summary": result.summary,
            "turns": len(result.turns),
            "deploy_job_id": deploy_job_id,
        }

    async def on_failure(self, job: JobRecord, error: Exception, terminal: bool) -> None:
        project_id = job.payload.get("project_id")
        if not project_id:
            return

        if isinstance(error, BuildCancelled):
            logger.info(f"Build {job.job_id} for project {project_id} cancelled")
            return

        if not terminal:
            self._bus.publish(
                project_id,
                ProgressEvent(
                    project_id=project_id,
                    stage=STAGE_RETRYING,
                    message=f"Attempt {job.attempts} failed, retrying: {error}",
                    type=EVENT_PROGRESS,
                    job_id=job.job_id,
                ),
            )
            return

        if isinstance(error, ProjectNotFound):
            logger.error(f"Build {job.job_id}: {error}")
            return

        message = str(error) or type(error).__name__
        await self._store.update_project(
            project_id,
            status=ProjectStatus.FAILED,
            error_message=message,
            current_build_stage=STAGE_BUILD_FAILED,
        )
        JobProgress(self._bus, project_id, job.job_id).fail(STAGE_BUILD_FAILED, message)

        metadata: dict = {"error": True, "job_id": job.job_id}
        if isinstance(error, AgentError) and error.validation_errors:
            metadata["validation_errors"] = error.validation_errors
        await self._store.add_message(
            project_id,
            job.payload.get("conversation_id") or project_id,
            "assistant",
            f"Sorry, the build failed: {message}",
            metadata=metadata,
        )

    async def _user_message(self, payload: dict) -> str:
        message_id = payload.get("message_id")
        if message_id:
            message = await self._store.get_message(message_id)
            if message is not None:
                return message.content
        text = payload.get("message") or ""
        if not text:
            raise AgentError("Build job has no user message")
        return text

    async def _history(self, conversation_id: str, message_id: str | None) -> list[dict]:
        limit = self._config.agent.history_messages
        if not limit:
            return []
        messages = await self._store.list_messages(conversation_id, limit=limit + 1)
        return [
            {"role": m.role, "content": m.content}
            for m in messages
            if m.message_id != message_id and not (m.metadata or {}).get("error")
        ][-limit:]

    @staticmethod
    def _summary_text(summary: str, paths: list[str], version_number: int, partial: bool) -> str:
        lines = [summary, "", f"Version {version_number}: {len(paths)} file(s) changed"]
        lines.extend(f"- {path}" for path in paths)
        if partial:
            lines.append("")
            lines.append("Note: the build ran out of turns; this version may be incomplete.")
        return "\n".join(lines)

    @staticmethod
    async def _after_save(job: JobRecord, step: str, pending: Awaitable[Any]) -> Any:
        """Await a step that follows a saved version; failures are logged, not raised."""
        try:
            return await pending
        except Exception as e:
            logger.error(f"Build {job.job_id}: {step} failed after the version was saved: {e}")
            return None
