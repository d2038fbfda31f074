# buildloop/tools/send_message.py
"""
send_message tool implementation.

Stores the user's message and queues a build for it. Only one open build per
project is admitted.
"""

import logging

from fastmcp.exceptions import ToolError

from buildloop.errors import JobAlreadyActive, QueueUnavailable
from buildloop.models.jobs import OPEN_STATES
from buildloop.models.responses import SendMessageResponse
from buildloop.projects.store import ProjectStore
from buildloop.queue.work_queue import WorkQueue
from buildloop.validation.sanitize import sanitize_id, sanitize_model, sanitize_text

logger = logging.getLogger(__name__)


async def send_message(
    project_id: str,
    message: str,
    model: str | None,
    conversation_id: str | None,
    store: ProjectStore,
    queue: WorkQueue,
) -> dict:
    """
    Add a user message to a project conversation and queue a build.

    Args:
        project_id: Project to change
        message: What the user wants built or changed
        model: Model override ("auto"/None for the configured default)
        conversation_id: Conversation to append to (default: the project's own)
        store: Project store
        queue: Build queue

    Returns:
        SendMessageResponse as dict

    Raises:
        ToolError: Invalid input, unknown project, or a build already running
    """
    project_id = sanitize_id(project_id, "project")
    text = sanitize_text(message)
    model = sanitize_model(model)
    conversation_id = (
        sanitize_id(conversation_id, "conversation") if conversation_id else project_id
    )

    project = await store.get_project(project_id)
    if project is None:
        raise ToolError(f"Project '{project_id}' not found. Use create_project first.")

    busy = f"A build is already queued or running for project '{project_id}'"
    if await queue.jobs_for_project(project_id, states=list(OPEN_STATES)):
        raise ToolError(f"{busy}. Use build_status to follow it or cancel_build to stop it.")

    stored = await store.add_message(project_id, conversation_id, "user", text)

    try:
        job_id = await queue.enqueue(
            {
                "project_id": project_id,
                "conversation_id": conversation_id,
                "message_id": stored.message_id,
                "message": text,
                "model": model,
            },
            exclusive=True,
        )
    except JobAlreadyActive:
        await store.delete_message(stored.message_id)
        raise ToolError(f"{busy}.")
    except QueueUnavailable as e:
        await store.delete_message(stored.message_id)
        raise ToolError(f"Build queue unavailable, try again shortly: {e}")

    logger.info(f"Queued build {job_id} for project {project_id}: {text[:80]}")

    response = SendMessageResponse(
        job_id=job_id,
        project_id=project_id,
        conversation_id=conversation_id,
        message_id=stored.message_id,
        status="queued",
        model=model,
    )
    return response.model_dump()
