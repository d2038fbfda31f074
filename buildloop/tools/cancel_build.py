# buildloop/tools/cancel_build.py
"""
cancel_build tool implementation.

Queued builds are failed before they start. A running build is flagged on the
project; its agent stops at the next turn boundary without saving anything.
"""

import logging

from fastmcp.exceptions import ToolError

from buildloop.background.build_worker import CANCELLED_MESSAGE
from buildloop.models.jobs import OPEN_STATES, JobState
from buildloop.models.responses import CancelBuildResponse
from buildloop.progress.bus import EVENT_ERROR, ProgressBus, ProgressEvent
from buildloop.projects.models import ProjectStatus
from buildloop.projects.store import ProjectStore
from buildloop.queue.work_queue import WorkQueue
from buildloop.validation.sanitize import sanitize_id

logger = logging.getLogger(__name__)

STAGE_CANCELLED = "cancelled"


async def cancel_build(
    project_id: str,
    store: ProjectStore,
    queue: WorkQueue,
    bus: ProgressBus | None = None,
) -> dict:
    """
    Cancel the open build of a project.

    Args:
        project_id: Project identifier
        store: Project store
        queue: Build queue
        bus: ProgressBus to notify live viewers (optional)

    Returns:
        CancelBuildResponse as dict

    Raises:
        ToolError: If project_id is invalid or not found
    """
    project_id = sanitize_id(project_id, "project")

    project = await store.get_project(project_id)
    if project is None:
        raise ToolError(f"Project '{project_id}' not found")

    open_jobs = await queue.jobs_for_project(project_id, states=list(OPEN_STATES))
    if not open_jobs and project.status != ProjectStatus.BUILDING:
        return CancelBuildResponse(
            project_id=project_id,
            cancelled=False,
            message="No build in progress",
        ).model_dump()

    removed = []
    for job in open_jobs:
        if job.state != JobState.ACTIVE and await queue.cancel(job.job_id, CANCELLED_MESSAGE):
            removed.append(job.job_id)

    await store.update_project(
        project_id,
        status=ProjectStatus.FAILED,
        error_message=CANCELLED_MESSAGE,
        current_build_stage=STAGE_CANCELLED,
    )
    if bus is not None:
        bus.publish(
            project_id,
            ProgressEvent(
                project_id=project_id,
                stage=STAGE_CANCELLED,
                message=CANCELLED_MESSAGE,
                type=EVENT_ERROR,
            ),
        )

    running = len(open_jobs) - len(removed)
    logger.info(
        f"Cancelled build for project {project_id} (queued={len(removed)}, running={running})"
    )

    return CancelBuildResponse(
        project_id=project_id,
        cancelled=True,
        jobs_cancelled=removed,
        message=(
            "Build cancelled; the running build stops at its next step"
            if running
            else "Build cancelled"
        ),
    ).model_dump()
