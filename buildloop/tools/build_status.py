# buildloop/tools/build_status.py
"""
build_status tool implementation.

Project state plus the most recent build and deploy jobs.
"""

import logging

from fastmcp.exceptions import ToolError

from buildloop.models.jobs import JobRecord
from buildloop.models.responses import BuildStatusResponse, JobSummary
from buildloop.projects.store import ProjectStore
from buildloop.queue.work_queue import WorkQueue
from buildloop.validation.sanitize import sanitize_id

logger = logging.getLogger(__name__)


def job_summary(job: JobRecord | None) -> JobSummary | None:
    if job is None:
        return None
    return JobSummary(
        job_id=job.job_id,
        queue=job.queue_name,
        state=job.state.value,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        last_error=job.last_error,
        result=job.result,
        enqueued_at=job.enqueued_at.isoformat(),
    )


async def _latest(queue: WorkQueue | None, project_id: str) -> JobRecord | None:
    if queue is None:
        return None
    jobs = await queue.jobs_for_project(project_id)
    return jobs[0] if jobs else None


async def build_status(
    project_id: str,
    store: ProjectStore,
    build_queue: WorkQueue,
    deploy_queue: WorkQueue | None = None,
) -> dict:
    """
    Check a project's build status.

    Args:
        project_id: Project identifier from create_project
        store: Project store
        build_queue: Build queue
        deploy_queue: Deploy queue (optional)

    Returns:
        BuildStatusResponse as dict

    Raises:
        ToolError: If project_id is invalid or not found
    """
    project_id = sanitize_id(project_id, "project")

    project = await store.get_project(project_id)
    if project is None:
        raise ToolError(f"Project '{project_id}' not found")

    response = BuildStatusResponse(
        project_id=project.project_id,
        name=project.name,
        status=project.status.value,
        build_progress=max(0, min(project.build_progress, 100)),
        current_build_stage=project.current_build_stage,
        error_message=project.error_message,
        current_version=project.current_version,
        deployment_url=project.deployment_url,
        env_vars_needed=project.env_vars_needed,
        build_job=job_summary(await _latest(build_queue, project_id)),
        deploy_job=job_summary(await _latest(deploy_queue, project_id)),
    )
    return response.model_dump()
