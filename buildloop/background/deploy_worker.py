# buildloop/background/deploy_worker.py
"""
Deploy worker: pushes a persisted version to the deployment provider and
polls it until the deployment succeeds, fails or times out.
"""

import asyncio
import logging

from buildloop.config.schema import DeployConfig
from buildloop.deploy.provider import DeploymentHandle, DeployProvider, ProviderState
from buildloop.errors import ProjectNotFound, ProviderDeployFailure
from buildloop.models.jobs import JobRecord
from buildloop.progress.bus import EVENT_PROGRESS, JobProgress, ProgressBus, ProgressEvent
from buildloop.projects.models import Deployment, DeploymentStatus, ProjectStatus
from buildloop.projects.store import ProjectStore
from buildloop.queue.work_queue import WorkQueue

from .worker import QueueWorker

logger = logging.getLogger(__name__)

STAGE_DEPLOYING = "deploying"
STAGE_DEPLOYED = "deployed"
STAGE_DEPLOY_FAILED = "deploy_failed"


class DeployWorker(QueueWorker):
    """
    Consumes the deploy queue.

    Args:
        queue: Deploy WorkQueue
        store: Project store (versions, deployment records)
        bus: ProgressBus for live progress
        provider: Deployment provider
        config: Poll interval and provider timeout
    """

    def __init__(
        self,
        queue: WorkQueue,
        store: ProjectStore,
        bus: ProgressBus,
        provider: DeployProvider,
        config: DeployConfig | None = None,
        concurrency: int | None = None,
        poll_interval: float | None = None,
    ) -> None:
        super().__init__(queue, concurrency=concurrency, poll_interval=poll_interval)
        self._store = store
        self._bus = bus
        self._provider = provider
        self._config = config or DeployConfig()

    async def handle(self, job: JobRecord) -> dict:
        project_id = job.payload["project_id"]
        project = await self._store.get_project(project_id)
        if project is None:
            raise ProjectNotFound(f"Project {project_id} not found")

        version_number = job.payload.get("version_number") or project.current_version
        version = await self._store.get_version(project_id, version_number)
        if version is None:
            raise ProjectNotFound(f"Project {project_id} has no version {version_number}")

        deployment = await self._deployment_for(job, project_id, version_number)
        progress = JobProgress(self._bus, project_id, job.job_id)

        await self._store.update_project(
            project_id,
            status=ProjectStatus.DEPLOYING,
            build_progress=5,
            current_build_stage=STAGE_DEPLOYING,
        )
        await self._store.update_deployment(
            deployment.deployment_id, status=DeploymentStatus.BUILDING, error_message=None
        )
        progress.report(5, STAGE_DEPLOYING, "Preparing deployment...")

        handle = await self._provider.start(project_id, version)
        await self._store.update_deployment(
            deployment.deployment_id,
            status=DeploymentStatus.DEPLOYING,
            provider_ref=handle.to_dict(),
        )
        progress.report(40, STAGE_DEPLOYING, "Deployment started")

        url = await self._wait(handle, progress)

        await self._store.update_deployment(
            deployment.deployment_id, status=DeploymentStatus.SUCCESS, url=url
        )
        await self._store.update_project(
            project_id,
            status=ProjectStatus.DEPLOYED,
            deployment_url=url,
            build_progress=100,
            current_build_stage=STAGE_DEPLOYED,
            error_message=None,
        )
        progress.complete(STAGE_DEPLOYED, f"Deployed to {url}" if url else "Deployment successful")
        logger.info(f"Deploy job {job.job_id}: project {project_id} v{version_number} -> {url}")

        return {"deployment_id": deployment.deployment_id, "url": url}

    async def _deployment_for(
        self, job: JobRecord, project_id: str, version_number: int
    ) -> Deployment:
        """Reuse the record of an earlier attempt of the same job."""
        deployment = await self._store.get_deployment_for_job(job.job_id)
        if deployment is None:
            deployment = await self._store.create_deployment(project_id, job.job_id, version_number)
        return deployment

    async def _wait(self, handle: DeploymentHandle, progress: JobProgress) -> str | None:
        """
        Poll until the deployment reaches a terminal state.

        Raises:
            ProviderDeployFailure: Provider reported failure or timeout elapsed
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.timeout
        url = handle.url
        percent = 40

        while True:
            status = await self._provider.poll_status(handle)
            url = status.url or url

            if status.state == ProviderState.SUCCESS:
                return url
            if status.state == ProviderState.FAILED:
                logs = await self._fetch_logs(handle)
                raise ProviderDeployFailure(
                    status.error or "Deployment failed", logs=logs
                )

            if loop.time() >= deadline:
                logs = await self._fetch_logs(handle)
                raise ProviderDeployFailure(
                    f"Deployment timed out after {self._config.timeout:.0f}s", logs=logs
                )

            percent = min(percent + 5, 90)
            progress.report(percent, STAGE_DEPLOYING, f"Deployment status: {status.state.value}")
            await asyncio.sleep(self._config.poll_interval)

    async def _fetch_logs(self, handle: DeploymentHandle) -> str | None:
        try:
            return await self._provider.fetch_logs(handle) or None
        except ProviderDeployFailure as e:
            logger.warning(f"Could not fetch logs for deployment {handle.deployment_id}: {e}")
            return None

    async def on_failure(self, job: JobRecord, error: Exception, terminal: bool) -> None:
        project_id = job.payload.get("project_id")
        if not project_id or isinstance(error, ProjectNotFound):
            logger.error(f"Deploy job {job.job_id}: {error}")
            return

        message = str(error) or type(error).__name__
        logs = error.logs if isinstance(error, ProviderDeployFailure) else None
        deployment = await self._store.get_deployment_for_job(job.job_id)

        if not terminal:
            if deployment is not None:
                await self._store.update_deployment(
                    deployment.deployment_id, error_message=message, logs=logs
                )
            self._bus.publish(
                project_id,
                ProgressEvent(
                    project_id=project_id,
                    stage=STAGE_DEPLOYING,
                    message=f"Deployment attempt {job.attempts} failed, retrying: {message}",
                    type=EVENT_PROGRESS,
                    job_id=job.job_id,
                ),
            )
            return

        if deployment is not None:
            await self._store.update_deployment(
                deployment.deployment_id,
                status=DeploymentStatus.FAILED,
                error_message=message,
                logs=logs,
            )
        await self._store.update_project(
            project_id,
            status=ProjectStatus.FAILED,
            error_message=f"Deployment failed: {message}",
            current_build_stage=STAGE_DEPLOY_FAILED,
        )
        JobProgress(self._bus, project_id, job.job_id).fail(STAGE_DEPLOY_FAILED, message)
