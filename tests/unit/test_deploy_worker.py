# tests/unit/test_deploy_worker.py
"""
Tests for DeployWorker and HttpDeployProvider.

The worker runs against a scripted provider; the HTTP provider runs against
httpx.MockTransport.
"""

import json
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from buildloop.agent.changes import ChangeSet, FileChange
from buildloop.background.deploy_worker import DeployWorker
from buildloop.config.schema import DeployConfig, QueueConfig
from buildloop.deploy.provider import (
    DeploymentHandle,
    DeployProvider,
    HttpDeployProvider,
    ProviderState,
    ProviderStatus,
    parse_state,
)
from buildloop.errors import ProviderDeployFailure
from buildloop.models.jobs import JobState
from buildloop.models.sqlite_store import SQLiteJobStore
from buildloop.progress.bus import EVENT_COMPLETE, EVENT_ERROR, ProgressBus
from buildloop.projects.models import DeploymentStatus, ProjectStatus, VersionRecord
from buildloop.projects.store import SQLiteProjectStore
from buildloop.queue.work_queue import WorkQueue


class ScriptedProvider(DeployProvider):
    def __init__(self, states, url="https://app.example.dev", start_error=None):
        self._states = list(states)
        self._url = url
        self._start_error = start_error
        self.started = []

    async def start(self, project_id, version):
        if self._start_error is not None:
            raise self._start_error
        self.started.append((project_id, version.version_number))
        return DeploymentHandle(deployment_id=f"dep-{len(self.started)}")

    async def poll_status(self, handle):
        state = self._states.pop(0) if len(self._states) > 1 else self._states[0]
        if state == ProviderState.FAILED:
            return ProviderStatus(state=state, error="npm install failed")
        url = self._url if state == ProviderState.SUCCESS else None
        return ProviderStatus(state=state, url=url)

    async def fetch_logs(self, handle):
        return "npm ERR! missing script: build"


@pytest_asyncio.fixture
async def env(tmp_path: Path):
    db_path = str(tmp_path / "deploy.db")
    job_store = SQLiteJobStore(db_path)
    store = SQLiteProjectStore(db_path)
    await job_store.initialize()
    await store.initialize()

    project = await store.create_project("Landing")
    await store.write_files(
        project.project_id,
        ChangeSet(files=[FileChange("index.html", "create", "<html></html>")]),
    )
    return {
        "store": store,
        "queue": WorkQueue("deploy", job_store, QueueConfig(attempts=2, backoff_delay=0.0)),
        "bus": ProgressBus(),
        "project_id": project.project_id,
    }


def _worker(env, provider, timeout=5.0):
    return DeployWorker(
        env["queue"],
        env["store"],
        env["bus"],
        provider,
        DeployConfig(poll_interval=0.01, timeout=timeout),
    )


@pytest.mark.asyncio
async def test_successful_deploy(env):
    pid = env["project_id"]
    events = []
    env["bus"].subscribe(pid, events.append)
    provider = ScriptedProvider(
        [ProviderState.QUEUED, ProviderState.BUILDING, ProviderState.SUCCESS]
    )
    job_id = await env["queue"].enqueue({"project_id": pid, "version_number": 1})

    assert await _worker(env, provider).run_once()

    job = await env["queue"].get(job_id)
    assert job.state == JobState.COMPLETED
    assert job.result["url"] == "https://app.example.dev"
    assert provider.started == [(pid, 1)]

    project = await env["store"].get_project(pid)
    assert project.status == ProjectStatus.DEPLOYED
    assert project.deployment_url == "https://app.example.dev"

    deployment = await env["store"].get_deployment_for_job(job_id)
    assert deployment.status == DeploymentStatus.SUCCESS
    assert deployment.provider_ref["deployment_id"] == "dep-1"
    assert events[-1].type == EVENT_COMPLETE


@pytest.mark.asyncio
async def test_defaults_to_current_version(env):
    provider = ScriptedProvider([ProviderState.SUCCESS])
    await env["queue"].enqueue({"project_id": env["project_id"]})

    await _worker(env, provider).run_once()

    assert provider.started == [(env["project_id"], 1)]


@pytest.mark.asyncio
async def test_failed_deploy_retries_then_marks_project(env):
    pid = env["project_id"]
    events = []
    env["bus"].subscribe(pid, events.append)
    provider = ScriptedProvider([ProviderState.FAILED])
    job_id = await env["queue"].enqueue({"project_id": pid})
    worker = _worker(env, provider)

    await worker.run_once()

    assert (await env["queue"].get(job_id)).state == JobState.DELAYED
    deployment = await env["store"].get_deployment_for_job(job_id)
    assert deployment.error_message == "npm install failed"
    assert deployment.logs == "npm ERR! missing script: build"

    await worker.run_once()

    job = await env["queue"].get(job_id)
    assert job.state == JobState.FAILED
    # Both attempts share one deployment record
    assert len(await env["store"].list_deployments(pid)) == 1
    deployment = await env["store"].get_deployment_for_job(job_id)
    assert deployment.status == DeploymentStatus.FAILED

    project = await env["store"].get_project(pid)
    assert project.status == ProjectStatus.FAILED
    assert project.error_message == "Deployment failed: npm install failed"
    assert events[-1].type == EVENT_ERROR
    assert events[-1].stage == "deploy_failed"


@pytest.mark.asyncio
async def test_deploy_timeout(env):
    provider = ScriptedProvider([ProviderState.BUILDING])
    job_id = await env["queue"].enqueue({"project_id": env["project_id"]})

    await _worker(env, provider, timeout=0.05).run_once()

    job = await env["queue"].get(job_id)
    assert job.state == JobState.DELAYED
    assert "timed out" in job.last_error


@pytest.mark.asyncio
async def test_start_failure(env):
    provider = ScriptedProvider(
        [ProviderState.SUCCESS], start_error=ProviderDeployFailure("provider unreachable")
    )
    job_id = await env["queue"].enqueue({"project_id": env["project_id"]})

    await _worker(env, provider).run_once()

    job = await env["queue"].get(job_id)
    assert job.state == JobState.DELAYED
    assert "unreachable" in job.last_error


@pytest.mark.asyncio
async def test_missing_version_fails_without_retry(env):
    job_id = await env["queue"].enqueue({"project_id": env["project_id"], "version_number": 9})

    await _worker(env, ScriptedProvider([ProviderState.SUCCESS])).run_once()

    job = await env["queue"].get(job_id)
    assert job.state == JobState.FAILED
    assert job.attempts == 1


class TestParseState:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("READY", ProviderState.SUCCESS),
            ("error", ProviderState.FAILED),
            ("canceled", ProviderState.FAILED),
            ("initializing", ProviderState.QUEUED),
            ("something-new", ProviderState.BUILDING),
            (None, ProviderState.BUILDING),
        ],
    )
    def test_aliases(self, raw, expected):
        assert parse_state(raw) == expected


class TestHttpDeployProvider:
    @staticmethod
    def _version():
        return VersionRecord(
            project_id="p1",
            version_number=3,
            snapshot={"index.html": "<html></html>"},
            created_at=datetime.now(timezone.utc),
        )

    @pytest.mark.asyncio
    async def test_start_poll_and_logs(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.method == "POST":
                return httpx.Response(201, json={"id": 42, "url": "https://x.dev"})
            if request.url.path.endswith("/logs"):
                return httpx.Response(200, text="build ok")
            return httpx.Response(200, json={"status": "READY"})

        provider = HttpDeployProvider(
            "https://deploy.example.com/api/", "secret", transport=httpx.MockTransport(handler)
        )
        try:
            handle = await provider.start("p1", self._version())
            status = await provider.poll_status(handle)
            logs = await provider.fetch_logs(handle)
        finally:
            await provider.close()

        assert handle.deployment_id == "42"
        assert status.state == ProviderState.SUCCESS
        assert status.terminal
        assert status.url == "https://x.dev"
        assert logs == "build ok"

        body = json.loads(seen[0].content)
        assert body["version"] == 3
        assert body["files"] == [{"path": "index.html", "content": "<html></html>"}]
        assert seen[0].headers["Authorization"] == "Bearer secret"
        assert seen[1].url.path == "/api/deployments/42"

    @pytest.mark.asyncio
    async def test_http_error_becomes_deploy_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="internal error")

        provider = HttpDeployProvider(
            "https://deploy.example.com", transport=httpx.MockTransport(handler)
        )
        try:
            with pytest.raises(ProviderDeployFailure) as exc_info:
                await provider.start("p1", self._version())
        finally:
            await provider.close()

        assert "500" in str(exc_info.value)
        assert exc_info.value.logs == "internal error"
        assert exc_info.value.retryable
