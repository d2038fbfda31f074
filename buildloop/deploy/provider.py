# buildloop/deploy/provider.py
"""
Deployment provider interface and an HTTP implementation.

A provider receives a version snapshot, starts a deployment and reports its
status until it succeeds or fails. The deploy worker owns retries, timeouts
and bookkeeping; providers only talk to the remote API.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

import httpx

from buildloop.errors import ProviderDeployFailure
from buildloop.projects.models import VersionRecord

logger = logging.getLogger(__name__)


class ProviderState(Enum):
    """Provider-side lifecycle of one deployment."""

    QUEUED = "queued"
    BUILDING = "building"
    DEPLOYING = "deploying"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_STATES = (ProviderState.SUCCESS, ProviderState.FAILED)

# Remote status strings -> ProviderState (unknown strings count as building)
_STATE_ALIASES = {
    "queued": ProviderState.QUEUED,
    "initializing": ProviderState.QUEUED,
    "pending": ProviderState.QUEUED,
    "building": ProviderState.BUILDING,
    "deploying": ProviderState.DEPLOYING,
    "success": ProviderState.SUCCESS,
    "ready": ProviderState.SUCCESS,
    "failed": ProviderState.FAILED,
    "error": ProviderState.FAILED,
    "crashed": ProviderState.FAILED,
    "canceled": ProviderState.FAILED,
    "cancelled": ProviderState.FAILED,
}


def parse_state(value: str | None) -> ProviderState:
    return _STATE_ALIASES.get((value or "").lower(), ProviderState.BUILDING)


@dataclass
class DeploymentHandle:
    """Reference to a deployment the provider started."""

    deployment_id: str
    url: str | None = None
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"deployment_id": self.deployment_id, "url": self.url, **self.extra}


@dataclass
class ProviderStatus:
    """One status poll result."""

    state: ProviderState
    url: str | None = None
    error: str | None = None

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class DeployProvider(ABC):
    """What the deploy worker needs from a hosting provider."""

    @abstractmethod
    async def start(self, project_id: str, version: VersionRecord) -> DeploymentHandle:
        """
        Start deploying ``version``.

        Raises:
            ProviderDeployFailure: The provider rejected the request or was unreachable
        """
        pass

    @abstractmethod
    async def poll_status(self, handle: DeploymentHandle) -> ProviderStatus:
        pass

    @abstractmethod
    async def fetch_logs(self, handle: DeploymentHandle) -> str:
        """Build/deploy logs, "" when the provider has none."""
        pass


class HttpDeployProvider(DeployProvider):
    """
    Provider speaking a small REST API.

    POST   {base_url}/deployments              -> {"id", "url", "status"}
    GET    {base_url}/deployments/{id}         -> {"status", "url", "error"}
    GET    {base_url}/deployments/{id}/logs    -> text/plain
    """

    def __init__(
        self,
        base_url: str,
        api_token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_token}"} if api_token else {}
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ProviderDeployFailure(
                f"Deploy provider returned {e.response.status_code} for {method} {path}",
                logs=e.response.text or None,
            ) from e
        except httpx.HTTPError as e:
            raise ProviderDeployFailure(f"Deploy provider unreachable: {e}") from e
        return response

    async def start(self, project_id: str, version: VersionRecord) -> DeploymentHandle:
        body = {
            "project": project_id,
            "version": version.version_number,
            "files": [
                {"path": path, "content": content}
                for path, content in sorted(version.snapshot.items())
            ],
        }
        response = await self._request("POST", "/deployments", json=body)
        data = response.json()
        handle = DeploymentHandle(deployment_id=str(data["id"]), url=data.get("url"))
        logger.info(f"Started deployment {handle.deployment_id} for project {project_id}")
        return handle

    async def poll_status(self, handle: DeploymentHandle) -> ProviderStatus:
        response = await self._request("GET", f"/deployments/{handle.deployment_id}")
        data = response.json()
        return ProviderStatus(
            state=parse_state(data.get("status")),
            url=data.get("url") or handle.url,
            error=data.get("error"),
        )

    async def fetch_logs(self, handle: DeploymentHandle) -> str:
        response = await self._request("GET", f"/deployments/{handle.deployment_id}/logs")
        return response.text
