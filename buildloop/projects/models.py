# buildloop/projects/models.py
"""Project-side records: projects, files, versions, messages, deployments."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ProjectStatus(Enum):
    """Project lifecycle states."""

    DRAFT = "draft"
    BUILDING = "building"
    READY = "ready"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    FAILED = "failed"


class DeploymentStatus(Enum):
    """Deployment record states."""

    PENDING = "pending"
    BUILDING = "building"
    DEPLOYING = "deploying"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class Project:
    project_id: str
    name: str
    status: ProjectStatus
    created_at: datetime
    updated_at: datetime
    build_progress: int = 0
    current_build_stage: str | None = None
    error_message: str | None = None
    deployment_url: str | None = None
    env_vars_needed: list[str] = field(default_factory=list)
    current_version: int = 0


@dataclass
class ProjectFile:
    path: str
    content: str
    language: str | None = None


@dataclass
class VersionRecord:
    """Immutable snapshot written after every accepted ChangeSet."""

    project_id: str
    version_number: int
    snapshot: dict[str, str]
    created_at: datetime
    prompt_summary: str | None = None
    diff_summary: str | None = None
    commit_sha: str | None = None


@dataclass
class ChatMessage:
    message_id: str
    project_id: str
    conversation_id: str
    role: str
    content: str
    created_at: datetime
    metadata: dict | None = None


@dataclass
class Deployment:
    deployment_id: str
    project_id: str
    status: DeploymentStatus
    created_at: datetime
    updated_at: datetime
    job_id: str | None = None
    version_number: int | None = None
    provider_ref: dict | None = None
    url: str | None = None
    error_message: str | None = None
    logs: str | None = None
