# buildloop/projects/__init__.py
"""Project, file, version and deployment persistence."""

from .models import (
    ChatMessage,
    Deployment,
    DeploymentStatus,
    Project,
    ProjectFile,
    ProjectStatus,
    VersionRecord,
)
from .store import FileStore, ProjectStore, SQLiteProjectStore

__all__ = [
    "ChatMessage",
    "Deployment",
    "DeploymentStatus",
    "FileStore",
    "Project",
    "ProjectFile",
    "ProjectStatus",
    "ProjectStore",
    "SQLiteProjectStore",
    "VersionRecord",
]
