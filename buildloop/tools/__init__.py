# buildloop/tools/__init__.py
"""MCP tool implementations (plain async functions; server.py registers them)."""

from .build_status import build_status
from .cancel_build import cancel_build
from .create_project import create_project
from .list_versions import list_versions
from .queue_stats import queue_stats
from .send_message import send_message

__all__ = [
    "build_status",
    "cancel_build",
    "create_project",
    "list_versions",
    "queue_stats",
    "send_message",
]
