# buildloop/models/__init__.py
"""Job records, job stores and MCP response models."""

from .jobs import (
    BUILD_QUEUE,
    DEPLOY_QUEUE,
    InMemoryJobStore,
    JobRecord,
    JobState,
    generate_job_id,
)
from .sqlite_store import SQLiteJobStore
from .store import JobStore

__all__ = [
    "BUILD_QUEUE",
    "DEPLOY_QUEUE",
    "JobRecord",
    "JobState",
    "JobStore",
    "InMemoryJobStore",
    "SQLiteJobStore",
    "generate_job_id",
]
