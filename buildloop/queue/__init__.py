# buildloop/queue/__init__.py
"""Work queues for build and deploy jobs."""

from .backoff import BackoffPolicy, JobOptions
from .work_queue import WorkQueue

__all__ = ["BackoffPolicy", "JobOptions", "WorkQueue"]
