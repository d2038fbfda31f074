# buildloop/progress/__init__.py
"""Live progress fan-out for build and deploy jobs."""

from .bus import (
    EVENT_COMPLETE,
    EVENT_ERROR,
    EVENT_PROGRESS,
    JobProgress,
    ProgressBus,
    ProgressEvent,
    Subscription,
)
from .stream import format_sse, stream_events

__all__ = [
    "EVENT_COMPLETE",
    "EVENT_ERROR",
    "EVENT_PROGRESS",
    "JobProgress",
    "ProgressBus",
    "ProgressEvent",
    "Subscription",
    "format_sse",
    "stream_events",
]
