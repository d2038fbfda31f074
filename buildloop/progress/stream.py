# buildloop/progress/stream.py
"""Server-sent-event framing of a project's progress stream."""

import json
from typing import AsyncIterator

from .bus import ProgressBus


def format_sse(data: dict) -> str:
    """Frame one JSON payload as an SSE ``data:`` message."""
    return f"data: {json.dumps(data)}\n\n"


async def stream_events(
    bus: ProgressBus,
    project_id: str,
    stop_on_terminal: bool = False,
    maxsize: int | None = None,
) -> AsyncIterator[str]:
    """
    Yield SSE frames for ``project_id`` until the consumer goes away.

    The first frame always announces the connection. The subscription is
    released when the generator is closed or cancelled (client disconnect).

    Args:
        bus: Bus to subscribe to
        project_id: Project whose events are streamed
        stop_on_terminal: End the stream after a complete/error event
        maxsize: Events buffered before new ones are dropped
    """
    async with bus.open(project_id, maxsize) as subscription:
        yield format_sse({"type": "connected", "projectId": project_id})
        async for event in subscription:
            yield format_sse(event.to_dict())
            if stop_on_terminal and event.terminal:
                return
