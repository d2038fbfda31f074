# buildloop/tools/queue_stats.py
"""queue_stats tool implementation."""

from buildloop.models.responses import QueueStatsResponse
from buildloop.queue.work_queue import WorkQueue


async def queue_stats(build_queue: WorkQueue, deploy_queue: WorkQueue) -> dict:
    """
    Job counts per state for both queues.

    Returns:
        QueueStatsResponse as dict
    """
    response = QueueStatsResponse(
        build=await build_queue.stats(),
        deploy=await deploy_queue.stats(),
    )
    return response.model_dump()
