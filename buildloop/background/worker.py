# buildloop/background/worker.py
"""
Queue worker base: polls a WorkQueue with N slots on one event loop.

Each slot claims one job at a time, runs the handler under the job's hard
timeout, keeps the lease alive with a heartbeat and records the outcome.
Subclasses implement handle() and, optionally, on_failure().
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod

from buildloop.errors import BuildLoopError, QueueUnavailable
from buildloop.models.jobs import JobRecord, JobState
from buildloop.queue.work_queue import WorkQueue

logger = logging.getLogger(__name__)


class JobTimeout(BuildLoopError):
    """The handler ran past the job's timeout_seconds."""

    retryable = True


class QueueWorker(ABC):
    """
    Concurrent queue consumer.

    Features:
        - ``concurrency`` slot tasks, each processing one job at a time
        - Hard per-job timeout (counts as a failed, retryable attempt)
        - Heartbeat lease renewal; a lost lease cancels the handler
        - Shutdown releases in-flight jobs back to the queue
    """

    def __init__(
        self,
        queue: WorkQueue,
        concurrency: int | None = None,
        poll_interval: float | None = None,
    ) -> None:
        """
        Initialize queue worker.

        Args:
            queue: Queue to consume
            concurrency: Slot count (default: the queue's configured concurrency)
            poll_interval: Seconds between polls when idle (default: queue setting)
        """
        self._queue = queue
        self._concurrency = concurrency or queue.settings.concurrency
        self._poll_interval = poll_interval or queue.settings.poll_interval
        self._worker_id = f"{queue.name}-{uuid.uuid4().hex[:8]}"
        self._tasks: list[asyncio.Task] = []
        self._active: dict[str, str] = {}  # slot worker id -> job id

        logger.info(
            f"Initialized {type(self).__name__} {self._worker_id} "
            f"(concurrency={self._concurrency}, poll_interval={self._poll_interval}s)"
        )

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def queue(self) -> WorkQueue:
        return self._queue

    @property
    def active_jobs(self) -> list[str]:
        """Job ids currently being processed (empty if idle)."""
        return list(self._active.values())

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        """Start the slot tasks."""
        if self._tasks:
            logger.warning(f"Worker {self._worker_id} already started")
            return

        self._tasks = [
            asyncio.create_task(self._slot_loop(f"{self._worker_id}:{slot}"))
            for slot in range(self._concurrency)
        ]
        logger.info(f"Worker {self._worker_id} started")

    async def stop(self) -> None:
        """
        Stop gracefully.

        Cancels every slot; jobs in flight are released back to the queue.
        """
        if not self._tasks:
            logger.warning(f"Worker {self._worker_id} not running")
            return

        logger.info(f"Stopping worker {self._worker_id}...")
        for task in self._tasks:
            task.cancel()
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Worker slot ended with error: {result}")

        self._tasks = []
        logger.info(f"Worker {self._worker_id} stopped")

    async def _slot_loop(self, slot_id: str) -> None:
        logger.info(f"Worker slot {slot_id} started")
        try:
            while True:
                try:
                    processed = await self.run_once(slot_id)
                except QueueUnavailable as e:
                    logger.error(f"Worker slot {slot_id}: {e}")
                    processed = False

                if not processed:
                    await asyncio.sleep(self._poll_interval)
        except asyncio.CancelledError:
            logger.info(f"Worker slot {slot_id} cancelled")
            raise

    async def run_once(self, slot_id: str | None = None) -> bool:
        """
        Claim and process at most one job.

        Returns:
            True if a job was processed, False if the queue had nothing runnable
        """
        owner = slot_id or f"{self._worker_id}:0"
        job = await self._queue.dequeue(owner)
        if job is None:
            return False

        self._active[owner] = job.job_id
        try:
            await self._process(job, owner)
        finally:
            self._active.pop(owner, None)
        return True

    async def _process(self, job: JobRecord, owner: str) -> None:
        handler = asyncio.create_task(
            asyncio.wait_for(self.handle(job), timeout=job.timeout_seconds)
        )
        lease_lost = asyncio.Event()
        heartbeat = asyncio.create_task(self._heartbeat(job, owner, handler, lease_lost))

        try:
            result = await handler

        except asyncio.CancelledError:
            if lease_lost.is_set() and handler.cancelled() and not _current_task_cancelling():
                # Someone else owns the job now; record nothing
                logger.warning(
                    f"Job {job.job_id} lost its lease, handler cancelled",
                    extra=self._log_context(job, owner),
                )
                return
            logger.warning(
                f"Job {job.job_id} interrupted by shutdown", extra=self._log_context(job, owner)
            )
            try:
                await self._queue.release(job.job_id, owner)
            except Exception as e:
                logger.error(f"Failed to release job {job.job_id}: {e}")
            raise

        except asyncio.TimeoutError:
            error = JobTimeout(f"Job timed out after {job.timeout_seconds:.0f}s")
            await self._record_failure(job, owner, error)

        except Exception as e:
            await self._record_failure(job, owner, e)

        else:
            await self._queue.complete(job.job_id, owner, result)

        finally:
            heartbeat.cancel()

    def _log_context(self, job: JobRecord, owner: str) -> dict:
        return {
            "job_id": job.job_id,
            "project_id": job.project_id,
            "queue": self._queue.name,
            "worker": owner,
        }

    async def _record_failure(self, job: JobRecord, owner: str, error: Exception) -> None:
        retryable = error.retryable if isinstance(error, BuildLoopError) else True
        logger.error(
            f"Job {job.job_id} failed: {type(error).__name__}: {error}",
            extra=self._log_context(job, owner),
        )

        state = await self._queue.fail(job.job_id, owner, error, retryable=retryable)
        if state is None:
            return
        try:
            await self.on_failure(job, error, terminal=state == JobState.FAILED)
        except Exception as e:
            logger.exception(f"Failure hook for job {job.job_id} raised: {e}")

    async def _heartbeat(
        self,
        job: JobRecord,
        owner: str,
        handler: asyncio.Task,
        lease_lost: asyncio.Event,
    ) -> None:
        interval = self._queue.settings.heartbeat_interval
        while not handler.done():
            await asyncio.sleep(interval)
            if handler.done():
                return
            try:
                owned = await self._queue.heartbeat(job.job_id, owner)
            except Exception as e:
                logger.warning(f"Heartbeat for job {job.job_id} failed: {e}")
                continue
            if not owned:
                lease_lost.set()
                handler.cancel()
                return

    @abstractmethod
    async def handle(self, job: JobRecord) -> dict | None:
        """
        Process one job.

        Returns:
            Result stored on the completed job

        Raises:
            BuildLoopError: ``retryable`` decides whether the queue retries
            Exception: Anything else is treated as transient
        """
        pass

    async def on_failure(self, job: JobRecord, error: Exception, terminal: bool) -> None:
        """Called after a failed attempt was recorded (terminal = no retries left)."""
        pass


def _current_task_cancelling() -> bool:
    task = asyncio.current_task()
    return task is not None and task.cancelling() > 0
