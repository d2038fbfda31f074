# buildloop/queue/work_queue.py
"""
Durable work queue with retries, visibility timeouts and bounded history.

One WorkQueue instance per named queue (build, deploy). Instances are built
explicitly and handed to workers and enqueuers; nothing here is global.
"""

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Callable

from buildloop.config.schema import QueueConfig
from buildloop.errors import QueueUnavailable
from buildloop.models.jobs import JobRecord, JobState, generate_job_id
from buildloop.models.store import JobStore

from .backoff import BackoffPolicy, JobOptions

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Errors that mean the backing store itself is unreachable
_STORE_ERRORS = (sqlite3.OperationalError, sqlite3.DatabaseError, OSError)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _describe(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        return f"{type(error).__name__}: {error}"
    return error


class WorkQueue:
    """
    Named queue over a JobStore.

    Guarantees:
        - A job id is held by at most one worker at a time (atomic claim)
        - attempts never exceeds max_attempts
        - Retry delays follow the queue's BackoffPolicy
        - A job whose worker stops heartbeating is requeued at most
          ``max_stalls`` times, then failed
    """

    def __init__(
        self,
        name: str,
        store: JobStore,
        settings: QueueConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.name = name
        self._store = store
        self._settings = settings or QueueConfig()
        self._clock = clock or utcnow
        self._backoff = BackoffPolicy.from_config(self._settings)
        logger.info(
            f"Created WorkQueue '{name}' (attempts={self._backoff.max_attempts}, "
            f"backoff={self._backoff.base_delay}s, timeout={self._settings.timeout_seconds}s)"
        )

    @property
    def settings(self) -> QueueConfig:
        return self._settings

    @property
    def backoff(self) -> BackoffPolicy:
        return self._backoff

    @property
    def store(self) -> JobStore:
        return self._store

    async def enqueue(
        self,
        payload: dict,
        options: JobOptions | None = None,
        exclusive: bool = False,
    ) -> str:
        """
        Add a job and return its id.

        Args:
            payload: Job data; ``project_id`` is used for admission control
            options: Per-job overrides of the queue defaults
            exclusive: Reject when the project already has an open job here

        Raises:
            JobAlreadyActive: exclusive and the project has an open job
            QueueUnavailable: The backing store could not be written
        """
        options = options or JobOptions()
        now = self._clock()
        delayed = options.delay > 0

        record = JobRecord(
            job_id=generate_job_id(),
            queue_name=self.name,
            payload=payload,
            project_id=payload.get("project_id"),
            state=JobState.DELAYED if delayed else JobState.WAITING,
            max_attempts=options.max_attempts or self._backoff.max_attempts,
            timeout_seconds=options.timeout_seconds or self._settings.timeout_seconds,
            priority=options.priority,
            repeat_every=options.repeat_every,
            enqueued_at=now,
            available_at=now + timedelta(seconds=options.delay),
        )

        try:
            await self._store.add(record, exclusive=exclusive)
        except _STORE_ERRORS as e:
            raise QueueUnavailable(f"Could not enqueue {self.name} job: {e}") from e

        logger.info(
            f"Enqueued {self.name} job {record.job_id} "
            f"(project={record.project_id}, delayed={delayed})"
        )
        return record.job_id

    async def dequeue(self, worker_id: str) -> JobRecord | None:
        """
        Claim the next runnable job for ``worker_id``.

        Reclaims stalled jobs and promotes due delayed jobs first.
        """
        now = self._clock()
        try:
            for job in await self._store.reclaim_stalled(
                self.name, now, self._settings.max_stalls
            ):
                if job.state == JobState.FAILED:
                    logger.error(f"{self.name} job {job.job_id} failed: {job.last_error}")
                else:
                    logger.warning(
                        f"{self.name} job {job.job_id} stalled, requeued "
                        f"({job.stall_count}/{self._settings.max_stalls})"
                    )

            await self._store.promote_delayed(self.name, now)

            job = await self._store.claim_next(
                self.name,
                worker_id,
                now,
                now + timedelta(seconds=self._settings.lease_seconds),
            )
        except _STORE_ERRORS as e:
            raise QueueUnavailable(f"Could not dequeue from {self.name}: {e}") from e

        if job:
            logger.info(
                f"Worker {worker_id} claimed {self.name} job {job.job_id} "
                f"(attempt {job.attempts}/{job.max_attempts})"
            )
        return job

    async def heartbeat(self, job_id: str, worker_id: str) -> bool:
        """Renew the lease; False means the worker lost the job."""
        lease_until = self._clock() + timedelta(seconds=self._settings.lease_seconds)
        return await self._store.renew_lease(job_id, worker_id, lease_until)

    async def complete(self, job_id: str, worker_id: str, result: dict | None = None) -> bool:
        """
        Mark an owned job completed.

        Returns:
            False if the worker no longer owns the job (nothing changed)
        """
        job = await self._store.get(job_id)
        owned = await self._store.finish(
            job_id,
            worker_id,
            state=JobState.COMPLETED,
            finished_at=self._clock(),
            result=result,
            worker_id=None,
            lease_expires_at=None,
        )
        if not owned:
            logger.warning(f"Worker {worker_id} lost {self.name} job {job_id} before completing")
            return False

        logger.info(f"{self.name} job {job_id} completed")
        await self._store.prune(self.name, JobState.COMPLETED, self._settings.remove_on_complete)

        if job and job.repeat_every:
            await self.enqueue(
                job.payload,
                JobOptions(
                    max_attempts=job.max_attempts,
                    timeout_seconds=job.timeout_seconds,
                    priority=job.priority,
                    delay=job.repeat_every,
                    repeat_every=job.repeat_every,
                ),
            )
        return True

    async def fail(
        self,
        job_id: str,
        worker_id: str,
        error: BaseException | str,
        retryable: bool = True,
    ) -> JobState | None:
        """
        Record a failed attempt.

        Retryable failures with attempts left go to ``delayed`` with the
        backoff delay; everything else fails terminally.

        Returns:
            The job's new state, or None if the worker no longer owns it
        """
        job = await self._store.get(job_id)
        if job is None:
            return None

        now = self._clock()
        message = _describe(error)

        if retryable and self._backoff.should_retry(job.attempts, job.max_attempts):
            delay = self._backoff.delay_for(job.attempts)
            owned = await self._store.finish(
                job_id,
                worker_id,
                state=JobState.DELAYED,
                available_at=now + timedelta(seconds=delay),
                last_error=message,
                worker_id=None,
                lease_expires_at=None,
            )
            if not owned:
                return None
            logger.warning(
                f"{self.name} job {job_id} attempt {job.attempts}/{job.max_attempts} "
                f"failed, retrying in {delay:.1f}s: {message}"
            )
            return JobState.DELAYED

        owned = await self._store.finish(
            job_id,
            worker_id,
            state=JobState.FAILED,
            finished_at=now,
            last_error=message,
            worker_id=None,
            lease_expires_at=None,
        )
        if not owned:
            return None
        logger.error(f"{self.name} job {job_id} failed after {job.attempts} attempt(s): {message}")
        await self._store.prune(self.name, JobState.FAILED, self._settings.remove_on_fail)
        return JobState.FAILED

    async def release(self, job_id: str, worker_id: str) -> bool:
        """Return an owned job to waiting without charging the attempt (shutdown)."""
        job = await self._store.get(job_id)
        if job is None:
            return False
        released = await self._store.finish(
            job_id,
            worker_id,
            state=JobState.WAITING,
            attempts=max(job.attempts - 1, 0),
            worker_id=None,
            lease_expires_at=None,
            last_error="released on shutdown",
        )
        if released:
            logger.info(f"Released {self.name} job {job_id} back to the queue")
        return released

    async def cancel(self, job_id: str, reason: str) -> bool:
        """
        Fail a job that has not started yet.

        Active jobs are left alone; their handler observes cancellation itself.

        Returns:
            True if the job was waiting or delayed and is now failed
        """
        if not await self._store.cancel_pending(job_id, reason, self._clock()):
            return False
        logger.info(f"Cancelled {self.name} job {job_id}: {reason}")
        return True

    async def get(self, job_id: str) -> JobRecord | None:
        return await self._store.get(job_id)

    async def jobs_for_project(
        self, project_id: str, states: list[JobState] | None = None
    ) -> list[JobRecord]:
        return await self._store.list_jobs(self.name, states=states, project_id=project_id)

    async def stats(self) -> dict[str, int]:
        """Counts per state; read-only."""
        counts = await self._store.counts(self.name)
        return {state.value: counts.get(state, 0) for state in JobState}
