# buildloop/models/jobs.py
"""
Job records and the in-memory job store.

Internal models (NOT exposed via MCP) shared by both work queues.
"""

import logging
from dataclasses import dataclass, fields, replace
from datetime import datetime
from enum import Enum
from uuid import uuid4

from buildloop.errors import JobAlreadyActive
from buildloop.models.store import JobStore

logger = logging.getLogger(__name__)

BUILD_QUEUE = "build"
DEPLOY_QUEUE = "deploy"


class JobState(Enum):
    """Job lifecycle states."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


# States that still hold a claim on their project
OPEN_STATES = (JobState.WAITING, JobState.DELAYED, JobState.ACTIVE)

STALL_LIMIT_ERROR = "job stalled more than allowed limit"


@dataclass
class JobRecord:
    """
    Internal job record (NOT Pydantic - not exposed via MCP).

    ``attempts`` counts claims that were not refunded; it never exceeds
    ``max_attempts``.
    """

    job_id: str
    queue_name: str
    payload: dict
    state: JobState
    max_attempts: int
    timeout_seconds: float
    enqueued_at: datetime
    available_at: datetime
    project_id: str | None = None
    attempts: int = 0
    priority: int = 0
    repeat_every: float | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    last_error: str | None = None
    result: dict | None = None
    worker_id: str | None = None
    lease_expires_at: datetime | None = None
    stall_count: int = 0


UPDATABLE_FIELDS = frozenset(f.name for f in fields(JobRecord)) - {"job_id", "queue_name"}


def _claim_order(record: JobRecord) -> tuple:
    return (-record.priority, record.enqueued_at)


class InMemoryJobStore(JobStore):
    """
    Simple in-memory job storage.

    Every method body runs without awaiting, so each call is atomic on a
    single event loop. Returned records are copies; mutate through the store.
    """

    def __init__(self) -> None:
        """Initialize empty job store."""
        self._jobs: dict[str, JobRecord] = {}
        logger.info("Initialized InMemoryJobStore")

    async def initialize(self) -> None:
        return None

    async def add(self, record: JobRecord, exclusive: bool = False) -> None:
        if record.job_id in self._jobs:
            raise ValueError(f"Job {record.job_id} already exists")

        if exclusive and record.project_id and self._has_open(record.queue_name, record.project_id):
            raise JobAlreadyActive(
                f"Project {record.project_id} already has an open {record.queue_name} job"
            )

        self._jobs[record.job_id] = replace(record)
        logger.info(f"Added job {record.job_id} to {record.queue_name} queue")

    async def get(self, job_id: str) -> JobRecord | None:
        record = self._jobs.get(job_id)
        return replace(record) if record else None

    async def list_jobs(
        self,
        queue_name: str,
        states: list[JobState] | None = None,
        project_id: str | None = None,
    ) -> list[JobRecord]:
        records = [
            r
            for r in self._jobs.values()
            if r.queue_name == queue_name
            and (states is None or r.state in states)
            and (project_id is None or r.project_id == project_id)
        ]
        records.sort(key=lambda r: r.enqueued_at, reverse=True)
        return [replace(r) for r in records]

    async def update(self, job_id: str, **kwargs) -> None:
        record = self._jobs.get(job_id)
        if not record:
            raise ValueError(f"Job {job_id} not found")

        invalid = set(kwargs) - UPDATABLE_FIELDS
        if invalid:
            raise ValueError(f"Invalid field names: {invalid}")

        for key, value in kwargs.items():
            setattr(record, key, value)

    async def claim_next(
        self, queue_name: str, worker_id: str, now: datetime, lease_until: datetime
    ) -> JobRecord | None:
        waiting = [
            r
            for r in self._jobs.values()
            if r.queue_name == queue_name and r.state == JobState.WAITING
        ]
        if not waiting:
            return None

        record = min(waiting, key=_claim_order)
        record.state = JobState.ACTIVE
        record.worker_id = worker_id
        record.started_at = now
        record.lease_expires_at = lease_until
        record.attempts += 1
        return replace(record)

    async def promote_delayed(self, queue_name: str, now: datetime) -> int:
        promoted = 0
        for record in self._jobs.values():
            if (
                record.queue_name == queue_name
                and record.state == JobState.DELAYED
                and record.available_at <= now
            ):
                record.state = JobState.WAITING
                promoted += 1
        return promoted

    async def reclaim_stalled(
        self, queue_name: str, now: datetime, max_stalls: int
    ) -> list[JobRecord]:
        reclaimed = []
        for record in self._jobs.values():
            if (
                record.queue_name != queue_name
                or record.state != JobState.ACTIVE
                or record.lease_expires_at is None
                or record.lease_expires_at > now
            ):
                continue

            if record.stall_count < max_stalls:
                record.state = JobState.WAITING
                record.stall_count += 1
                record.attempts = max(record.attempts - 1, 0)
                record.last_error = "lease expired"
            else:
                record.state = JobState.FAILED
                record.finished_at = now
                record.last_error = STALL_LIMIT_ERROR
            record.worker_id = None
            record.lease_expires_at = None
            reclaimed.append(replace(record))
        return reclaimed

    async def renew_lease(self, job_id: str, owner: str, lease_until: datetime) -> bool:
        record = self._owned(job_id, owner)
        if record is None:
            return False
        record.lease_expires_at = lease_until
        return True

    async def finish(self, job_id: str, owner: str, **kwargs) -> bool:
        invalid = set(kwargs) - UPDATABLE_FIELDS
        if invalid:
            raise ValueError(f"Invalid field names: {invalid}")

        record = self._owned(job_id, owner)
        if record is None:
            return False
        for key, value in kwargs.items():
            setattr(record, key, value)
        return True

    async def cancel_pending(self, job_id: str, reason: str, now: datetime) -> bool:
        record = self._jobs.get(job_id)
        if record is None or record.state not in (JobState.WAITING, JobState.DELAYED):
            return False
        record.state = JobState.FAILED
        record.finished_at = now
        record.last_error = reason
        return True

    async def counts(self, queue_name: str) -> dict[JobState, int]:
        totals = {state: 0 for state in JobState}
        for record in self._jobs.values():
            if record.queue_name == queue_name:
                totals[record.state] += 1
        return totals

    async def prune(self, queue_name: str, state: JobState, keep: int) -> int:
        finished = [
            r for r in self._jobs.values() if r.queue_name == queue_name and r.state == state
        ]
        finished.sort(key=lambda r: r.finished_at or r.enqueued_at, reverse=True)
        for record in finished[keep:]:
            del self._jobs[record.job_id]
        return max(len(finished) - keep, 0)

    async def close(self) -> None:
        return None

    def _owned(self, job_id: str, owner: str) -> JobRecord | None:
        record = self._jobs.get(job_id)
        if record is None or record.state != JobState.ACTIVE or record.worker_id != owner:
            return None
        return record

    def _has_open(self, queue_name: str, project_id: str) -> bool:
        return any(
            r.queue_name == queue_name and r.project_id == project_id and r.state in OPEN_STATES
            for r in self._jobs.values()
        )


def generate_job_id() -> str:
    """
    Generate a unique job ID.

    Returns:
        12-character hex string (UUID4 truncated)
    """
    return uuid4().hex[:12]
