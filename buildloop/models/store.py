# buildloop/models/store.py
"""
Job store protocol definition.

Defines the abstract interface that both InMemoryJobStore and SQLiteJobStore
implement. The WorkQueue is the only caller; every method that changes a job's
state must be atomic with respect to concurrent callers.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from buildloop.models.jobs import JobRecord, JobState


class JobStore(ABC):
    """Abstract base class for job storage implementations."""

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the backing storage (schema, connections)."""
        pass

    @abstractmethod
    async def add(self, record: "JobRecord", exclusive: bool = False) -> None:
        """
        Add a job record to the store.

        Args:
            record: JobRecord to add
            exclusive: Refuse the insert when the record's project already has
                a waiting, delayed or active job on the same queue

        Raises:
            ValueError: If job_id already exists
            JobAlreadyActive: If exclusive and an open job exists
        """
        pass

    @abstractmethod
    async def get(self, job_id: str) -> "JobRecord | None":
        """
        Get a job record by ID.

        Returns:
            JobRecord if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_jobs(
        self,
        queue_name: str,
        states: "list[JobState] | None" = None,
        project_id: str | None = None,
    ) -> "list[JobRecord]":
        """
        List jobs of one queue, newest first.

        Args:
            queue_name: Queue to list
            states: Optional state filter
            project_id: Optional project filter
        """
        pass

    @abstractmethod
    async def update(self, job_id: str, **kwargs) -> None:
        """
        Update fields on an existing job record unconditionally.

        Raises:
            ValueError: If job_id doesn't exist or a field name is invalid
        """
        pass

    @abstractmethod
    async def claim_next(
        self, queue_name: str, worker_id: str, now: datetime, lease_until: datetime
    ) -> "JobRecord | None":
        """
        Atomically move the best waiting job to active.

        Highest priority first, then oldest. Increments attempts and records
        the owner and its lease.

        Returns:
            The claimed job, or None if nothing is waiting
        """
        pass

    @abstractmethod
    async def promote_delayed(self, queue_name: str, now: datetime) -> int:
        """Move delayed jobs whose available_at has passed back to waiting."""
        pass

    @abstractmethod
    async def reclaim_stalled(
        self, queue_name: str, now: datetime, max_stalls: int
    ) -> "list[JobRecord]":
        """
        Handle active jobs whose lease expired.

        A job is requeued (attempt refunded, stall_count incremented) while
        stall_count < max_stalls, and failed terminally otherwise.

        Returns:
            The affected jobs after the change
        """
        pass

    @abstractmethod
    async def renew_lease(self, job_id: str, owner: str, lease_until: datetime) -> bool:
        """Extend the lease if ``owner`` still holds the active job."""
        pass

    @abstractmethod
    async def finish(self, job_id: str, owner: str, **kwargs) -> bool:
        """
        Update an active job only if ``owner`` still holds it.

        ``owner`` is the claiming worker id; ``kwargs`` may themselves set
        ``worker_id`` (cleared when the job leaves active).

        Returns:
            False when ownership was lost (job reclaimed or already finished)
        """
        pass

    @abstractmethod
    async def cancel_pending(self, job_id: str, reason: str, now: datetime) -> bool:
        """
        Fail a job only if it is still waiting or delayed.

        The state check and the update happen atomically, so a job claimed
        concurrently is never overwritten.

        Returns:
            True if the job was pending and is now failed
        """
        pass

    @abstractmethod
    async def counts(self, queue_name: str) -> "dict[JobState, int]":
        """Count jobs per state (every state present, zero if empty)."""
        pass

    @abstractmethod
    async def prune(self, queue_name: str, state: "JobState", keep: int) -> int:
        """Delete all but the `keep` most recently finished jobs in `state`."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release storage resources."""
        pass
