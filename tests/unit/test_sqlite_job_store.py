# tests/unit/test_sqlite_job_store.py
"""
Unit tests for SQLiteJobStore persistence.

Tests CRUD operations, atomic claims, stall recovery, ordering and pruning.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

from buildloop.errors import JobAlreadyActive
from buildloop.models.jobs import STALL_LIMIT_ERROR, JobRecord, JobState
from buildloop.models.sqlite_store import SQLiteJobStore

NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> SQLiteJobStore:
    """Create and initialize a test SQLite store."""
    store = SQLiteJobStore(str(tmp_path / "test_jobs.db"))
    await store.initialize()
    yield store
    await store.close()


def _record(job_id: str, project_id: str | None = "p1", **kwargs) -> JobRecord:
    defaults = dict(
        job_id=job_id,
        queue_name="build",
        payload={"project_id": project_id, "message": "make a todo app"},
        project_id=project_id,
        state=JobState.WAITING,
        max_attempts=3,
        timeout_seconds=300.0,
        enqueued_at=NOW,
        available_at=NOW,
    )
    defaults.update(kwargs)
    return JobRecord(**defaults)


@pytest.mark.asyncio
async def test_add_and_get_roundtrip(store: SQLiteJobStore):
    """Test adding a job and retrieving it preserves all fields."""
    record = _record("job-001", priority=2, repeat_every=30.0)
    await store.add(record)

    retrieved = await store.get("job-001")

    assert retrieved == record


@pytest.mark.asyncio
async def test_get_missing_returns_none(store: SQLiteJobStore):
    assert await store.get("nope") is None


@pytest.mark.asyncio
async def test_add_duplicate_raises_error(store: SQLiteJobStore):
    await store.add(_record("job-001"))

    with pytest.raises(ValueError, match="already exists"):
        await store.add(_record("job-001"))


@pytest.mark.asyncio
async def test_exclusive_add_rejects_open_job(store: SQLiteJobStore):
    await store.add(_record("job-001"), exclusive=True)

    with pytest.raises(JobAlreadyActive):
        await store.add(_record("job-002"), exclusive=True)

    assert await store.get("job-002") is None


@pytest.mark.asyncio
async def test_exclusive_add_ignores_finished_jobs(store: SQLiteJobStore):
    await store.add(_record("job-001", state=JobState.FAILED))

    await store.add(_record("job-002"), exclusive=True)

    assert await store.get("job-002") is not None


@pytest.mark.asyncio
async def test_claim_next_marks_active(store: SQLiteJobStore):
    await store.add(_record("job-001"))
    lease = NOW + timedelta(seconds=30)

    claimed = await store.claim_next("build", "w1:0", NOW, lease)

    assert claimed.job_id == "job-001"
    assert claimed.state == JobState.ACTIVE
    assert claimed.attempts == 1
    assert claimed.worker_id == "w1:0"
    assert claimed.lease_expires_at == lease
    assert await store.claim_next("build", "w1:1", NOW, lease) is None


@pytest.mark.asyncio
async def test_claim_order_priority_then_fifo(store: SQLiteJobStore):
    await store.add(_record("old", enqueued_at=NOW - timedelta(minutes=2)))
    await store.add(_record("new", enqueued_at=NOW - timedelta(minutes=1)))
    await store.add(_record("urgent", enqueued_at=NOW, priority=10))
    lease = NOW + timedelta(seconds=30)

    order = [(await store.claim_next("build", "w", NOW, lease)).job_id for _ in range(3)]

    assert order == ["urgent", "old", "new"]


@pytest.mark.asyncio
async def test_concurrent_claims_hand_out_job_once(store: SQLiteJobStore):
    await store.add(_record("job-001"))
    lease = NOW + timedelta(seconds=30)

    results = await asyncio.gather(
        *(store.claim_next("build", f"w{i}", NOW, lease) for i in range(5))
    )

    claimed = [r for r in results if r is not None]
    assert len(claimed) == 1


@pytest.mark.asyncio
async def test_claim_ignores_other_queues(store: SQLiteJobStore):
    await store.add(_record("deploy-1", queue_name="deploy"))

    assert await store.claim_next("build", "w", NOW, NOW) is None


@pytest.mark.asyncio
async def test_finish_checks_owner(store: SQLiteJobStore):
    await store.add(_record("job-001"))
    await store.claim_next("build", "w1", NOW, NOW + timedelta(seconds=30))

    assert not await store.finish("job-001", "w2", state=JobState.COMPLETED)
    assert await store.finish(
        "job-001", "w1", state=JobState.COMPLETED, result={"version_number": 1}, worker_id=None
    )

    job = await store.get("job-001")
    assert job.state == JobState.COMPLETED
    assert job.result == {"version_number": 1}
    assert job.worker_id is None
    # Not active any more, so nobody owns it
    assert not await store.renew_lease("job-001", "w1", NOW)


@pytest.mark.asyncio
async def test_cancel_pending_skips_claimed_jobs(store: SQLiteJobStore):
    await store.add(_record("job-001", project_id="p1"))
    await store.add(_record("job-002", project_id="p2", state=JobState.DELAYED))
    await store.claim_next("build", "w1", NOW, NOW + timedelta(seconds=30))

    assert not await store.cancel_pending("job-001", "Cancelled by user", NOW)
    assert await store.cancel_pending("job-002", "Cancelled by user", NOW)
    assert not await store.cancel_pending("missing", "Cancelled by user", NOW)

    active = await store.get("job-001")
    assert active.state == JobState.ACTIVE
    assert active.worker_id == "w1"
    assert active.last_error is None
    cancelled = await store.get("job-002")
    assert cancelled.state == JobState.FAILED
    assert cancelled.finished_at == NOW
    assert cancelled.last_error == "Cancelled by user"

    # The claim survives and the worker can still finish it
    assert await store.finish("job-001", "w1", state=JobState.COMPLETED, worker_id=None)


@pytest.mark.asyncio
async def test_update_rejects_unknown_fields(store: SQLiteJobStore):
    await store.add(_record("job-001"))

    with pytest.raises(ValueError, match="Invalid field names"):
        await store.update("job-001", bogus=1)


@pytest.mark.asyncio
async def test_update_missing_job_raises(store: SQLiteJobStore):
    with pytest.raises(ValueError, match="not found"):
        await store.update("missing", last_error="x")


@pytest.mark.asyncio
async def test_promote_delayed_only_when_due(store: SQLiteJobStore):
    await store.add(_record("soon", state=JobState.DELAYED, available_at=NOW + timedelta(seconds=5)))
    await store.add(_record("due", state=JobState.DELAYED, available_at=NOW - timedelta(seconds=1)))

    assert await store.promote_delayed("build", NOW) == 1

    assert (await store.get("due")).state == JobState.WAITING
    assert (await store.get("soon")).state == JobState.DELAYED


@pytest.mark.asyncio
async def test_reclaim_stalled_requeues_then_fails(store: SQLiteJobStore):
    await store.add(_record("job-001"))
    await store.claim_next("build", "dead", NOW, NOW + timedelta(seconds=30))
    later = NOW + timedelta(seconds=31)

    reclaimed = await store.reclaim_stalled("build", later, max_stalls=1)

    assert [r.state for r in reclaimed] == [JobState.WAITING]
    assert reclaimed[0].attempts == 0
    assert reclaimed[0].stall_count == 1
    assert reclaimed[0].worker_id is None

    await store.claim_next("build", "dead-again", later, later + timedelta(seconds=30))
    final = await store.reclaim_stalled("build", later + timedelta(seconds=31), max_stalls=1)

    assert final[0].state == JobState.FAILED
    assert final[0].last_error == STALL_LIMIT_ERROR


@pytest.mark.asyncio
async def test_reclaim_skips_live_leases(store: SQLiteJobStore):
    await store.add(_record("job-001"))
    await store.claim_next("build", "w", NOW, NOW + timedelta(seconds=30))

    assert await store.reclaim_stalled("build", NOW + timedelta(seconds=10), max_stalls=1) == []


@pytest.mark.asyncio
async def test_list_jobs_newest_first_with_filters(store: SQLiteJobStore):
    await store.add(_record("a", enqueued_at=NOW - timedelta(minutes=2)))
    await store.add(_record("b", enqueued_at=NOW - timedelta(minutes=1), state=JobState.FAILED))
    await store.add(_record("c", project_id="p2", enqueued_at=NOW))

    assert [j.job_id for j in await store.list_jobs("build")] == ["c", "b", "a"]
    assert [j.job_id for j in await store.list_jobs("build", project_id="p1")] == ["b", "a"]
    assert [
        j.job_id for j in await store.list_jobs("build", states=[JobState.WAITING])
    ] == ["c", "a"]


@pytest.mark.asyncio
async def test_counts_and_prune(store: SQLiteJobStore):
    for i in range(4):
        await store.add(
            _record(
                f"done-{i}",
                state=JobState.COMPLETED,
                finished_at=NOW + timedelta(seconds=i),
            )
        )
    await store.add(_record("waiting"))

    removed = await store.prune("build", JobState.COMPLETED, keep=2)

    assert removed == 2
    counts = await store.counts("build")
    assert counts[JobState.COMPLETED] == 2
    assert counts[JobState.WAITING] == 1
    assert await store.get("done-3") is not None
    assert await store.get("done-0") is None


@pytest.mark.asyncio
async def test_state_survives_reopen(tmp_path: Path):
    """A second store on the same file sees jobs written by the first."""
    db_path = str(tmp_path / "shared.db")
    first = SQLiteJobStore(db_path)
    await first.initialize()
    await first.add(_record("job-001"))
    await first.claim_next("build", "w", NOW, NOW + timedelta(seconds=30))

    second = SQLiteJobStore(db_path)
    await second.initialize()
    job = await second.get("job-001")

    assert job.state == JobState.ACTIVE
    assert job.worker_id == "w"
