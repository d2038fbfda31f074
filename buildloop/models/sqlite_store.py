# buildloop/models/sqlite_store.py
"""
SQLite-backed job persistence.

Every state change runs inside a BEGIN IMMEDIATE transaction, which takes the
database write lock up front. That makes claim, reclaim and owner-checked
updates atomic across workers, including workers in other processes.
"""

import json
import logging
from datetime import datetime

import aiosqlite

from buildloop.errors import JobAlreadyActive
from buildloop.models.jobs import (
    OPEN_STATES,
    STALL_LIMIT_ERROR,
    UPDATABLE_FIELDS,
    JobRecord,
    JobState,
)
from buildloop.models.schema import init_db
from buildloop.models.store import JobStore

logger = logging.getLogger(__name__)

_DATETIME_FIELDS = {
    "enqueued_at",
    "available_at",
    "started_at",
    "finished_at",
    "lease_expires_at",
}


def _ts(value: datetime | None) -> str | None:
    # Fixed-width ISO strings so SQL comparisons order correctly
    return value.isoformat(timespec="microseconds") if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _to_column(key: str, value):
    if isinstance(value, JobState):
        return value.value
    if key in _DATETIME_FIELDS:
        return _ts(value)
    if key in ("payload", "result") and value is not None:
        return json.dumps(value)
    return value


class SQLiteJobStore(JobStore):
    """
    Async SQLite-backed job storage.

    Features:
        - WAL mode for concurrent reads/writes
        - IMMEDIATE transactions for write safety
        - No persistent connections (avoids resource leaks)
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        logger.info(f"Created SQLiteJobStore with path: {db_path}")

    @property
    def db_path(self) -> str:
        return self._db_path

    async def initialize(self) -> None:
        """
        Initialize database schema.

        Jobs left active by a dead process keep their lease; the next dequeue
        after the lease expires reclaims them.
        """
        await init_db(self._db_path)

        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute("SELECT COUNT(*) FROM jobs WHERE state = 'active'")
            (active,) = await cursor.fetchone()
        if active:
            logger.warning(
                f"Found {active} active job(s) from a previous session; "
                "they will be reclaimed once their lease expires"
            )

    async def add(self, record: JobRecord, exclusive: bool = False) -> None:
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute("SELECT id FROM jobs WHERE id = ?", (record.job_id,))
                if await cursor.fetchone():
                    raise ValueError(f"Job {record.job_id} already exists")

                if exclusive and record.project_id:
                    placeholders = ", ".join("?" for _ in OPEN_STATES)
                    cursor = await db.execute(
                        f"SELECT id FROM jobs WHERE queue_name = ? AND project_id = ? "
                        f"AND state IN ({placeholders}) LIMIT 1",
                        (record.queue_name, record.project_id, *[s.value for s in OPEN_STATES]),
                    )
                    if await cursor.fetchone():
                        raise JobAlreadyActive(
                            f"Project {record.project_id} already has an open "
                            f"{record.queue_name} job"
                        )

                await db.execute(
                    """
                    INSERT INTO jobs (
                        id, queue_name, project_id, payload, state, attempts,
                        max_attempts, timeout_seconds, priority, repeat_every,
                        enqueued_at, available_at, started_at, finished_at,
                        last_error, result, worker_id, lease_expires_at, stall_count
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.job_id,
                        record.queue_name,
                        record.project_id,
                        json.dumps(record.payload),
                        record.state.value,
                        record.attempts,
                        record.max_attempts,
                        record.timeout_seconds,
                        record.priority,
                        record.repeat_every,
                        _ts(record.enqueued_at),
                        _ts(record.available_at),
                        _ts(record.started_at),
                        _ts(record.finished_at),
                        record.last_error,
                        json.dumps(record.result) if record.result is not None else None,
                        record.worker_id,
                        _ts(record.lease_expires_at),
                        record.stall_count,
                    ),
                )
                await db.commit()
                logger.info(f"Added job {record.job_id} to {record.queue_name} queue")

            except Exception:
                await db.rollback()
                raise

    async def get(self, job_id: str) -> JobRecord | None:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
            row = await cursor.fetchone()
            return self._row_to_record(row) if row else None

    async def list_jobs(
        self,
        queue_name: str,
        states: list[JobState] | None = None,
        project_id: str | None = None,
    ) -> list[JobRecord]:
        sql = "SELECT * FROM jobs WHERE queue_name = ?"
        params: list = [queue_name]
        if states:
            sql += f" AND state IN ({', '.join('?' for _ in states)})"
            params.extend(s.value for s in states)
        if project_id is not None:
            sql += " AND project_id = ?"
            params.append(project_id)
        sql += " ORDER BY enqueued_at DESC, rowid DESC"

        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
            return [self._row_to_record(row) for row in rows]

    async def update(self, job_id: str, **kwargs) -> None:
        invalid = set(kwargs) - UPDATABLE_FIELDS
        if invalid:
            raise ValueError(f"Invalid field names: {invalid}")
        if not kwargs:
            return

        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    f"UPDATE jobs SET {self._set_clause(kwargs)} WHERE id = ?",
                    [*self._set_values(kwargs), job_id],
                )
                if cursor.rowcount == 0:
                    raise ValueError(f"Job {job_id} not found")
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def claim_next(
        self, queue_name: str, worker_id: str, now: datetime, lease_until: datetime
    ) -> JobRecord | None:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    """
                    SELECT id FROM jobs
                    WHERE queue_name = ? AND state = 'waiting'
                    ORDER BY priority DESC, enqueued_at ASC, rowid ASC
                    LIMIT 1
                    """,
                    (queue_name,),
                )
                row = await cursor.fetchone()
                if row is None:
                    await db.rollback()
                    return None

                await db.execute(
                    """
                    UPDATE jobs
                    SET state = 'active', worker_id = ?, started_at = ?,
                        lease_expires_at = ?, attempts = attempts + 1
                    WHERE id = ?
                    """,
                    (worker_id, _ts(now), _ts(lease_until), row["id"]),
                )
                cursor = await db.execute("SELECT * FROM jobs WHERE id = ?", (row["id"],))
                claimed = await cursor.fetchone()
                await db.commit()
                return self._row_to_record(claimed)

            except Exception:
                await db.rollback()
                raise

    async def promote_delayed(self, queue_name: str, now: datetime) -> int:
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    "UPDATE jobs SET state = 'waiting' "
                    "WHERE queue_name = ? AND state = 'delayed' AND available_at <= ?",
                    (queue_name, _ts(now)),
                )
                promoted = cursor.rowcount
                await db.commit()
                return promoted
            except Exception:
                await db.rollback()
                raise

    async def reclaim_stalled(
        self, queue_name: str, now: datetime, max_stalls: int
    ) -> list[JobRecord]:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    "SELECT id, stall_count FROM jobs WHERE queue_name = ? "
                    "AND state = 'active' AND lease_expires_at IS NOT NULL "
                    "AND lease_expires_at <= ?",
                    (queue_name, _ts(now)),
                )
                expired = await cursor.fetchall()
                if not expired:
                    await db.rollback()
                    return []

                for row in expired:
                    if row["stall_count"] < max_stalls:
                        await db.execute(
                            """
                            UPDATE jobs
                            SET state = 'waiting', stall_count = stall_count + 1,
                                attempts = MAX(attempts - 1, 0), last_error = ?,
                                worker_id = NULL, lease_expires_at = NULL
                            WHERE id = ?
                            """,
                            ("lease expired", row["id"]),
                        )
                    else:
                        await db.execute(
                            """
                            UPDATE jobs
                            SET state = 'failed', finished_at = ?, last_error = ?,
                                worker_id = NULL, lease_expires_at = NULL
                            WHERE id = ?
                            """,
                            (_ts(now), STALL_LIMIT_ERROR, row["id"]),
                        )

                ids = [row["id"] for row in expired]
                cursor = await db.execute(
                    f"SELECT * FROM jobs WHERE id IN ({', '.join('?' for _ in ids)})", ids
                )
                rows = await cursor.fetchall()
                await db.commit()
                return [self._row_to_record(r) for r in rows]

            except Exception:
                await db.rollback()
                raise

    async def renew_lease(self, job_id: str, owner: str, lease_until: datetime) -> bool:
        return await self.finish(job_id, owner, lease_expires_at=lease_until)

    async def finish(self, job_id: str, owner: str, **kwargs) -> bool:
        invalid = set(kwargs) - UPDATABLE_FIELDS
        if invalid:
            raise ValueError(f"Invalid field names: {invalid}")
        if not kwargs:
            raise ValueError("finish() needs at least one field")

        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    f"UPDATE jobs SET {self._set_clause(kwargs)} "
                    "WHERE id = ? AND state = 'active' AND worker_id = ?",
                    [*self._set_values(kwargs), job_id, owner],
                )
                owned = cursor.rowcount == 1
                await db.commit()
                return owned
            except Exception:
                await db.rollback()
                raise

    async def cancel_pending(self, job_id: str, reason: str, now: datetime) -> bool:
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    "UPDATE jobs SET state = 'failed', finished_at = ?, last_error = ? "
                    "WHERE id = ? AND state IN ('waiting', 'delayed')",
                    (_ts(now), reason, job_id),
                )
                cancelled = cursor.rowcount == 1
                await db.commit()
                return cancelled
            except Exception:
                await db.rollback()
                raise

    async def counts(self, queue_name: str) -> dict[JobState, int]:
        totals = {state: 0 for state in JobState}
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT state, COUNT(*) FROM jobs WHERE queue_name = ? GROUP BY state",
                (queue_name,),
            )
            for state, count in await cursor.fetchall():
                totals[JobState(state)] = count
        return totals

    async def prune(self, queue_name: str, state: JobState, keep: int) -> int:
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    """
                    DELETE FROM jobs WHERE id IN (
                        SELECT id FROM jobs WHERE queue_name = ? AND state = ?
                        ORDER BY COALESCE(finished_at, enqueued_at) DESC, rowid DESC
                        LIMIT -1 OFFSET ?
                    )
                    """,
                    (queue_name, state.value, keep),
                )
                removed = cursor.rowcount
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        if removed:
            logger.info(f"Pruned {removed} {state.value} job(s) from {queue_name} queue")
        return removed

    async def close(self) -> None:
        """
        Checkpoint WAL.

        Truncates WAL file to avoid unbounded growth.
        """
        try:
            async with aiosqlite.connect(self._db_path) as db:
                await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
                logger.info("WAL checkpoint completed")
        except Exception as e:
            logger.warning(f"WAL checkpoint failed: {e}")

    @staticmethod
    def _set_clause(kwargs: dict) -> str:
        return ", ".join(f"{key} = ?" for key in kwargs)

    @staticmethod
    def _set_values(kwargs: dict) -> list:
        return [_to_column(key, value) for key, value in kwargs.items()]

    def _row_to_record(self, row: aiosqlite.Row) -> JobRecord:
        return JobRecord(
            job_id=row["id"],
            queue_name=row["queue_name"],
            project_id=row["project_id"],
            payload=json.loads(row["payload"]),
            state=JobState(row["state"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            timeout_seconds=row["timeout_seconds"],
            priority=row["priority"],
            repeat_every=row["repeat_every"],
            enqueued_at=_parse_ts(row["enqueued_at"]),
            available_at=_parse_ts(row["available_at"]),
            started_at=_parse_ts(row["started_at"]),
            finished_at=_parse_ts(row["finished_at"]),
            last_error=row["last_error"],
            result=json.loads(row["result"]) if row["result"] else None,
            worker_id=row["worker_id"],
            lease_expires_at=_parse_ts(row["lease_expires_at"]),
            stall_count=row["stall_count"],
        )
