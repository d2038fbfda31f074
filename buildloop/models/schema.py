# buildloop/models/schema.py
"""
Database schema definition for SQLite persistence.

One database file holds the job queues and the project data (projects,
conversation messages, files, versions, deployments).
"""

import logging

import aiosqlite

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

JOBS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    queue_name TEXT NOT NULL,
    project_id TEXT,
    payload TEXT NOT NULL,
    state TEXT NOT NULL CHECK(state IN ('waiting', 'active', 'completed', 'failed', 'delayed')),
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    timeout_seconds REAL NOT NULL,
    priority INTEGER NOT NULL DEFAULT 0,
    repeat_every REAL,
    enqueued_at TEXT NOT NULL,
    available_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT,
    last_error TEXT,
    result TEXT,
    worker_id TEXT,
    lease_expires_at TEXT,
    stall_count INTEGER NOT NULL DEFAULT 0
)
"""

JOBS_INDEXES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(queue_name, state, priority, enqueued_at)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_project ON jobs(queue_name, project_id, state)",
]

PROJECTS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'draft'
        CHECK(status IN ('draft', 'building', 'ready', 'deploying', 'deployed', 'failed')),
    build_progress INTEGER NOT NULL DEFAULT 0,
    current_build_stage TEXT,
    error_message TEXT,
    deployment_url TEXT,
    env_vars_needed TEXT NOT NULL DEFAULT '[]',
    current_version INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""

MESSAGES_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    conversation_id TEXT NOT NULL,
    role TEXT NOT NULL CHECK(role IN ('user', 'assistant', 'system')),
    content TEXT NOT NULL,
    metadata TEXT,
    created_at TEXT NOT NULL
)
"""

FILES_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS project_files (
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    path TEXT NOT NULL,
    content TEXT NOT NULL,
    language TEXT,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (project_id, path)
)
"""

VERSIONS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS project_versions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    version_number INTEGER NOT NULL,
    snapshot TEXT NOT NULL,
    prompt_summary TEXT,
    diff_summary TEXT,
    commit_sha TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (project_id, version_number)
)
"""

DEPLOYMENTS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS deployments (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    job_id TEXT,
    version_number INTEGER,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK(status IN ('pending', 'building', 'deploying', 'success', 'failed')),
    provider_ref TEXT,
    url TEXT,
    error_message TEXT,
    logs TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""

PROJECT_INDEXES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_deployments_job ON deployments(job_id)",
]


async def _get_schema_version(db: aiosqlite.Connection) -> int:
    """Get current schema version (0 if no version table exists)."""
    try:
        cursor = await db.execute("SELECT version FROM schema_version LIMIT 1")
        row = await cursor.fetchone()
        return row[0] if row else 0
    except aiosqlite.OperationalError:
        return 0


async def _set_schema_version(db: aiosqlite.Connection, version: int) -> None:
    await db.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER)")
    await db.execute("DELETE FROM schema_version")
    await db.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))


async def init_db(db_path: str) -> None:
    """
    Initialize database schema with WAL mode and optimal settings.

    Safe to call repeatedly; both stores call it from initialize().

    Args:
        db_path: Path to SQLite database file

    Settings:
        - WAL mode: Concurrent reads + writes
        - synchronous=NORMAL: Good durability/performance balance
        - busy_timeout=5000ms: Retry on SQLITE_BUSY
        - foreign_keys=ON: Enforce constraints
    """
    async with aiosqlite.connect(db_path) as db:
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("PRAGMA synchronous=NORMAL")
        await db.execute("PRAGMA busy_timeout=5000")
        await db.execute("PRAGMA foreign_keys=ON")

        for ddl in (
            JOBS_TABLE_SQL,
            PROJECTS_TABLE_SQL,
            MESSAGES_TABLE_SQL,
            FILES_TABLE_SQL,
            VERSIONS_TABLE_SQL,
            DEPLOYMENTS_TABLE_SQL,
        ):
            await db.execute(ddl)
        for index in JOBS_INDEXES_SQL + PROJECT_INDEXES_SQL:
            await db.execute(index)

        current_version = await _get_schema_version(db)
        if current_version < SCHEMA_VERSION:
            await _set_schema_version(db, SCHEMA_VERSION)
            logger.info(f"New database initialized at v{SCHEMA_VERSION}")

        await db.commit()

        logger.info(f"Initialized database at {db_path} (schema v{SCHEMA_VERSION})")
