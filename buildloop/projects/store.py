# buildloop/projects/store.py
"""
Project persistence: files, versions, conversation messages, deployments.

FileStore is the narrow contract the iteration agent depends on;
ProjectStore adds what the workers and tools need on top of it.
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from uuid import uuid4

import aiosqlite

from buildloop.agent.changes import CREATE, DELETE, MODIFY, ChangeSet, infer_language
from buildloop.errors import PersistConflict
from buildloop.models.schema import init_db

from .models import (
    ChatMessage,
    Deployment,
    DeploymentStatus,
    Project,
    ProjectFile,
    ProjectStatus,
    VersionRecord,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class FileStore(ABC):
    """Current project files and their version history."""

    @abstractmethod
    async def list_files(self, project_id: str) -> list[ProjectFile]:
        """All current files of a project, sorted by path."""
        pass

    @abstractmethod
    async def read_file(self, project_id: str, path: str) -> str | None:
        """Content of one file, or None if it does not exist."""
        pass

    @abstractmethod
    async def write_files(
        self, project_id: str, change_set: ChangeSet, prompt_summary: str | None = None
    ) -> VersionRecord:
        """
        Apply a validated ChangeSet and record the next version, all-or-nothing.

        Raises:
            PersistConflict: Another writer took the version number first
        """
        pass

    @abstractmethod
    async def list_versions(self, project_id: str) -> list[VersionRecord]:
        """Versions in ascending order."""
        pass


class ProjectStore(FileStore):
    """Everything the workers and tools persist about a project."""

    @abstractmethod
    async def initialize(self) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    @abstractmethod
    async def create_project(self, name: str, project_id: str | None = None) -> Project:
        pass

    @abstractmethod
    async def get_project(self, project_id: str) -> Project | None:
        pass

    @abstractmethod
    async def update_project(self, project_id: str, **kwargs) -> None:
        """
        Raises:
            ValueError: Unknown project or field
        """
        pass

    @abstractmethod
    async def get_version(self, project_id: str, version_number: int) -> VersionRecord | None:
        pass

    @abstractmethod
    async def add_message(
        self,
        project_id: str,
        conversation_id: str,
        role: str,
        content: str,
        metadata: dict | None = None,
    ) -> ChatMessage:
        pass

    @abstractmethod
    async def get_message(self, message_id: str) -> ChatMessage | None:
        pass

    @abstractmethod
    async def delete_message(self, message_id: str) -> bool:
        """Remove a message that never led to a job. True if it existed."""
        pass

    @abstractmethod
    async def list_messages(
        self, conversation_id: str, limit: int | None = None
    ) -> list[ChatMessage]:
        """The latest ``limit`` messages, oldest first."""
        pass

    @abstractmethod
    async def create_deployment(
        self, project_id: str, job_id: str | None, version_number: int | None
    ) -> Deployment:
        pass

    @abstractmethod
    async def get_deployment_for_job(self, job_id: str) -> Deployment | None:
        pass

    @abstractmethod
    async def update_deployment(self, deployment_id: str, **kwargs) -> None:
        pass

    @abstractmethod
    async def list_deployments(self, project_id: str) -> list[Deployment]:
        """Newest first."""
        pass


_PROJECT_FIELDS = {
    "name",
    "status",
    "build_progress",
    "current_build_stage",
    "error_message",
    "deployment_url",
    "env_vars_needed",
}

_DEPLOYMENT_FIELDS = {"status", "provider_ref", "url", "error_message", "logs", "version_number"}


class SQLiteProjectStore(ProjectStore):
    """
    Async SQLite-backed project storage.

    Shares the database file with SQLiteJobStore. Version numbers are
    assigned inside the same IMMEDIATE transaction that writes the files, and
    UNIQUE(project_id, version_number) turns a lost race into PersistConflict.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        logger.info(f"Created SQLiteProjectStore with path: {db_path}")

    async def initialize(self) -> None:
        await init_db(self._db_path)

    async def close(self) -> None:
        return None

    # Projects

    async def create_project(self, name: str, project_id: str | None = None) -> Project:
        project_id = project_id or uuid4().hex[:12]
        now = _now()
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                "INSERT INTO projects (id, name, status, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (project_id, name, ProjectStatus.DRAFT.value, now, now),
            )
            await db.commit()
        logger.info(f"Created project {project_id} ({name})")
        return await self.get_project(project_id)

    async def get_project(self, project_id: str) -> Project | None:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM projects WHERE id = ?", (project_id,))
            row = await cursor.fetchone()
        if not row:
            return None
        return Project(
            project_id=row["id"],
            name=row["name"],
            status=ProjectStatus(row["status"]),
            build_progress=row["build_progress"],
            current_build_stage=row["current_build_stage"],
            error_message=row["error_message"],
            deployment_url=row["deployment_url"],
            env_vars_needed=json.loads(row["env_vars_needed"] or "[]"),
            current_version=row["current_version"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    async def update_project(self, project_id: str, **kwargs) -> None:
        invalid = set(kwargs) - _PROJECT_FIELDS
        if invalid:
            raise ValueError(f"Invalid field names: {invalid}")

        values = []
        for key, value in kwargs.items():
            if isinstance(value, ProjectStatus):
                value = value.value
            elif key == "env_vars_needed":
                value = json.dumps(list(value or []))
            values.append(value)

        set_clause = ", ".join([f"{key} = ?" for key in kwargs] + ["updated_at = ?"])
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                f"UPDATE projects SET {set_clause} WHERE id = ?",
                [*values, _now(), project_id],
            )
            if cursor.rowcount == 0:
                raise ValueError(f"Project {project_id} not found")
            await db.commit()

    # Files and versions

    async def list_files(self, project_id: str) -> list[ProjectFile]:
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT path, content, language FROM project_files "
                "WHERE project_id = ? ORDER BY path",
                (project_id,),
            )
            rows = await cursor.fetchall()
        return [ProjectFile(path=p, content=c, language=lang) for p, c, lang in rows]

    async def read_file(self, project_id: str, path: str) -> str | None:
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT content FROM project_files WHERE project_id = ? AND path = ?",
                (project_id, path),
            )
            row = await cursor.fetchone()
        return row[0] if row else None

    async def write_files(
        self, project_id: str, change_set: ChangeSet, prompt_summary: str | None = None
    ) -> VersionRecord:
        now = _now()
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    "SELECT path, content FROM project_files WHERE project_id = ?",
                    (project_id,),
                )
                files = {path: content for path, content in await cursor.fetchall()}
                created = modified = deleted = 0

                for change in change_set.files:
                    if change.action == DELETE:
                        if files.pop(change.path, None) is not None:
                            deleted += 1
                        await db.execute(
                            "DELETE FROM project_files WHERE project_id = ? AND path = ?",
                            (project_id, change.path),
                        )
                    elif change.action in (CREATE, MODIFY):
                        if change.path in files:
                            modified += 1
                        else:
                            created += 1
                        files[change.path] = change.content
                        await db.execute(
                            """
                            INSERT INTO project_files (project_id, path, content, language, updated_at)
                            VALUES (?, ?, ?, ?, ?)
                            ON CONFLICT(project_id, path) DO UPDATE SET
                                content = excluded.content,
                                language = excluded.language,
                                updated_at = excluded.updated_at
                            """,
                            (
                                project_id,
                                change.path,
                                change.content,
                                change.language or infer_language(change.path),
                                now,
                            ),
                        )

                version_number = await self._next_version_number(db, project_id)
                diff_summary = f"{created} created, {modified} modified, {deleted} deleted"
                await db.execute(
                    """
                    INSERT INTO project_versions (
                        project_id, version_number, snapshot, prompt_summary,
                        diff_summary, commit_sha, created_at
                    ) VALUES (?, ?, ?, ?, ?, NULL, ?)
                    """,
                    (
                        project_id,
                        version_number,
                        json.dumps(files),
                        prompt_summary,
                        diff_summary,
                        now,
                    ),
                )
                await db.execute(
                    "UPDATE projects SET current_version = ?, updated_at = ? WHERE id = ?",
                    (version_number, now, project_id),
                )
                await db.commit()

            except sqlite3.IntegrityError as e:
                await db.rollback()
                raise PersistConflict(
                    f"Version conflict while persisting project {project_id}: {e}"
                ) from e
            except Exception:
                await db.rollback()
                raise

        logger.info(f"Project {project_id}: wrote version {version_number} ({diff_summary})")
        return VersionRecord(
            project_id=project_id,
            version_number=version_number,
            snapshot=files,
            prompt_summary=prompt_summary,
            diff_summary=diff_summary,
            created_at=_parse_ts(now),
        )

    async def _next_version_number(self, db: aiosqlite.Connection, project_id: str) -> int:
        cursor = await db.execute(
            "SELECT COALESCE(MAX(version_number), 0) FROM project_versions WHERE project_id = ?",
            (project_id,),
        )
        (current,) = await cursor.fetchone()
        return current + 1

    async def list_versions(self, project_id: str) -> list[VersionRecord]:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM project_versions WHERE project_id = ? ORDER BY version_number",
                (project_id,),
            )
            rows = await cursor.fetchall()
        return [self._row_to_version(row) for row in rows]

    async def get_version(self, project_id: str, version_number: int) -> VersionRecord | None:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM project_versions WHERE project_id = ? AND version_number = ?",
                (project_id, version_number),
            )
            row = await cursor.fetchone()
        return self._row_to_version(row) if row else None

    @staticmethod
    def _row_to_version(row: aiosqlite.Row) -> VersionRecord:
        return VersionRecord(
            project_id=row["project_id"],
            version_number=row["version_number"],
            snapshot=json.loads(row["snapshot"]),
            prompt_summary=row["prompt_summary"],
            diff_summary=row["diff_summary"],
            commit_sha=row["commit_sha"],
            created_at=_parse_ts(row["created_at"]),
        )

    # Conversation

    async def add_message(
        self,
        project_id: str,
        conversation_id: str,
        role: str,
        content: str,
        metadata: dict | None = None,
    ) -> ChatMessage:
        message = ChatMessage(
            message_id=uuid4().hex[:12],
            project_id=project_id,
            conversation_id=conversation_id,
            role=role,
            content=content,
            metadata=metadata,
            created_at=datetime.now(timezone.utc),
        )
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                "INSERT INTO messages (id, project_id, conversation_id, role, content, metadata, "
                "created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    message.message_id,
                    project_id,
                    conversation_id,
                    role,
                    content,
                    json.dumps(metadata) if metadata is not None else None,
                    message.created_at.isoformat(timespec="microseconds"),
                ),
            )
            await db.commit()
        return message

    async def get_message(self, message_id: str) -> ChatMessage | None:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM messages WHERE id = ?", (message_id,))
            row = await cursor.fetchone()
        return self._row_to_message(row) if row else None

    async def delete_message(self, message_id: str) -> bool:
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute("DELETE FROM messages WHERE id = ?", (message_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def list_messages(
        self, conversation_id: str, limit: int | None = None
    ) -> list[ChatMessage]:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM messages WHERE conversation_id = ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (conversation_id, -1 if limit is None else limit),
            )
            rows = await cursor.fetchall()
        return [self._row_to_message(row) for row in reversed(rows)]

    @staticmethod
    def _row_to_message(row: aiosqlite.Row) -> ChatMessage:
        return ChatMessage(
            message_id=row["id"],
            project_id=row["project_id"],
            conversation_id=row["conversation_id"],
            role=row["role"],
            content=row["content"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
            created_at=_parse_ts(row["created_at"]),
        )

    # Deployments

    async def create_deployment(
        self, project_id: str, job_id: str | None, version_number: int | None
    ) -> Deployment:
        deployment_id = uuid4().hex[:12]
        now = _now()
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                "INSERT INTO deployments (id, project_id, job_id, version_number, status, "
                "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    deployment_id,
                    project_id,
                    job_id,
                    version_number,
                    DeploymentStatus.PENDING.value,
                    now,
                    now,
                ),
            )
            await db.commit()
        return await self._get_deployment("id", deployment_id)

    async def get_deployment_for_job(self, job_id: str) -> Deployment | None:
        return await self._get_deployment("job_id", job_id)

    async def update_deployment(self, deployment_id: str, **kwargs) -> None:
        invalid = set(kwargs) - _DEPLOYMENT_FIELDS
        if invalid:
            raise ValueError(f"Invalid field names: {invalid}")

        values = []
        for key, value in kwargs.items():
            if isinstance(value, DeploymentStatus):
                value = value.value
            elif key == "provider_ref" and value is not None:
                value = json.dumps(value)
            values.append(value)

        set_clause = ", ".join([f"{key} = ?" for key in kwargs] + ["updated_at = ?"])
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                f"UPDATE deployments SET {set_clause} WHERE id = ?",
                [*values, _now(), deployment_id],
            )
            if cursor.rowcount == 0:
                raise ValueError(f"Deployment {deployment_id} not found")
            await db.commit()

    async def list_deployments(self, project_id: str) -> list[Deployment]:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM deployments WHERE project_id = ? ORDER BY created_at DESC",
                (project_id,),
            )
            rows = await cursor.fetchall()
        return [self._row_to_deployment(row) for row in rows]

    async def _get_deployment(self, column: str, value: str) -> Deployment | None:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"SELECT * FROM deployments WHERE {column} = ? ORDER BY created_at DESC LIMIT 1",
                (value,),
            )
            row = await cursor.fetchone()
        return self._row_to_deployment(row) if row else None

    @staticmethod
    def _row_to_deployment(row: aiosqlite.Row) -> Deployment:
        return Deployment(
            deployment_id=row["id"],
            project_id=row["project_id"],
            job_id=row["job_id"],
            version_number=row["version_number"],
            status=DeploymentStatus(row["status"]),
            provider_ref=json.loads(row["provider_ref"]) if row["provider_ref"] else None,
            url=row["url"],
            error_message=row["error_message"],
            logs=row["logs"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )
