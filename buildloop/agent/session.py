# buildloop/agent/session.py
"""
In-memory file view for one agent run.

Reads are served from the project files loaded at the start of the run plus
whatever the model has staged since; nothing touches the FileStore until the
agent persists the final ChangeSet.
"""

import logging

from .catalog import READ_FILES_MAX_PATHS
from .changes import CREATE, DELETE, MODIFY, ChangeSet, FileChange, is_safe_path, normalize_path

logger = logging.getLogger(__name__)


class ToolSession:
    """
    Project files as the model currently sees them.

    Args:
        files: Current project files, path -> content
        languages: Optional stored language tags, path -> language
        max_read_paths: Paths honoured per read_files call
    """

    def __init__(
        self,
        files: dict[str, str],
        languages: dict[str, str | None] | None = None,
        max_read_paths: int = READ_FILES_MAX_PATHS,
    ) -> None:
        self._original = dict(files)
        self._files = dict(files)
        self._languages = dict(languages or {})
        self._max_read_paths = max_read_paths
        self._touched: dict[str, None] = {}
        self._summaries: list[str] = []
        self._env_vars: dict[str, None] = {}
        self._staged_rounds = 0

    @property
    def files(self) -> dict[str, str]:
        """Snapshot of the current view."""
        return dict(self._files)

    @property
    def has_changes(self) -> bool:
        """True once at least one ChangeSet passed validation and was staged."""
        return self._staged_rounds > 0

    def manifest(self) -> list[str]:
        return sorted(self._files)

    async def read_files(self, arguments: dict) -> dict:
        """
        Execute a ``read_files`` call.

        Returns:
            {"files": {path: content or None}} plus "skipped" when more than
            the allowed number of paths was requested, or {"error": ...}
        """
        paths = arguments.get("paths")
        if isinstance(paths, str):
            paths = [paths]
        if not isinstance(paths, list) or not paths:
            return {"error": "paths must be a non-empty array"}

        requested = [str(p) for p in paths]
        honoured = requested[: self._max_read_paths]
        result: dict = {"files": {}}
        for raw in honoured:
            path = normalize_path(raw)
            result["files"][raw] = self._files.get(path) if is_safe_path(path) else None

        skipped = requested[self._max_read_paths :]
        if skipped:
            result["skipped"] = skipped
            result["note"] = (
                f"Only the first {self._max_read_paths} paths are read per call; "
                f"request the skipped paths in another call"
            )
        logger.debug(f"read_files: {len(honoured)} read, {len(skipped)} skipped")
        return result

    def stage(self, change_set: ChangeSet) -> None:
        """Apply an already validated ChangeSet to the in-memory view."""
        for change in change_set.files:
            if change.action == DELETE:
                self._files.pop(change.path, None)
            else:
                self._files[change.path] = change.content or ""
                if change.language:
                    self._languages[change.path] = change.language
            self._touched[change.path] = None

        if change_set.summary:
            self._summaries.append(change_set.summary)
        for name in change_set.env_vars_needed:
            self._env_vars[name] = None
        self._staged_rounds += 1

    def result(self) -> ChangeSet:
        """
        Net ChangeSet between the original files and the current view.

        Files touched and then restored to their original content, or created
        and deleted again, drop out.
        """
        files = []
        for path in self._touched:
            before = self._original.get(path)
            after = self._files.get(path)
            if after is None:
                if before is not None:
                    files.append(FileChange(path=path, action=DELETE))
            elif before is None:
                files.append(
                    FileChange(path, CREATE, after, self._languages.get(path))
                )
            elif after != before:
                files.append(
                    FileChange(path, MODIFY, after, self._languages.get(path))
                )

        return ChangeSet(
            files=files,
            summary="; ".join(self._summaries),
            env_vars_needed=list(self._env_vars),
        )
