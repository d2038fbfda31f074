# buildloop/agent/changes.py
"""ChangeSet model: the files a model proposes in one apply_changes round."""

import posixpath
from dataclasses import dataclass, field

CREATE = "create"
MODIFY = "modify"
DELETE = "delete"
ACTIONS = (CREATE, MODIFY, DELETE)

LANGUAGE_BY_EXTENSION = {
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "jsx",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".css": "css",
    ".scss": "scss",
    ".html": "html",
    ".json": "json",
    ".md": "markdown",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".svg": "svg",
    ".env": "dotenv",
    ".py": "python",
}


def infer_language(path: str) -> str:
    """Language tag from the file extension ("text" when unknown)."""
    name = posixpath.basename(path)
    if name.startswith(".env"):
        return "dotenv"
    _, ext = posixpath.splitext(name)
    return LANGUAGE_BY_EXTENSION.get(ext.lower(), "text")


def normalize_path(path: str) -> str:
    """
    Canonical project-relative form of a model-supplied path.

    Strips whitespace, converts backslashes, drops leading "./" and "/".
    Does not reject anything; see is_safe_path().
    """
    cleaned = path.strip().replace("\\", "/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    cleaned = cleaned.lstrip("/")
    if not cleaned:
        return ""
    return posixpath.normpath(cleaned)


def is_safe_path(path: str) -> bool:
    """True if ``path`` stays inside the project root."""
    return bool(path) and path != "." and not path.startswith("../") and path != ".."


@dataclass
class FileChange:
    """One file operation inside a ChangeSet."""

    path: str
    action: str
    content: str | None = None
    language: str | None = None

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "action": self.action,
            "content": self.content,
            "language": self.language or infer_language(self.path),
        }


@dataclass
class ChangeSet:
    """Ordered file operations plus the model's summary of them."""

    files: list[FileChange] = field(default_factory=list)
    summary: str = ""
    env_vars_needed: list[str] = field(default_factory=list)

    @property
    def paths(self) -> list[str]:
        return [f.path for f in self.files]

    def __bool__(self) -> bool:
        return bool(self.files)

    @classmethod
    def from_tool_arguments(cls, arguments: dict) -> "ChangeSet":
        """
        Build a ChangeSet from raw ``apply_changes`` arguments.

        Tolerant of sloppy model output: malformed entries become FileChanges
        that fail validation instead of raising here.
        """
        files = []
        raw_files = arguments.get("files")
        for raw in raw_files if isinstance(raw_files, list) else []:
            if not isinstance(raw, dict):
                files.append(FileChange(path="", action=""))
                continue
            path = normalize_path(str(raw.get("path") or ""))
            content = raw.get("content")
            files.append(
                FileChange(
                    path=path,
                    action=str(raw.get("action") or "").lower(),
                    content=content if isinstance(content, str) else None,
                    language=raw.get("language") or (infer_language(path) if path else None),
                )
            )

        env_vars = arguments.get("envVarsNeeded") or arguments.get("env_vars_needed") or []
        return cls(
            files=files,
            summary=str(arguments.get("summary") or "").strip(),
            env_vars_needed=[str(v) for v in env_vars if v] if isinstance(env_vars, list) else [],
        )

    def merged(self, other: "ChangeSet") -> "ChangeSet":
        """Concatenate two proposals made in the same model turn."""
        summaries = [s for s in (self.summary, other.summary) if s]
        env_vars = list(dict.fromkeys(self.env_vars_needed + other.env_vars_needed))
        return ChangeSet(
            files=self.files + other.files,
            summary=" ".join(summaries),
            env_vars_needed=env_vars,
        )

    def to_dict(self) -> dict:
        return {
            "files": [f.to_dict() for f in self.files],
            "summary": self.summary,
            "envVarsNeeded": self.env_vars_needed,
        }
