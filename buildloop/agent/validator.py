# buildloop/agent/validator.py
"""
Structural validation of proposed files.

Pure functions: the same input always yields the same issues and nothing is
written anywhere. Checks are structural only (does it parse, do relative
imports resolve); nothing is executed.
"""

import ast
import json
import logging
import posixpath
import re
from dataclasses import dataclass

import esprima
from esprima.error_handler import Error as EsprimaError

from .changes import ACTIONS, CREATE, DELETE, MODIFY, ChangeSet, is_safe_path

logger = logging.getLogger(__name__)

JS_EXTENSIONS = {".js", ".jsx", ".mjs", ".cjs"}

RESOLVABLE_SUFFIXES = (
    ".js",
    ".jsx",
    ".ts",
    ".tsx",
    "/index.js",
    "/index.jsx",
    "/index.ts",
    "/index.tsx",
)

_IMPORT_PATTERN = re.compile(
    r"""(?:import\s+[\s\S]*?from\s+['"]([^'"]+)['"]|require\s*\(\s*['"]([^'"]+)['"]\s*\))"""
)
_ASSET_IMPORT = re.compile(r"\.(css|scss|less|svg|png|jpe?g|gif|woff2?|ttf|eot)$")


@dataclass(frozen=True)
class ValidationIssue:
    """One problem found in a proposed file."""

    path: str
    message: str
    line: int | None = None
    kind: str = "syntax"

    def to_dict(self) -> dict:
        return {"file": self.path, "line": self.line, "message": self.message, "type": self.kind}


def _extension(path: str) -> str:
    return posixpath.splitext(path)[1].lower()


def _parse_check(
    path: str,
    content: str,
    language: str | None = None,
    *,
    check_javascript: bool = True,
) -> list[ValidationIssue]:
    """Parse-check one file; parser failures other than syntax errors propagate."""
    ext = _extension(path)

    if ext == ".json" or (not ext and language == "json"):
        try:
            json.loads(content)
        except json.JSONDecodeError as e:
            return [ValidationIssue(path, f"Invalid JSON: {e.msg}", e.lineno, "json")]
        return []

    if ext == ".py" or (not ext and language == "python"):
        try:
            ast.parse(content, filename=path)
        except SyntaxError as e:
            return [ValidationIssue(path, e.msg or "invalid syntax", e.lineno, "syntax")]
        return []

    if ext in JS_EXTENSIONS and check_javascript:
        try:
            esprima.parseModule(content, {"jsx": True})
        except EsprimaError as e:
            message = getattr(e, "description", None) or str(e)
            return [ValidationIssue(path, message, getattr(e, "lineNumber", None), "syntax")]
        return []

    return []


def validate(
    path: str,
    content: str,
    language: str | None = None,
    *,
    check_javascript: bool = True,
) -> list[ValidationIssue]:
    """
    Parse-check one file.

    JSON is parsed with ``json``, Python with ``ast`` and JavaScript/JSX
    modules with esprima. Other languages have no structural checks.

    A parser that crashes instead of reporting a syntax error (deep nesting
    exhausting the recursion limit, parser bugs) yields a ``parser`` issue
    for this file, so the file is rejected rather than accepted unchecked.
    """
    try:
        return _parse_check(path, content, language, check_javascript=check_javascript)
    except RecursionError:
        logger.warning(f"Parser hit the recursion limit on {path}")
        return [ValidationIssue(path, "File is too deeply nested to parse", kind="parser")]
    except Exception as e:
        logger.warning(f"Parser crashed on {path}: {type(e).__name__}: {e}")
        return [ValidationIssue(path, f"File could not be parsed: {e}", kind="parser")]


def relative_imports(content: str) -> list[str]:
    """Relative module specifiers imported or required by JS source."""
    found = []
    for match in _IMPORT_PATTERN.finditer(content):
        specifier = match.group(1) or match.group(2)
        if specifier.startswith(".") and not _ASSET_IMPORT.search(specifier):
            found.append(specifier)
    return found


def resolve_candidates(from_file: str, specifier: str) -> list[str]:
    """Project paths a relative specifier may refer to, most literal first."""
    base = posixpath.normpath(posixpath.join(posixpath.dirname(from_file), specifier))
    if not is_safe_path(base):
        return []
    return [base] + [base + suffix for suffix in RESOLVABLE_SUFFIXES]


def _line_of(content: str, needle: str) -> int | None:
    for number, line in enumerate(content.splitlines(), start=1):
        if needle in line:
            return number
    return None


def _import_issues(path: str, content: str, project_paths: set[str]) -> list[ValidationIssue]:
    issues = []
    for specifier in relative_imports(content):
        if not any(c in project_paths for c in resolve_candidates(path, specifier)):
            issues.append(
                ValidationIssue(
                    path,
                    f"Unresolved import '{specifier}': no matching file found in project",
                    _line_of(content, specifier),
                    "import",
                )
            )
    return issues


def validate_change_set(
    change_set: ChangeSet,
    existing: dict[str, str],
    *,
    check_imports: bool = True,
    check_javascript: bool = True,
) -> list[ValidationIssue]:
    """
    Validate a whole proposal against the project it would be applied to.

    Args:
        change_set: Proposed file operations
        existing: Current project files, path -> content
        check_imports: Require relative JS imports to resolve after the change
        check_javascript: Parse JS/JSX with esprima

    Returns:
        Every issue found; an empty list means the ChangeSet may be applied
    """
    issues: list[ValidationIssue] = []
    seen: set[str] = set()

    if not change_set.files:
        return [ValidationIssue("", "Change set contains no files", kind="empty")]

    for change in change_set.files:
        if not change.path:
            issues.append(ValidationIssue("", "File path is empty", kind="path"))
            continue
        if not is_safe_path(change.path):
            issues.append(
                ValidationIssue(change.path, "Path escapes the project root", kind="path")
            )
            continue
        if change.path in seen:
            issues.append(
                ValidationIssue(
                    change.path,
                    f"Duplicate path '{change.path}' in change set",
                    kind="duplicate",
                )
            )
        seen.add(change.path)
        if change.action not in ACTIONS:
            issues.append(
                ValidationIssue(
                    change.path,
                    f"Unknown action '{change.action}' (expected one of {', '.join(ACTIONS)})",
                    kind="action",
                )
            )
        elif change.action in (CREATE, MODIFY) and not change.content:
            issues.append(
                ValidationIssue(
                    change.path,
                    f"Non-empty content is required for {change.action}",
                    kind="content",
                )
            )

    # Project as it would look after the change
    projected = dict(existing)
    deleted: set[str] = set()
    for change in change_set.files:
        if change.action == DELETE:
            projected.pop(change.path, None)
            deleted.add(change.path)
        elif change.action in (CREATE, MODIFY) and change.content is not None:
            projected[change.path] = change.content
    project_paths = set(projected)

    for change in change_set.files:
        if change.action == DELETE or change.content is None or not is_safe_path(change.path):
            continue
        file_issues = validate(
            change.path, change.content, change.language, check_javascript=check_javascript
        )
        issues.extend(file_issues)
        if check_imports and not file_issues and _extension(change.path) in JS_EXTENSIONS:
            issues.extend(_import_issues(change.path, change.content, project_paths))

    if check_imports and deleted:
        changed = set(change_set.paths)
        for path, content in projected.items():
            if path in changed or _extension(path) not in JS_EXTENSIONS:
                continue
            for specifier in relative_imports(content):
                candidates = resolve_candidates(path, specifier)
                if any(c in project_paths for c in candidates):
                    continue
                target = next((c for c in candidates if c in deleted), None)
                if target:
                    issues.append(
                        ValidationIssue(
                            path,
                            f"Imports '{specifier}' which resolves to deleted file '{target}'",
                            _line_of(content, specifier),
                            "deleted-import",
                        )
                    )

    return issues
