# buildloop/agent/__init__.py
"""
Tool-calling iteration agent: tool catalog, ChangeSets and validation.

The agent loop itself lives in buildloop.agent.iteration (imported directly
to keep this package importable from the project store).
"""

from .catalog import APPLY_CHANGES, READ_FILES, ToolCatalog, ToolSpec
from .changes import ChangeSet, FileChange, infer_language
from .validator import ValidationIssue, validate, validate_change_set

__all__ = [
    "APPLY_CHANGES",
    "READ_FILES",
    "ChangeSet",
    "FileChange",
    "ToolCatalog",
    "ToolSpec",
    "ValidationIssue",
    "infer_language",
    "validate",
    "validate_change_set",
]
