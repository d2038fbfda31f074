# buildloop/validation/sanitize.py
"""
Input sanitization and validation for tool and CLI arguments.

Raises ToolError with user-readable messages; callers outside the MCP server
print the message as-is.
"""

import logging
import re

from fastmcp.exceptions import ToolError

logger = logging.getLogger(__name__)

_ID_PATTERN = re.compile(r"^[a-zA-Z0-9-]{8,64}$")
_MODEL_PATTERN = re.compile(r"^[a-zA-Z0-9._:/@-]{1,200}$")


def sanitize_text(text: str, field: str = "Message", max_length: int = 20000) -> str:
    """
    Strip and validate free text.

    Truncates to max_length if needed.

    Raises:
        ToolError: If the text is empty after stripping
    """
    cleaned = (text or "").strip()

    if not cleaned:
        raise ToolError(f"{field} cannot be empty")

    if len(cleaned) > max_length:
        logger.warning(f"{field} truncated from {len(cleaned)} to {max_length} characters")
        cleaned = cleaned[:max_length]

    return cleaned


def sanitize_project_name(name: str) -> str:
    return sanitize_text(name, field="Project name", max_length=100)


def sanitize_id(value: str, kind: str = "job") -> str:
    """
    Validate a project, job or conversation ID.

    IDs must be alphanumeric with hyphens only, 8-64 characters.

    Raises:
        ToolError: If the ID format is invalid
    """
    if not isinstance(value, str) or not _ID_PATTERN.match(value):
        raise ToolError(
            f"Invalid {kind} ID '{value}': must be 8-64 alphanumeric characters or hyphens"
        )
    return value


def sanitize_model(model: str | None) -> str:
    """Model override: "auto" when omitted, otherwise a plain model id."""
    if model is None or not model.strip():
        return "auto"
    cleaned = model.strip()
    if not _MODEL_PATTERN.match(cleaned):
        raise ToolError(f"Invalid model '{model}'")
    return cleaned
