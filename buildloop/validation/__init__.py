# buildloop/validation/__init__.py
"""Input validation and sanitization utilities."""

from .sanitize import sanitize_id, sanitize_model, sanitize_project_name, sanitize_text

__all__ = [
    "sanitize_id",
    "sanitize_model",
    "sanitize_project_name",
    "sanitize_text",
]
