# buildloop/tools/create_project.py
"""
create_project tool implementation.

Validates the name and creates an empty draft project.
"""

import logging

from fastmcp.exceptions import ToolError

from buildloop.models.responses import CreateProjectResponse
from buildloop.projects.store import ProjectStore
from buildloop.validation.sanitize import sanitize_project_name

logger = logging.getLogger(__name__)


async def create_project(name: str, store: ProjectStore) -> dict:
    """
    Create a new, empty project.

    Args:
        name: Human-readable project name
        store: Project store

    Returns:
        CreateProjectResponse as dict

    Raises:
        ToolError: If the name is invalid
    """
    cleaned = sanitize_project_name(name)

    try:
        project = await store.create_project(cleaned)
    except ValueError as e:
        logger.error(f"Project creation failed: {e}")
        raise ToolError(f"Internal error creating project: {e}")

    response = CreateProjectResponse(
        project_id=project.project_id,
        name=project.name,
        status=project.status.value,
        conversation_id=project.project_id,
    )
    return response.model_dump()
