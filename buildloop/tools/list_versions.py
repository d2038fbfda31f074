# buildloop/tools/list_versions.py
"""
list_versions tool implementation.

Lists the immutable versions persisted for a project.
"""

import logging

from fastmcp.exceptions import ToolError

from buildloop.models.responses import ListVersionsResponse, VersionSummary
from buildloop.projects.store import ProjectStore
from buildloop.validation.sanitize import sanitize_id

logger = logging.getLogger(__name__)


async def list_versions(project_id: str, store: ProjectStore) -> dict:
    """
    List a project's versions, oldest first.

    Raises:
        ToolError: If project_id is invalid or not found
    """
    project_id = sanitize_id(project_id, "project")

    project = await store.get_project(project_id)
    if project is None:
        raise ToolError(f"Project '{project_id}' not found")

    versions = await store.list_versions(project_id)
    response = ListVersionsResponse(
        project_id=project_id,
        current_version=project.current_version,
        versions=[
            VersionSummary(
                version_number=v.version_number,
                created_at=v.created_at.isoformat() if v.created_at else "",
                prompt_summary=v.prompt_summary,
                diff_summary=v.diff_summary,
                file_count=len(v.snapshot),
            )
            for v in versions
        ],
    )
    return response.model_dump()
