# buildloop/models/responses.py
"""
Pydantic response models for MCP tool outputs.

All tools return structured responses using these models for consistency.
"""

from pydantic import BaseModel, Field


class CreateProjectResponse(BaseModel):
    """Response from create_project tool."""

    project_id: str = Field(description="Unique project identifier")
    name: str = Field(description="Project name")
    status: str = Field(description="Project status (always 'draft' for new projects)")
    conversation_id: str = Field(description="Default conversation for send_message")
    next_steps: str = Field(
        default="Use send_message with project_id to describe the app to build",
        description="Instructions for the next call",
    )


class SendMessageResponse(BaseModel):
    """Response from send_message tool."""

    job_id: str = Field(description="Build job identifier")
    project_id: str = Field(description="Project identifier")
    conversation_id: str = Field(description="Conversation the message was added to")
    message_id: str = Field(description="Stored user message identifier")
    status: str = Field(description="Job status (always 'queued' for new jobs)")
    model: str = Field(description="Requested model ('auto' for the configured default)")
    next_steps: str = Field(
        default="Use build_status with project_id to monitor progress",
        description="Instructions for monitoring the build",
    )


class JobSummary(BaseModel):
    """One queue job as shown in status responses."""

    job_id: str = Field(description="Job identifier")
    queue: str = Field(description="Queue name (build/deploy)")
    state: str = Field(description="waiting/active/completed/failed/delayed")
    attempts: int = Field(description="Attempts made so far")
    max_attempts: int = Field(description="Attempt limit")
    last_error: str | None = Field(default=None, description="Error of the last failed attempt")
    result: dict | None = Field(default=None, description="Result of a completed job")
    enqueued_at: str = Field(description="Enqueue timestamp (ISO format)")


class BuildStatusResponse(BaseModel):
    """Response from build_status tool."""

    project_id: str = Field(description="Project identifier")
    name: str = Field(description="Project name")
    status: str = Field(description="draft/building/ready/deploying/deployed/failed")
    build_progress: int = Field(ge=0, le=100, description="Latest build progress percent")
    current_build_stage: str | None = Field(default=None, description="Latest build stage")
    error_message: str | None = Field(default=None, description="Why the last build failed")
    current_version: int = Field(description="Latest persisted version (0 = none)")
    deployment_url: str | None = Field(default=None, description="Live URL once deployed")
    env_vars_needed: list[str] = Field(
        default_factory=list, description="Environment variables the code expects"
    )
    build_job: JobSummary | None = Field(default=None, description="Most recent build job")
    deploy_job: JobSummary | None = Field(default=None, description="Most recent deploy job")


class CancelBuildResponse(BaseModel):
    """Response from cancel_build tool."""

    project_id: str = Field(description="Project identifier")
    cancelled: bool = Field(description="Whether anything was cancelled")
    jobs_cancelled: list[str] = Field(
        default_factory=list, description="Queued jobs removed before they started"
    )
    message: str = Field(description="Human-readable outcome")


class QueueStatsResponse(BaseModel):
    """Response from queue_stats tool."""

    build: dict[str, int] = Field(description="Build queue job counts per state")
    deploy: dict[str, int] = Field(description="Deploy queue job counts per state")


class VersionSummary(BaseModel):
    """Summary of one persisted version (used in list_versions)."""

    version_number: int = Field(description="1, 2, 3... per project")
    created_at: str = Field(description="Creation timestamp (ISO format)")
    prompt_summary: str | None = Field(default=None, description="Request that produced it")
    diff_summary: str | None = Field(default=None, description="Created/modified/deleted counts")
    file_count: int = Field(description="Files in the snapshot")


class ListVersionsResponse(BaseModel):
    """Response from list_versions tool."""

    project_id: str = Field(description="Project identifier")
    current_version: int = Field(description="Latest version number")
    versions: list[VersionSummary] = Field(default_factory=list, description="Oldest first")
