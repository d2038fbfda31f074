# buildloop/config/schema.py
"""
Pydantic configuration models for buildloop.

All models use extra="ignore" to allow unknown YAML keys without crashing.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

ProviderName = Literal["ollama", "openai", "anthropic"]


class OllamaConfig(BaseModel):
    """Ollama server configuration."""

    model_config = ConfigDict(extra="ignore")

    base_url: str = Field(
        default="http://localhost:11434", description="Ollama API base URL"
    )
    model: str = Field(
        default="qwen2.5-coder:32b", description="Ollama model used for builds"
    )
    timeout: int = Field(
        default=300, description="Request timeout in seconds (generous for model loading)"
    )


class OpenAIConfig(BaseModel):
    """OpenAI-compatible endpoint (OpenAI, LM Studio, Fireworks, ...)."""

    model_config = ConfigDict(extra="ignore")

    base_url: str = Field(
        default="http://localhost:1234/v1", description="OpenAI-compatible API base URL"
    )
    api_key: str = Field(
        default="lm-studio", description="API key (LM Studio accepts any value)"
    )
    model: str = Field(default="local-model", description="Model used for builds")
    timeout: int = Field(default=300, description="Request timeout in seconds")


class AnthropicConfig(BaseModel):
    """Anthropic API configuration."""

    model_config = ConfigDict(extra="ignore")

    api_key: str | None = Field(
        default=None, description="Anthropic API key (None = provider unavailable)"
    )
    model: str = Field(
        default="claude-sonnet-4-5-20250929", description="Model used for builds"
    )
    max_tokens: int = Field(
        default=16000, ge=1, description="Maximum output tokens per model turn"
    )
    timeout: int = Field(default=300, description="Request timeout in seconds")


class AgentConfig(BaseModel):
    """Iteration agent budgets and policies."""

    model_config = ConfigDict(extra="ignore")

    max_turns: int = Field(
        default=6, ge=1, le=50, description="Maximum model turns per build"
    )
    max_read_paths: int = Field(
        default=10, ge=1, description="Maximum paths honoured per read_files call"
    )
    turn_timeout: float = Field(
        default=180.0, gt=0, description="Soft timeout for a single model call in seconds"
    )
    exhaustion_policy: Literal["best_effort", "fail_hard"] = Field(
        default="best_effort",
        description=(
            "What to do when the turn budget runs out after changes were accepted: "
            "persist them as a partial result, or fail the build"
        ),
    )
    finalize_on_apply: bool = Field(
        default=True,
        description="Finish as soon as an apply_changes call passes validation",
    )
    history_messages: int = Field(
        default=10, ge=0, description="Prior conversation messages included as context"
    )
    progress_start: int = Field(
        default=10, ge=0, le=100, description="Start of the agent's overall progress range"
    )
    progress_end: int = Field(
        default=80, ge=0, le=100, description="End of the agent's overall progress range"
    )


class ValidatorConfig(BaseModel):
    """Which structural checks run on proposed files."""

    model_config = ConfigDict(extra="ignore")

    check_javascript: bool = Field(
        default=True, description="Parse JavaScript/JSX files with esprima"
    )
    check_imports: bool = Field(
        default=True, description="Require relative imports to resolve inside the project"
    )


class QueueConfig(BaseModel):
    """Retry, timeout and retention policy of one work queue."""

    model_config = ConfigDict(extra="ignore")

    attempts: int = Field(default=3, ge=1, description="Maximum attempts per job")
    backoff_delay: float = Field(
        default=2.0, ge=0.0, description="Delay before the first retry in seconds"
    )
    backoff_multiplier: float = Field(
        default=2.0, ge=1.0, description="Growth factor between consecutive retries"
    )
    backoff_max_delay: float = Field(
        default=300.0, ge=0.0, description="Upper bound for a single retry delay"
    )
    timeout_seconds: float = Field(
        default=300.0, gt=0, description="Hard timeout per attempt"
    )
    lease_seconds: float = Field(
        default=30.0, gt=0, description="Visibility timeout renewed by heartbeats"
    )
    heartbeat_interval: float = Field(
        default=10.0, gt=0, description="Seconds between lease renewals"
    )
    max_stalls: int = Field(
        default=1, ge=0, description="Automatic requeues of a stalled job before it fails"
    )
    remove_on_complete: int = Field(
        default=50, ge=0, description="Completed jobs kept in history"
    )
    remove_on_fail: int = Field(default=100, ge=0, description="Failed jobs kept in history")
    concurrency: int = Field(default=2, ge=1, description="Jobs processed in parallel")
    poll_interval: float = Field(default=1.0, gt=0, description="Seconds between queue polls")


def _default_deploy_queue() -> QueueConfig:
    return QueueConfig(attempts=2, backoff_delay=5.0, timeout_seconds=600.0, concurrency=1)


class DeployConfig(BaseModel):
    """Deployment provider configuration."""

    model_config = ConfigDict(extra="ignore")

    base_url: str | None = Field(
        default=None, description="Deployment provider API base URL (None = deploys disabled)"
    )
    api_token: str | None = Field(default=None, description="Bearer token for the provider")
    auto_deploy: bool = Field(
        default=True, description="Enqueue a deploy job after every successful build"
    )
    poll_interval: float = Field(
        default=10.0, gt=0, description="Seconds between provider status polls"
    )
    timeout: float = Field(
        default=540.0, gt=0, description="Give up waiting on the provider after this many seconds"
    )


class ProgressConfig(BaseModel):
    """Progress fan-out configuration."""

    model_config = ConfigDict(extra="ignore")

    subscriber_queue_size: int = Field(
        default=100, ge=1, description="Events buffered per streaming subscriber"
    )


class BuildLoopConfig(BaseModel):
    """Root configuration for buildloop."""

    model_config = ConfigDict(extra="ignore")

    provider: ProviderName = Field(default="ollama", description="Default LLM provider")
    model_routes: dict[str, ProviderName] = Field(
        default_factory=dict,
        description="Model id -> provider, consulted when a build names a specific model",
    )
    ollama: OllamaConfig = Field(default_factory=OllamaConfig)
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)
    anthropic: AnthropicConfig = Field(default_factory=AnthropicConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    validator: ValidatorConfig = Field(default_factory=ValidatorConfig)
    build_queue: QueueConfig = Field(default_factory=QueueConfig)
    deploy_queue: QueueConfig = Field(default_factory=_default_deploy_queue)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)
