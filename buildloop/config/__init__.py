# buildloop/config/__init__.py
"""Configuration system for buildloop."""

from .loader import get_config_path, get_db_path, load_config
from .schema import (
    AgentConfig,
    AnthropicConfig,
    BuildLoopConfig,
    DeployConfig,
    OllamaConfig,
    OpenAIConfig,
    ProgressConfig,
    QueueConfig,
    ValidatorConfig,
)

__all__ = [
    "BuildLoopConfig",
    "OllamaConfig",
    "OpenAIConfig",
    "AnthropicConfig",
    "AgentConfig",
    "ValidatorConfig",
    "QueueConfig",
    "DeployConfig",
    "ProgressConfig",
    "load_config",
    "get_config_path",
    "get_db_path",
]
