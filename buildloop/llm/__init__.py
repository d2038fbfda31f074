# buildloop/llm/__init__.py
"""LLM provider clients with retry logic and provider routing."""

from .anthropic_client import AnthropicClient
from .client import OllamaClient
from .factory import AUTO_MODEL, create_model_client, resolve_route
from .openai_compat import OpenAICompatibleClient
from .retry import is_retryable, model_retry
from .types import AgentMessage, AgentToolCall, ModelClient, tool_result_message

__all__ = [
    "AUTO_MODEL",
    "AgentMessage",
    "AgentToolCall",
    "AnthropicClient",
    "ModelClient",
    "OllamaClient",
    "OpenAICompatibleClient",
    "create_model_client",
    "is_retryable",
    "model_retry",
    "resolve_route",
    "tool_result_message",
]
