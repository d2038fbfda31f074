# buildloop/llm/factory.py
"""Factory for creating the model client a build asks for."""

from buildloop.config.schema import BuildLoopConfig
from buildloop.errors import ConfigurationError

from .anthropic_client import AnthropicClient
from .client import OllamaClient
from .openai_compat import OpenAICompatibleClient
from .types import ModelClient

AUTO_MODEL = "auto"

# Fallback routing by model-id prefix when model_routes has no entry
_PREFIX_ROUTES = (
    ("claude", "anthropic"),
    ("gpt-", "openai"),
    ("o1", "openai"),
    ("o3", "openai"),
    ("accounts/fireworks", "openai"),
)


def resolve_route(config: BuildLoopConfig, model: str | None) -> tuple[str, str]:
    """
    Pick (provider, model id) for a requested model.

    "auto" (or nothing) uses the configured default provider and its model.
    """
    if not model or model == AUTO_MODEL:
        provider = config.provider
        return provider, getattr(config, provider).model

    provider = config.model_routes.get(model)
    if provider is None:
        provider = next(
            (p for prefix, p in _PREFIX_ROUTES if model.startswith(prefix)), config.provider
        )
    return provider, model


def create_model_client(config: BuildLoopConfig, model: str | None = None) -> ModelClient:
    """
    Create the client for ``model`` (or the default provider for "auto").

    Raises:
        ConfigurationError: The routed provider is not configured
    """
    provider, model_id = resolve_route(config, model)

    if provider == "anthropic":
        if not config.anthropic.api_key:
            raise ConfigurationError("Anthropic API key is not configured")
        return AnthropicClient(
            api_key=config.anthropic.api_key,
            model=model_id,
            max_tokens=config.anthropic.max_tokens,
            timeout=config.anthropic.timeout,
        )
    if provider == "openai":
        return OpenAICompatibleClient(
            base_url=config.openai.base_url,
            model=model_id,
            api_key=config.openai.api_key,
            timeout=config.openai.timeout,
        )
    return OllamaClient(
        base_url=config.ollama.base_url,
        model=model_id,
        timeout=config.ollama.timeout,
    )
