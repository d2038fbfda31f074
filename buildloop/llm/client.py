# buildloop/llm/client.py
"""Ollama client with health checks and tool-calling chat turns."""

import json
import logging

import httpx
from ollama import AsyncClient, ResponseError

from buildloop.errors import ModelUnavailable

from .retry import model_retry
from .types import AgentMessage, AgentToolCall

logger = logging.getLogger(__name__)


def _to_ollama_messages(messages: list[dict]) -> list[dict]:
    """Neutral (OpenAI-style) messages to Ollama's chat format."""
    converted = []
    for message in messages:
        if message["role"] == "assistant" and message.get("tool_calls"):
            converted.append(
                {
                    "role": "assistant",
                    "content": message.get("content") or "",
                    "tool_calls": [
                        {
                            "function": {
                                "name": call["function"]["name"],
                                "arguments": json.loads(call["function"]["arguments"] or "{}"),
                            }
                        }
                        for call in message["tool_calls"]
                    ],
                }
            )
        elif message["role"] == "tool":
            # Ollama ignores tool_call_id; only content matters
            converted.append({"role": "tool", "content": message["content"]})
        else:
            converted.append({"role": message["role"], "content": message.get("content") or ""})
    return converted


class OllamaClient:
    """
    Async Ollama client.

    Handles:
    - Health checks (server + model availability)
    - Single non-streaming tool-calling turns (tool calls are atomic in Ollama)
    - Transient error retries, then ModelUnavailable
    """

    provider = "ollama"

    def __init__(self, base_url: str, model: str, timeout: int = 300):
        """
        Initialize Ollama client.

        Args:
            base_url: Ollama API base URL (e.g., "http://localhost:11434")
            model: Default model name
            timeout: Request timeout in seconds (generous for model loading)
        """
        self.base_url = base_url
        self.model = model
        self.client = AsyncClient(host=base_url, timeout=httpx.Timeout(timeout))

    async def health_check(self) -> bool:
        """
        Check Ollama server health.

        Returns:
            True if the server is reachable (a missing model is pulled on demand).
        """
        try:
            models_response = await self.client.list()
            available_models = [
                m.get("model") or m.get("name") or "" for m in models_response.get("models", [])
            ]

            model_base = self.model.split(":")[0]
            if not any(model_base in m or self.model == m for m in available_models):
                logger.warning(
                    f"Model {self.model} not found in available models. "
                    f"It can be pulled on demand during generation."
                )
            return True

        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return False

    @model_retry
    async def _chat(self, model: str, messages: list[dict], tools: list[dict]):
        return await self.client.chat(model=model, messages=messages, tools=tools, stream=False)

    async def send(
        self, messages: list[dict], tools: list[dict], model: str | None = None
    ) -> AgentMessage:
        """
        Single chat call with tool definitions.

        Args:
            messages: Neutral conversation messages
            tools:    Tool schemas in function format
            model:    Model override (defaults to self.model)

        Raises:
            ModelUnavailable: On transport/API errors after retries
        """
        model = model or self.model
        logger.info(f"Ollama.send: model={model}, messages={len(messages)}, tools={len(tools)}")

        try:
            response = await self._chat(model, _to_ollama_messages(messages), tools)
        except (ResponseError, httpx.HTTPError, ConnectionError) as e:
            raise ModelUnavailable(f"Ollama request failed: {e}") from e

        msg = response.message
        logger.info(
            f"Ollama.send: done_reason={response.done_reason}, "
            f"tool_calls={bool(msg.tool_calls)}"
        )

        tool_calls = None
        if msg.tool_calls:
            tool_calls = [
                AgentToolCall(
                    id="",
                    name=tc.function.name,
                    arguments=dict(tc.function.arguments or {}),
                )
                for tc in msg.tool_calls
            ]

        return AgentMessage(
            content=msg.content,
            tool_calls=tool_calls,
            finish_reason=response.done_reason,
        )
