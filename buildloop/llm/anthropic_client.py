# buildloop/llm/anthropic_client.py
"""
Anthropic Messages API client.

Converts the neutral conversation on the way out: system prompts move to the
``system`` parameter, assistant tool calls become ``tool_use`` blocks and tool
results become ``tool_result`` blocks inside a user turn.
"""

import json
import logging
from typing import TYPE_CHECKING

import anthropic
import httpx

from buildloop.errors import ModelUnavailable

from .retry import model_retry
from .types import AgentMessage, AgentToolCall

if TYPE_CHECKING:
    from anthropic import AsyncAnthropic

logger = logging.getLogger(__name__)


def to_anthropic_messages(messages: list[dict]) -> tuple[str, list[dict]]:
    """
    Split neutral messages into (system prompt, Anthropic messages).

    Consecutive user-side entries are merged, since Anthropic requires
    alternating roles and all tool results of a turn in one user message.
    """
    system_parts: list[str] = []
    converted: list[dict] = []

    def append(role: str, blocks: list[dict]) -> None:
        if converted and converted[-1]["role"] == role:
            converted[-1]["content"].extend(blocks)
        else:
            converted.append({"role": role, "content": blocks})

    for message in messages:
        role = message["role"]
        content = message.get("content") or ""

        if role == "system":
            system_parts.append(content)
        elif role == "tool":
            append(
                "user",
                [
                    {
                        "type": "tool_result",
                        "tool_use_id": message["tool_call_id"],
                        "content": content,
                    }
                ],
            )
        elif role == "assistant":
            blocks: list[dict] = [{"type": "text", "text": content}] if content else []
            for call in message.get("tool_calls") or []:
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": call["id"],
                        "name": call["function"]["name"],
                        "input": json.loads(call["function"]["arguments"] or "{}"),
                    }
                )
            append("assistant", blocks)
        else:
            append("user", [{"type": "text", "text": content}])

    return "\n\n".join(system_parts), converted


class AnthropicClient:
    """Async client for Anthropic models with tool use."""

    provider = "anthropic"

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-5-20250929",
        max_tokens: int = 16000,
        timeout: int = 300,
    ):
        self._api_key = api_key
        self.model = model
        self._max_tokens = max_tokens
        self._timeout = timeout
        self._client: "AsyncAnthropic | None" = None

    @property
    def client(self) -> "AsyncAnthropic":
        """Lazy-loaded Anthropic client."""
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key, timeout=self._timeout, max_retries=0
            )
        return self._client

    async def health_check(self) -> bool:
        return bool(self._api_key)

    @model_retry
    async def _create(self, model: str, system: str, messages: list[dict], tools: list[dict]):
        kwargs = {}
        if system:
            kwargs["system"] = system
        return await self.client.messages.create(
            model=model,
            max_tokens=self._max_tokens,
            messages=messages,
            tools=tools,
            **kwargs,
        )

    async def send(
        self, messages: list[dict], tools: list[dict], model: str | None = None
    ) -> AgentMessage:
        """
        Single Messages API call with tool definitions.

        Raises:
            ModelUnavailable: On transport/API errors after retries
        """
        model = model or self.model
        system, converted = to_anthropic_messages(messages)
        logger.info(
            f"Anthropic.send: model={model}, messages={len(converted)}, tools={len(tools)}"
        )

        try:
            response = await self._create(model, system, converted, tools)
        except (anthropic.APIError, httpx.HTTPError) as e:
            raise ModelUnavailable(f"Anthropic request failed: {e}") from e

        texts = []
        tool_calls = []
        for block in response.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(
                    AgentToolCall(id=block.id, name=block.name, arguments=dict(block.input or {}))
                )

        logger.info(
            f"Anthropic.send: stop_reason={response.stop_reason}, tool_calls={len(tool_calls)}"
        )
        return AgentMessage(
            content="\n".join(texts) or None,
            tool_calls=tool_calls or None,
            finish_reason=response.stop_reason,
        )
