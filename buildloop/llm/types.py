# buildloop/llm/types.py
"""
Normalized LLM types shared by all client implementations.

Conversations are kept in the OpenAI chat format (the "neutral" format);
each client converts to its provider's wire format on the way out.
"""

import json
from dataclasses import dataclass
from typing import Protocol


@dataclass
class AgentToolCall:
    """A normalized tool call from any LLM provider."""

    id: str  # "" when the provider has no call ids (Ollama)
    name: str
    arguments: dict  # always a dict; clients parse JSON strings


@dataclass
class AgentMessage:
    """Normalized model response from any LLM provider."""

    content: str | None
    tool_calls: list[AgentToolCall] | None
    finish_reason: str | None = None

    def to_assistant_dict(self) -> dict:
        """The response as a neutral assistant message for the conversation."""
        return assistant_message(self.content, self.tool_calls)


def assistant_message(content: str | None, tool_calls: list[AgentToolCall] | None) -> dict:
    message: dict = {"role": "assistant", "content": content or ""}
    if tool_calls:
        message["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
            }
            for call in tool_calls
        ]
    return message


def tool_result_message(tool_call_id: str, content: str) -> dict:
    """Neutral tool result message answering one tool call."""
    return {"role": "tool", "tool_call_id": tool_call_id, "content": content}


class ModelClient(Protocol):
    """What the iteration agent needs from a model provider."""

    provider: str
    model: str

    async def send(
        self, messages: list[dict], tools: list[dict], model: str | None = None
    ) -> AgentMessage:
        """
        One non-streaming chat turn with tools.

        Raises:
            ModelUnavailable: Transport failure after retries
        """
        ...

    async def health_check(self) -> bool:
        ...
