# buildloop/llm/openai_compat.py
"""Client for OpenAI-compatible chat APIs (OpenAI, LM Studio, Fireworks)."""

import json
import logging

import httpx
import openai
from openai import AsyncOpenAI

from buildloop.errors import ModelUnavailable

from .retry import model_retry
from .types import AgentMessage, AgentToolCall

logger = logging.getLogger(__name__)


class OpenAICompatibleClient:
    """
    Async client for any endpoint speaking the OpenAI chat completions API.

    LM Studio exposes one at http://localhost:1234/v1 and accepts any key.
    Conversations are already in this provider's format.
    """

    provider = "openai"

    def __init__(
        self,
        base_url: str = "http://localhost:1234/v1",
        model: str = "local-model",
        api_key: str = "lm-studio",
        timeout: int = 300,
    ):
        self.base_url = base_url
        self.model = model
        # tenacity owns retries
        self._client = AsyncOpenAI(
            base_url=base_url, api_key=api_key, timeout=timeout, max_retries=0
        )

    async def health_check(self) -> bool:
        """True if the endpoint answers GET /models."""
        try:
            async with httpx.AsyncClient(timeout=5.0) as http:
                response = await http.get(f"{self.base_url}/models")
            return response.status_code == 200
        except Exception as e:
            logger.error(f"OpenAI-compatible health check failed: {e}")
            return False

    @model_retry
    async def _create(self, model: str, messages: list[dict], tools: list[dict]):
        return await self._client.chat.completions.create(
            model=model,
            messages=messages,
            tools=tools,
            tool_choice="auto",
            stream=False,
        )

    async def send(
        self, messages: list[dict], tools: list[dict], model: str | None = None
    ) -> AgentMessage:
        """
        Single chat call with tool definitions, returns normalized AgentMessage.

        Raises:
            ModelUnavailable: On transport/API errors after retries
        """
        model = model or self.model
        logger.info(
            f"OpenAI.send: model={model}, messages={len(messages)}, tools={len(tools)}"
        )

        try:
            response = await self._create(model, messages, tools)
        except (openai.APIError, httpx.HTTPError) as e:
            raise ModelUnavailable(f"Model request to {self.base_url} failed: {e}") from e

        choice = response.choices[0]
        msg = choice.message
        logger.info(
            f"OpenAI.send: finish_reason={choice.finish_reason}, tool_calls={bool(msg.tool_calls)}"
        )

        tool_calls = None
        if msg.tool_calls:
            tool_calls = []
            for tc in msg.tool_calls:
                try:
                    args = json.loads(tc.function.arguments or "{}")
                except json.JSONDecodeError:
                    logger.warning(f"Unparseable arguments for tool {tc.function.name}")
                    args = {}
                tool_calls.append(
                    AgentToolCall(
                        id=tc.id or "",
                        name=tc.function.name,
                        arguments=args if isinstance(args, dict) else {},
                    )
                )

        return AgentMessage(
            content=msg.content,
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason,
        )
