"""Reasoning model client used by the turn orchestrator."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from openai import AsyncOpenAI, OpenAIError

from labquery.config import settings
from labquery.services.errors import ReasoningModelError

logger = logging.getLogger("labquery.reasoning")


@dataclass(frozen=True)
class ToolCall:
    """A single function call requested by the model."""

    id: str
    name: str
    arguments: str = "{}"

    def to_message(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class ModelReply:
    """Either prose, a tool call, or both (prose preceding the call)."""

    text: str = ""
    tool_call: Optional[ToolCall] = None


class ReasoningModel(Protocol):
    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ModelReply:
        ...


class OpenAIReasoningModel:
    """Chat-completions model with function tools, one call per reply."""

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
    ):
        """Initialize the model client.

        Args:
            client: Pre-configured AsyncOpenAI client (for testing). When omitted
                a client is created on first use from OPENAI_API_KEY.
            model: Chat model name
            temperature: Sampling temperature
            timeout_seconds: Per-request timeout
        """
        self._client = client
        self.model = model or settings.chat_model
        self.temperature = (
            temperature if temperature is not None else settings.llm_temperature
        )
        self.timeout_seconds = timeout_seconds or settings.llm_request_timeout_seconds

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not settings.openai_api_key:
                raise ReasoningModelError("OPENAI_API_KEY is not configured.")
            self._client = AsyncOpenAI(api_key=settings.openai_api_key)
        return self._client

    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ModelReply:
        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                tools=tools,
                tool_choice="auto",
                parallel_tool_calls=False,
                temperature=self.temperature,
                timeout=self.timeout_seconds,
            )
        except OpenAIError as exc:
            logger.warning("Reasoning model call failed: %s", exc)
            raise ReasoningModelError(f"Reasoning model call failed: {exc}") from exc

        if not response.choices:
            raise ReasoningModelError("Reasoning model returned no choices.")
        message = response.choices[0].message
        text = message.content or ""
        if message.tool_calls:
            call = message.tool_calls[0]
            return ModelReply(
                text=text,
                tool_call=ToolCall(
                    id=call.id,
                    name=call.function.name,
                    arguments=call.function.arguments or "{}",
                ),
            )
        return ModelReply(text=text)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
