"""Provider adapters: Anthropic and OpenAI-compatible streaming backends.

Both adapters accept the same outbound message list (Anthropic-style content
blocks: ``text``, ``tool_use``, ``tool_result``) and tool catalog, and yield the
uniform events from :mod:`relay_agent.ai.events`.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

from relay_agent.ai.events import (
    StreamEnd,
    StreamEvent,
    TextFragment,
    ToolCallArgFragment,
    ToolCallStart,
    TurnEnd,
)
from relay_agent.config import AnthropicConfig, OpenAIConfig, ProviderConfig
from relay_agent.core.errors import ProviderError
from relay_agent.core.types import TurnEndReason
from relay_agent.log import get_logger

logger = get_logger(__name__)

_ANTHROPIC_STOP_REASONS = {
    "tool_use": TurnEndReason.TOOL_USE,
    "end_turn": TurnEndReason.END_TURN,
    "max_tokens": TurnEndReason.MAX_TOKENS,
    "stop_sequence": TurnEndReason.STOP_SEQUENCE,
}

_OPENAI_FINISH_REASONS = {
    "tool_calls": TurnEndReason.TOOL_USE,
    "function_call": TurnEndReason.TOOL_USE,
    "stop": TurnEndReason.END_TURN,
    "length": TurnEndReason.MAX_TOKENS,
}


class ProviderAdapter(ABC):
    """Abstract base class for LLM backends."""

    def __init__(self, config: ProviderConfig):
        self._config = config

    @property
    def model_name(self) -> str:
        return self._config.model

    @abstractmethod
    def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Open one generation round and yield normalized events.

        Callers that stop consuming early must ``aclose()`` the iterator so the
        underlying HTTP stream is released.
        """
        ...

    @abstractmethod
    async def complete(self, prompt: str, system: str = "") -> str:
        """Run a single non-streaming completion and return its text."""
        ...

    @property
    def _summary_model(self) -> str:
        return self._config.summary_model or self._config.model


class AnthropicStreamMapper:
    """Maps raw Anthropic streaming events onto the uniform vocabulary."""

    def __init__(self) -> None:
        self._call_ids: dict[int, str] = {}

    def map(self, event: Any) -> list[StreamEvent]:
        match event.type:
            case "content_block_start":
                block = event.content_block
                if block.type == "tool_use":
                    self._call_ids[event.index] = block.id
                    return [ToolCallStart(call_id=block.id, name=block.name)]
            case "content_block_delta":
                delta = event.delta
                if delta.type == "text_delta":
                    return [TextFragment(text=delta.text)]
                if delta.type == "input_json_delta":
                    return [
                        ToolCallArgFragment(
                            partial_json=delta.partial_json,
                            call_id=self._call_ids.get(event.index),
                        )
                    ]
            case "message_delta":
                reason = event.delta.stop_reason
                if reason:
                    return [TurnEnd(reason=_ANTHROPIC_STOP_REASONS.get(reason, TurnEndReason.OTHER))]
            case "message_stop":
                return [StreamEnd()]
        return []


class AnthropicAdapter(ProviderAdapter):
    """Anthropic API backend using the official SDK."""

    def __init__(self, config: AnthropicConfig, provider: ProviderConfig):
        import anthropic

        super().__init__(provider)
        self._client = anthropic.AsyncAnthropic(
            api_key=config.api_key,
            base_url=config.base_url,
            max_retries=config.max_retries,
            timeout=config.timeout,
        )
        self._api_error = anthropic.APIError

    async def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        kwargs: dict[str, Any] = {
            "model": self._config.model,
            "max_tokens": self._config.max_tokens,
            "temperature": self._config.temperature,
            "messages": messages,
            "stream": True,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = tools

        logger.debug("api_stream_request", model=self._config.model, message_count=len(messages))
        try:
            response = await self._client.messages.create(**kwargs)
        except self._api_error as e:
            raise ProviderError(f"Anthropic request failed: {e}") from e

        mapper = AnthropicStreamMapper()
        ended = False
        try:
            async for raw in response:
                for event in mapper.map(raw):
                    ended = ended or isinstance(event, StreamEnd)
                    yield event
        except self._api_error as e:
            raise ProviderError(f"Anthropic stream failed: {e}") from e
        finally:
            await response.close()
        if not ended:
            yield StreamEnd()

    async def complete(self, prompt: str, system: str = "") -> str:
        kwargs: dict[str, Any] = {
            "model": self._summary_model,
            "max_tokens": self._config.summary_max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system
        try:
            response = await self._client.messages.create(**kwargs)
        except self._api_error as e:
            raise ProviderError(f"Anthropic completion failed: {e}") from e
        logger.debug(
            "api_response",
            model=self._summary_model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return "\n".join(b.text for b in response.content if b.type == "text")


class OpenAIStreamMapper:
    """Maps OpenAI chat-completion chunks onto the uniform vocabulary."""

    def __init__(self) -> None:
        self._call_ids: dict[int, str] = {}

    def map(self, chunk: Any) -> list[StreamEvent]:
        if not chunk.choices:
            return []
        choice = chunk.choices[0]
        delta = choice.delta
        events: list[StreamEvent] = []
        if delta is not None:
            if delta.content:
                events.append(TextFragment(text=delta.content))
            for call in delta.tool_calls or []:
                function = call.function
                if call.id:
                    self._call_ids[call.index] = call.id
                    name = function.name if function is not None else ""
                    events.append(ToolCallStart(call_id=call.id, name=name or ""))
                if function is not None and function.arguments:
                    events.append(
                        ToolCallArgFragment(
                            partial_json=function.arguments,
                            call_id=self._call_ids.get(call.index),
                        )
                    )
        if choice.finish_reason:
            events.append(
                TurnEnd(reason=_OPENAI_FINISH_REASONS.get(choice.finish_reason, TurnEndReason.OTHER))
            )
        return events


def to_openai_messages(system: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert the uniform (content-block) message list to chat-completions format."""
    converted: list[dict[str, Any]] = []
    if system:
        converted.append({"role": "system", "content": system})

    for msg in messages:
        role = msg["role"]
        content = msg["content"]
        if isinstance(content, str):
            converted.append({"role": role, "content": content})
            continue

        texts = [b["text"] for b in content if b.get("type") == "text"]
        if role == "assistant":
            entry: dict[str, Any] = {"role": "assistant", "content": "\n".join(texts) or None}
            calls = [
                {
                    "id": b["id"],
                    "type": "function",
                    "function": {"name": b["name"], "arguments": json.dumps(b.get("input", {}))},
                }
                for b in content
                if b.get("type") == "tool_use"
            ]
            if calls:
                entry["tool_calls"] = calls
            converted.append(entry)
            continue

        for block in content:
            if block.get("type") == "tool_result":
                converted.append(
                    {
                        "role": "tool",
                        "tool_call_id": block["tool_use_id"],
                        "content": block.get("content", ""),
                    }
                )
        if texts:
            converted.append({"role": role, "content": "\n".join(texts)})
    return converted


def to_openai_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("input_schema", {"type": "object", "properties": {}}),
            },
        }
        for t in tools
    ]


class OpenAIAdapter(ProviderAdapter):
    """OpenAI (or compatible endpoint) backend using the official SDK."""

    def __init__(self, config: OpenAIConfig, provider: ProviderConfig):
        import openai

        super().__init__(provider)
        self._client = openai.AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            max_retries=config.max_retries,
            timeout=config.timeout,
        )
        self._api_error = openai.OpenAIError

    async def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        kwargs: dict[str, Any] = {
            "model": self._config.model,
            "max_tokens": self._config.max_tokens,
            "temperature": self._config.temperature,
            "messages": to_openai_messages(system, messages),
            "stream": True,
        }
        if tools:
            kwargs["tools"] = to_openai_tools(tools)

        logger.debug("api_stream_request", model=self._config.model, message_count=len(messages))
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except self._api_error as e:
            raise ProviderError(f"OpenAI request failed: {e}") from e

        mapper = OpenAIStreamMapper()
        try:
            async for chunk in response:
                for event in mapper.map(chunk):
                    yield event
        except self._api_error as e:
            raise ProviderError(f"OpenAI stream failed: {e}") from e
        finally:
            await response.close()
        yield StreamEnd()

    async def complete(self, prompt: str, system: str = "") -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self._summary_model,
                max_tokens=self._config.summary_max_tokens,
                messages=to_openai_messages(system, [{"role": "user", "content": prompt}]),
            )
        except self._api_error as e:
            raise ProviderError(f"OpenAI completion failed: {e}") from e
        return response.choices[0].message.content or ""
