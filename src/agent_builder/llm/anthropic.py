"""
Anthropic Claude adapter.
"""

import time
from typing import Any, AsyncIterator

import anthropic
import structlog

from ..errors import ModelError
from .accumulator import ToolCallAccumulator
from .base import (
    BaseLLM,
    GenerationSettings,
    HealthStatus,
    LLMMessage,
    LLMResponse,
    ModelCapabilities,
    StreamEvent,
    TokenUsage,
    ToolCall,
    ToolDefinition,
)

logger = structlog.get_logger()


class AnthropicLLM(BaseLLM):
    """Anthropic Claude adapter."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature)
        self.client = anthropic.AsyncAnthropic(
            api_key=api_key,
            base_url=base_url,
        )

    @property
    def provider_name(self) -> str:
        return "anthropic"

    def _convert_messages(self, messages: list[LLMMessage]) -> list[dict[str, Any]]:
        """Convert LLMMessages to Anthropic format.

        System messages are lifted into the ``system`` parameter; adjacent
        tool results are folded into a single user message.
        """
        converted: list[dict[str, Any]] = []

        for msg in messages:
            if msg.role == "system":
                continue

            if msg.role == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": msg.content,
                }
                previous = converted[-1] if converted else None
                if (
                    previous
                    and previous["role"] == "user"
                    and isinstance(previous["content"], list)
                    and previous["content"]
                    and previous["content"][0].get("type") == "tool_result"
                ):
                    previous["content"].append(block)
                else:
                    converted.append({"role": "user", "content": [block]})
            elif msg.role == "assistant" and msg.tool_calls:
                content: list[dict[str, Any]] = []
                if msg.content:
                    content.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls:
                    content.append({
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.name,
                        "input": tc.arguments,
                    })
                converted.append({"role": "assistant", "content": content})
            else:
                converted.append({
                    "role": msg.role,
                    "content": msg.content,
                })

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to Anthropic format."""
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.parameters,
            }
            for tool in tools
        ]

    def _system_text(self, messages: list[LLMMessage], system_prompt: str | None) -> str | None:
        parts = [system_prompt] if system_prompt else []
        parts.extend(msg.content for msg in messages if msg.role == "system" and msg.content)
        return "\n\n".join(parts) if parts else None

    def _build_request(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None,
        system_prompt: str | None,
        settings: GenerationSettings | None,
    ) -> dict[str, Any]:
        sampling = self._sampling(settings)
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": sampling["max_tokens"],
            "temperature": sampling["temperature"],
            "messages": self._convert_messages(messages),
        }
        if sampling["top_p"] is not None:
            kwargs["top_p"] = sampling["top_p"]
        if sampling["stop"]:
            kwargs["stop_sequences"] = sampling["stop"]

        system = self._system_text(messages, system_prompt)
        if system:
            kwargs["system"] = system

        if tools:
            kwargs["tools"] = self._convert_tools(tools)

        return kwargs

    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        settings: GenerationSettings | None = None,
    ) -> LLMResponse:
        """Generate a response from Claude."""
        kwargs = self._build_request(messages, tools, system_prompt, settings)
        started = time.monotonic()

        try:
            response = await self.client.messages.create(**kwargs)
        except anthropic.APIError as e:
            logger.error("Anthropic API error", error=str(e))
            raise ModelError(str(e), "anthropic") from e

        content = ""
        tool_calls = []

        for block in response.content:
            if block.type == "text":
                content += block.text
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(
                    id=block.id,
                    name=block.name,
                    arguments=dict(block.input) if isinstance(block.input, dict) else {},
                ))

        return LLMResponse(
            content=content,
            tool_calls=tool_calls,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            model=response.model,
            stop_reason=response.stop_reason,
            latency_ms=int((time.monotonic() - started) * 1000),
            raw_response=response,
        )

    async def stream(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        settings: GenerationSettings | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a response from Claude using raw message events."""
        kwargs = self._build_request(messages, tools, system_prompt, settings)
        kwargs["stream"] = True

        accumulator = ToolCallAccumulator()
        input_tokens = 0
        output_tokens = 0

        try:
            stream = await self.client.messages.create(**kwargs)

            async for event in stream:  # type: ignore
                if event.type == "message_start":
                    input_tokens = event.message.usage.input_tokens
                elif event.type == "content_block_start":
                    block = event.content_block
                    if block.type == "tool_use":
                        accumulator.start(event.index, block.id, block.name)
                elif event.type == "content_block_delta":
                    delta = event.delta
                    if delta.type == "text_delta":
                        yield StreamEvent.content(delta.text)
                    elif delta.type == "input_json_delta":
                        accumulator.add_arguments(event.index, delta.partial_json)
                elif event.type == "message_delta":
                    output_tokens = event.usage.output_tokens

        except anthropic.APIError as e:
            logger.error("Anthropic streaming error", error=str(e))
            yield StreamEvent.failure(str(e))
            return

        for call in accumulator.finish():
            yield StreamEvent.tool(call)

        yield StreamEvent.done(TokenUsage(input_tokens, output_tokens))

    async def health_check(self) -> HealthStatus:
        started = time.monotonic()
        try:
            await self.client.models.list(limit=1)
        except anthropic.APIError as e:
            return HealthStatus(available=False, error=str(e))
        return HealthStatus(available=True, latency_ms=int((time.monotonic() - started) * 1000))

    def get_capabilities(self) -> ModelCapabilities:
        return ModelCapabilities(
            max_context_window=200000,
            supports_tools=True,
            supports_streaming=True,
            supports_vision=True,
        )
