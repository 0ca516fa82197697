"""
OpenAI chat completions adapter (also serves OpenRouter and compatible APIs).
"""

import json
import time
from typing import Any, AsyncIterator

import openai
import structlog

from ..errors import ModelError
from .accumulator import ToolCallAccumulator, parse_arguments
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


class OpenAILLM(BaseLLM):
    """OpenAI-compatible chat completions adapter."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        provider: str = "openai",
        context_window: int = 128000,
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature)
        self._provider = provider
        self._context_window = context_window
        self.client = openai.AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
        )

    @property
    def provider_name(self) -> str:
        return self._provider

    def _convert_messages(self, messages: list[LLMMessage]) -> list[dict[str, Any]]:
        """Convert LLMMessages to OpenAI format."""
        converted = []

        for msg in messages:
            if msg.role == "tool":
                converted.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id,
                    "content": msg.content,
                })
            elif msg.role == "assistant" and msg.tool_calls:
                tool_calls = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": json.dumps(tc.arguments),
                        },
                    }
                    for tc in msg.tool_calls
                ]
                converted.append({
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": tool_calls,
                })
            else:
                converted.append({
                    "role": msg.role,
                    "content": msg.content,
                })

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to OpenAI format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for tool in tools
        ]

    def _build_request(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None,
        system_prompt: str | None,
        settings: GenerationSettings | None,
    ) -> dict[str, Any]:
        converted_messages = self._convert_messages(messages)

        if system_prompt:
            converted_messages.insert(0, {"role": "system", "content": system_prompt})

        sampling = self._sampling(settings)
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": sampling["max_tokens"],
            "temperature": sampling["temperature"],
            "messages": converted_messages,
        }
        if sampling["top_p"] is not None:
            kwargs["top_p"] = sampling["top_p"]
        if sampling["stop"]:
            kwargs["stop"] = sampling["stop"]

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
        """Generate a response in one request."""
        kwargs = self._build_request(messages, tools, system_prompt, settings)
        started = time.monotonic()

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            logger.error("OpenAI API error", provider=self._provider, error=str(e))
            raise ModelError(str(e), self._provider) from e

        if not response.choices:
            raise ModelError("response contained no choices", self._provider)

        choice = response.choices[0]
        message = choice.message

        tool_calls = [
            ToolCall(
                id=tc.id,
                name=tc.function.name,
                arguments=parse_arguments(tc.function.arguments, tc.function.name),
            )
            for tc in message.tool_calls or []
        ]

        return LLMResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            input_tokens=response.usage.prompt_tokens if response.usage else 0,
            output_tokens=response.usage.completion_tokens if response.usage else 0,
            model=response.model,
            stop_reason=choice.finish_reason,
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
        """Stream a response, reassembling tool call argument fragments."""
        kwargs = self._build_request(messages, tools, system_prompt, settings)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        accumulator = ToolCallAccumulator()
        usage = TokenUsage()

        try:
            stream = await self.client.chat.completions.create(**kwargs)

            async for chunk in stream:  # type: ignore
                if chunk.usage:
                    usage = TokenUsage(
                        input_tokens=chunk.usage.prompt_tokens or 0,
                        output_tokens=chunk.usage.completion_tokens or 0,
                    )

                if not chunk.choices:
                    continue

                delta = chunk.choices[0].delta
                if delta.content:
                    yield StreamEvent.content(delta.content)

                for tc in delta.tool_calls or []:
                    function = tc.function
                    accumulator.start(tc.index, tc.id, function.name if function else None)
                    if function and function.arguments:
                        accumulator.add_arguments(tc.index, function.arguments)

        except openai.APIError as e:
            logger.error("OpenAI streaming error", provider=self._provider, error=str(e))
            yield StreamEvent.failure(str(e))
            return

        for call in accumulator.finish():
            yield StreamEvent.tool(call)

        yield StreamEvent.done(usage)

    async def health_check(self) -> HealthStatus:
        started = time.monotonic()
        try:
            await self.client.models.list()
        except openai.APIError as e:
            return HealthStatus(available=False, error=str(e))
        return HealthStatus(available=True, latency_ms=int((time.monotonic() - started) * 1000))

    def get_capabilities(self) -> ModelCapabilities:
        return ModelCapabilities(
            max_context_window=self._context_window,
            supports_tools=True,
            supports_streaming=True,
            supports_vision=self._provider == "openai" and self.model.startswith("gpt-4o"),
        )
