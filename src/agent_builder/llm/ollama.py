"""
Ollama adapter for local models, over the ``/api/chat`` HTTP endpoint.
"""

import json
import time
import uuid
from typing import Any, AsyncIterator

import httpx
import structlog

from ..errors import ModelError
from .accumulator import parse_arguments
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


class OllamaLLM(BaseLLM):
    """Ollama adapter. Streams newline-delimited JSON."""

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = "http://localhost:11434",
        max_tokens: int = 4096,
        temperature: float = 0.7,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__("", model, base_url.rstrip("/"), max_tokens, temperature)
        self.timeout = timeout
        self._transport = transport

    @property
    def provider_name(self) -> str:
        return "ollama"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url or "", timeout=self.timeout, transport=self._transport)

    def _convert_messages(
        self, messages: list[LLMMessage], system_prompt: str | None
    ) -> list[dict[str, Any]]:
        converted: list[dict[str, Any]] = []
        if system_prompt:
            converted.append({"role": "system", "content": system_prompt})

        for msg in messages:
            entry: dict[str, Any] = {"role": msg.role, "content": msg.content}
            if msg.role == "assistant" and msg.tool_calls:
                entry["tool_calls"] = [
                    {"function": {"name": tc.name, "arguments": tc.arguments}}
                    for tc in msg.tool_calls
                ]
            if msg.role == "tool" and msg.name:
                entry["tool_name"] = msg.name
            converted.append(entry)

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
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
        stream: bool,
    ) -> dict[str, Any]:
        sampling = self._sampling(settings)
        options: dict[str, Any] = {
            "temperature": sampling["temperature"],
            "num_predict": sampling["max_tokens"],
        }
        if sampling["top_p"] is not None:
            options["top_p"] = sampling["top_p"]
        if sampling["stop"]:
            options["stop"] = sampling["stop"]

        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages, system_prompt),
            "stream": stream,
            "options": options,
        }
        if tools:
            body["tools"] = self._convert_tools(tools)
        return body

    def _parse_tool_calls(self, raw_calls: list[dict[str, Any]]) -> list[ToolCall]:
        calls = []
        for raw in raw_calls:
            function = raw.get("function", {})
            name = function.get("name", "")
            calls.append(ToolCall(
                id=raw.get("id") or f"call_{uuid.uuid4().hex[:12]}",
                name=name,
                arguments=parse_arguments(function.get("arguments"), name),
            ))
        return calls

    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        settings: GenerationSettings | None = None,
    ) -> LLMResponse:
        body = self._build_request(messages, tools, system_prompt, settings, stream=False)
        started = time.monotonic()

        try:
            async with self._client() as client:
                response = await client.post("/api/chat", json=body)
        except httpx.HTTPError as e:
            logger.error("Ollama request error", error=str(e))
            raise ModelError(str(e), "ollama") from e

        if response.status_code >= 400:
            raise ModelError(
                f"request failed with status {response.status_code}: {response.text}", "ollama"
            )

        data = response.json()
        message = data.get("message", {})

        return LLMResponse(
            content=message.get("content", ""),
            tool_calls=self._parse_tool_calls(message.get("tool_calls") or []),
            input_tokens=data.get("prompt_eval_count", 0),
            output_tokens=data.get("eval_count", 0),
            model=data.get("model", self.model),
            stop_reason=data.get("done_reason") or ("stop" if data.get("done") else "length"),
            latency_ms=int((time.monotonic() - started) * 1000),
            raw_response=data,
        )

    async def stream(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        settings: GenerationSettings | None = None,
    ) -> AsyncIterator[StreamEvent]:
        body = self._build_request(messages, tools, system_prompt, settings, stream=True)
        usage = TokenUsage()
        calls: list[ToolCall] = []

        try:
            async with self._client() as client:
                async with client.stream("POST", "/api/chat", json=body) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        yield StreamEvent.failure(
                            f"request failed with status {response.status_code}: {response.text}"
                        )
                        return

                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        chunk = json.loads(line)
                        message = chunk.get("message") or {}

                        if message.get("content"):
                            yield StreamEvent.content(message["content"])
                        if message.get("tool_calls"):
                            calls.extend(self._parse_tool_calls(message["tool_calls"]))
                        if chunk.get("error"):
                            yield StreamEvent.failure(chunk["error"])
                            return
                        if chunk.get("done"):
                            usage = TokenUsage(
                                input_tokens=chunk.get("prompt_eval_count", 0),
                                output_tokens=chunk.get("eval_count", 0),
                            )
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            logger.error("Ollama streaming error", error=str(e))
            yield StreamEvent.failure(str(e))
            return

        for call in calls:
            yield StreamEvent.tool(call)

        yield StreamEvent.done(usage)

    async def health_check(self) -> HealthStatus:
        started = time.monotonic()
        try:
            async with self._client() as client:
                response = await client.get("/api/tags")
        except httpx.HTTPError as e:
            return HealthStatus(available=False, error=str(e))

        if response.status_code >= 400:
            return HealthStatus(available=False, error=f"Ollama not responding: {response.status_code}")

        names = {m.get("name") for m in response.json().get("models", [])}
        if self.model not in names and f"{self.model}:latest" not in names:
            return HealthStatus(available=False, error=f"Model {self.model} not found in Ollama")

        return HealthStatus(available=True, latency_ms=int((time.monotonic() - started) * 1000))

    def get_capabilities(self) -> ModelCapabilities:
        return ModelCapabilities(
            max_context_window=8192,
            supports_tools=True,
            supports_streaming=True,
            supports_vision=False,
        )
