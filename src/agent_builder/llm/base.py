"""
Base classes for model adapters.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal


@dataclass
class ToolDefinition:
    """Definition of a tool that the model can use."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class ToolCall:
    """A tool call made by the model."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class LLMMessage:
    """A message in the conversation."""

    role: Literal["user", "assistant", "system", "tool"]
    content: str
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None


@dataclass
class TokenUsage:
    """Token counts for one model call or an aggregate of several."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class GenerationSettings:
    """Per-call sampling settings. ``None`` means use the adapter default."""

    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stop: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GenerationSettings":
        data = data or {}
        return cls(
            temperature=data.get("temperature"),
            max_tokens=data.get("max_tokens"),
            top_p=data.get("top_p"),
            stop=data.get("stop"),
        )


@dataclass
class LLMResponse:
    """Response from a model."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    stop_reason: str | None = None
    latency_ms: int = 0
    raw_response: Any = None

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(self.input_tokens, self.output_tokens)


StreamEventType = Literal["run_created", "content", "tool_call", "tool_result", "done", "error"]


@dataclass
class StreamEvent:
    """One event on a streaming channel.

    Adapters emit ``content``, ``tool_call``, ``done`` and ``error``; the
    executor adds ``run_created`` and ``tool_result``.
    """

    type: StreamEventType
    text: str | None = None
    tool_call: ToolCall | None = None
    usage: TokenUsage | None = None
    run_id: str | None = None
    message: str | None = None
    tool_call_id: str | None = None
    result: dict[str, Any] | None = None

    @classmethod
    def content(cls, text: str) -> "StreamEvent":
        return cls(type="content", text=text)

    @classmethod
    def tool(cls, call: ToolCall) -> "StreamEvent":
        return cls(type="tool_call", tool_call=call)

    @classmethod
    def done(cls, usage: TokenUsage | None = None) -> "StreamEvent":
        return cls(type="done", usage=usage or TokenUsage())

    @classmethod
    def failure(cls, message: str) -> "StreamEvent":
        return cls(type="error", message=message)

    @classmethod
    def run_created(cls, run_id: str) -> "StreamEvent":
        return cls(type="run_created", run_id=run_id)

    @classmethod
    def tool_result(cls, call: ToolCall, success: bool, output: str) -> "StreamEvent":
        return cls(
            type="tool_result",
            tool_call_id=call.id,
            result={"id": call.id, "name": call.name, "success": success, "output": output},
        )

    def to_dict(self) -> dict[str, Any]:
        """Wire representation of the event."""
        if self.type == "run_created":
            return {"type": self.type, "run_id": self.run_id}
        if self.type == "content":
            return {"type": self.type, "text": self.text or ""}
        if self.type == "tool_call" and self.tool_call is not None:
            return {
                "type": self.type,
                "tool_call": {
                    "id": self.tool_call.id,
                    "name": self.tool_call.name,
                    "parameters": self.tool_call.arguments,
                },
            }
        if self.type == "tool_result":
            return {"type": self.type, "tool_result": self.result or {"id": self.tool_call_id}}
        if self.type == "done":
            return {"type": self.type, "usage": (self.usage or TokenUsage()).to_dict()}
        return {"type": "error", "message": self.message or ""}


@dataclass
class HealthStatus:
    """Result of probing a model endpoint."""

    available: bool
    latency_ms: int | None = None
    error: str | None = None


@dataclass
class ModelCapabilities:
    """What a model supports."""

    max_context_window: int = 8192
    supports_tools: bool = True
    supports_streaming: bool = True
    supports_vision: bool = False


class BaseLLM(ABC):
    """Base class for model adapters."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.temperature = temperature

    def _sampling(self, settings: GenerationSettings | None) -> dict[str, Any]:
        """Merge per-call settings over adapter defaults."""
        settings = settings or GenerationSettings()
        return {
            "temperature": settings.temperature if settings.temperature is not None else self.temperature,
            "max_tokens": settings.max_tokens if settings.max_tokens is not None else self.max_tokens,
            "top_p": settings.top_p,
            "stop": settings.stop,
        }

    @abstractmethod
    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        settings: GenerationSettings | None = None,
    ) -> LLMResponse:
        """Generate a response from the model."""
        pass

    @abstractmethod
    def stream(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        settings: GenerationSettings | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a response as content, tool_call, done and error events.

        Transport failures surface as a terminal ``error`` event rather
        than an exception.
        """
        pass

    @abstractmethod
    async def health_check(self) -> HealthStatus:
        """Check that the endpoint answers."""
        pass

    def get_capabilities(self) -> ModelCapabilities:
        return ModelCapabilities()

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get the provider name."""
        pass

    @property
    def model_id(self) -> str:
        return f"{self.provider_name}:{self.model}"
