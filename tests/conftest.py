"""
Shared fixtures: in-memory database, scripted model, wired executor.
"""

import copy
from typing import AsyncIterator

import pytest
import pytest_asyncio

from agent_builder.agent import AgentExecutor, StreamSessionManager
from agent_builder.config import Settings
from agent_builder.llm import (
    BaseLLM,
    GenerationSettings,
    HealthStatus,
    LLMMessage,
    LLMResponse,
    ModelInfo,
    ModelRegistry,
    StreamEvent,
    ToolCall,
    ToolDefinition,
)
from agent_builder.memory import MessageWindowingService, StructuredMemoryStore
from agent_builder.models import init_database
from agent_builder.storage import AgentRepository, TraceStore
from agent_builder.tools import ToolRegistry, create_echo_tool

MODEL_ID = "ollama:scripted"


class ScriptedLLM(BaseLLM):
    """Replays canned responses and records every request."""

    def __init__(self, responses: list[LLMResponse | Exception] | None = None, repeat_last: bool = False):
        super().__init__(api_key="", model="scripted")
        self.responses = list(responses or [])
        self.repeat_last = repeat_last
        self.calls: list[dict] = []

    def _next(self, messages, tools, system_prompt, settings) -> LLMResponse:
        self.calls.append({
            "messages": copy.deepcopy(messages),
            "tools": tools,
            "system_prompt": system_prompt,
            "settings": settings,
        })
        if not self.responses:
            raise AssertionError("ScriptedLLM ran out of responses")
        response = self.responses[0] if self.repeat_last and len(self.responses) == 1 else self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        settings: GenerationSettings | None = None,
    ) -> LLMResponse:
        return self._next(messages, tools, system_prompt, settings)

    async def stream(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        settings: GenerationSettings | None = None,
    ) -> AsyncIterator[StreamEvent]:
        try:
            response = self._next(messages, tools, system_prompt, settings)
        except Exception as e:
            yield StreamEvent.failure(str(e))
            return
        if response.content:
            yield StreamEvent.content(response.content)
        for call in response.tool_calls:
            yield StreamEvent.tool(call)
        yield StreamEvent.done(response.usage)

    async def health_check(self) -> HealthStatus:
        return HealthStatus(available=True, latency_ms=0)

    @property
    def provider_name(self) -> str:
        return "ollama"


def reply(content: str, input_tokens: int = 10, output_tokens: int = 5) -> LLMResponse:
    return LLMResponse(content=content, input_tokens=input_tokens, output_tokens=output_tokens)


def tool_reply(
    *calls: tuple[str, str, dict],
    content: str = "",
    input_tokens: int = 10,
    output_tokens: int = 5,
) -> LLMResponse:
    return LLMResponse(
        content=content,
        tool_calls=[ToolCall(id=call_id, name=name, arguments=args) for call_id, name, args in calls],
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        workspace_dir=str(tmp_path / "workspace"),
        memory_dir=str(tmp_path / "memory"),
        sandbox_dir=str(tmp_path / "sandbox"),
        openai_api_key="",
        anthropic_api_key="",
        openrouter_api_key="",
        max_turns=10,
    )


@pytest_asyncio.fixture
async def session_maker():
    return await init_database("sqlite+aiosqlite:///:memory:")


@pytest.fixture
def agents(session_maker) -> AgentRepository:
    return AgentRepository(session_maker)


@pytest.fixture
def traces(session_maker) -> TraceStore:
    return TraceStore(session_maker)


@pytest.fixture
def tool_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(create_echo_tool())
    return registry


@pytest.fixture
def llm() -> ScriptedLLM:
    return ScriptedLLM()


@pytest.fixture
def model_registry(settings) -> ModelRegistry:
    registry = ModelRegistry(settings)
    registry.register(ModelInfo(id=MODEL_ID, provider="ollama", name="scripted"))
    return registry


@pytest.fixture
def memory_store(settings) -> StructuredMemoryStore:
    return StructuredMemoryStore(settings.memory_dir)


@pytest.fixture
def executor(agents, model_registry, tool_registry, traces, settings, llm, memory_store) -> AgentExecutor:
    return AgentExecutor(
        agent_repository=agents,
        model_registry=model_registry,
        tool_registry=tool_registry,
        trace_store=traces,
        sessions=StreamSessionManager(),
        windowing=MessageWindowingService(),
        structured_memory=memory_store,
        settings=settings,
        llm_factory=lambda model_id, settings=None, model_info=None: llm,
    )
