"""
Agent execution engine.

Drives a ReAct conversation for a configured agent:
1. Resolves the agent and its model adapter and opens (or reopens) a run
2. Builds the message buffer from replayed history, windowing and memory
3. Calls the model, dispatches the tool calls it asks for, feeds the results back
4. Persists every tool execution as it happens and every turn when it ends
5. Finalizes the run and signals any attached stream
"""

import asyncio
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable

import structlog

from ..config import Settings, get_settings
from ..errors import (
    AgentNotFoundError,
    ModelError,
    ModelNotFoundError,
    RunNotFoundError,
    UnauthorizedToolError,
    ValidationError,
)
from ..llm import (
    BaseLLM,
    GenerationSettings,
    LLMMessage,
    LLMResponse,
    ModelRegistry,
    StreamEvent,
    TokenUsage,
    ToolCall,
    ToolDefinition,
    create_llm,
)
from ..memory import MessageWindowingService, StructuredMemoryStore
from ..models import RunStatus, utcnow
from ..storage import AgentConfig, AgentRepository, ToolExecutionRecord, TraceStore, TurnRecord
from ..tools import ToolRegistry
from .history import TOOL_RESULTS_MARKER, build_conversation_history, tool_message_content
from .session import StreamSessionManager, StreamSink
from .versioning import generate_agent_version, generate_memory_hash

logger = structlog.get_logger()

LLMFactory = Callable[..., BaseLLM]

MEMORY_PREAMBLE = "Structured memory from previous conversations:\n\n"


@dataclass
class ExecutionOptions:
    """Per-request knobs. Unset fields fall back to the agent and settings."""

    model_override: str | None = None
    max_turns: int | None = None
    stream_session_id: str | None = None
    settings: GenerationSettings | None = None
    conversation_history: list[LLMMessage] | None = None


@dataclass
class _LoopResult:
    messages: list[LLMMessage]
    final_content: str
    turns: int


class AgentExecutor:
    """Runs agents. One instance serves every run in the process."""

    def __init__(
        self,
        agent_repository: AgentRepository,
        model_registry: ModelRegistry,
        tool_registry: ToolRegistry,
        trace_store: TraceStore,
        sessions: StreamSessionManager,
        windowing: MessageWindowingService | None = None,
        structured_memory: StructuredMemoryStore | None = None,
        settings: Settings | None = None,
        llm_factory: LLMFactory = create_llm,
    ):
        self.agents = agent_repository
        self.models = model_registry
        self.tools = tool_registry
        self.traces = trace_store
        self.sessions = sessions
        self.windowing = windowing
        self.structured_memory = structured_memory
        self.settings = settings or get_settings()
        self.llm_factory = llm_factory

        self._active_runs: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    # Entry points

    async def execute(
        self,
        agent_id: str,
        user_message: str,
        options: ExecutionOptions | None = None,
    ) -> str:
        """Run an agent on a new message and return the run id."""
        options = options or ExecutionOptions()
        try:
            max_turns = self._max_turns(options)
            agent = await self._load_agent(agent_id)
            model_id = options.model_override or agent.default_model
            llm = await self._resolve_model(model_id)
            settings = self._generation_settings(agent, options)

            run = await self.traces.create_run(
                agent.id,
                model_id,
                model_settings=settings.to_dict(),
                prompt_version=agent.prompt_version,
            )
            self._reserve(run.id)
            try:
                await self.sessions.send(options.stream_session_id, StreamEvent.run_created(run.id))

                await self._drive(
                    agent,
                    run.id,
                    RunStatus.RUNNING,
                    llm,
                    model_id,
                    user_message,
                    options.conversation_history or [],
                    settings,
                    max_turns,
                    options,
                    first_turn=1,
                )
            finally:
                self._active_runs.discard(run.id)
        except Exception as e:
            await self.sessions.error(options.stream_session_id, str(e))
            raise

        await self.sessions.complete(options.stream_session_id)
        return run.id

    async def continue_conversation(
        self,
        run_id: str,
        user_message: str,
        options: ExecutionOptions | None = None,
    ) -> None:
        """Resume an existing run with a new user message."""
        options = options or ExecutionOptions()
        try:
            max_turns = self._max_turns(options)
            # Claimed before the first await so a second caller sees it
            self._reserve(run_id)
            try:
                run = await self.traces.get_run(run_id)
                if run is None:
                    raise RunNotFoundError(run_id)

                agent = await self._load_agent(run.agent_id)
                llm = await self._resolve_model(run.model_used)
                settings = self._generation_settings(agent, options)
                history = options.conversation_history
                if history is None:
                    history = build_conversation_history(run)

                await self.sessions.send(options.stream_session_id, StreamEvent.run_created(run.id))

                await self._drive(
                    agent,
                    run.id,
                    run.status,
                    llm,
                    run.model_used,
                    user_message,
                    history,
                    settings,
                    max_turns,
                    options,
                    first_turn=run.last_turn_number + 1,
                )
            finally:
                self._active_runs.discard(run_id)
        except Exception as e:
            await self.sessions.error(options.stream_session_id, str(e))
            raise

        await self.sessions.complete(options.stream_session_id)

    async def execute_streaming(
        self,
        agent_id: str,
        user_message: str,
        options: ExecutionOptions | None = None,
        sink: StreamSink | None = None,
    ) -> str:
        """Start a run in the background and return its stream session id."""
        session_id, options = await self._open_session(options, sink)
        self._spawn(session_id, lambda: self.execute(agent_id, user_message, options))
        return session_id

    async def continue_streaming(
        self,
        run_id: str,
        user_message: str,
        options: ExecutionOptions | None = None,
        sink: StreamSink | None = None,
    ) -> str:
        session_id, options = await self._open_session(options, sink)
        self._spawn(session_id, lambda: self.continue_conversation(run_id, user_message, options))
        return session_id

    async def drain(self) -> None:
        """Wait for every background run to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Run lifecycle

    async def _drive(
        self,
        agent: AgentConfig,
        run_id: str,
        prior_status: RunStatus,
        llm: BaseLLM,
        model_id: str,
        user_message: str,
        history: list[LLMMessage],
        settings: GenerationSettings,
        max_turns: int,
        options: ExecutionOptions,
        first_turn: int,
    ) -> None:
        try:
            result = await self._run_loop(
                agent, run_id, llm, model_id, user_message, history, settings, max_turns, options, first_turn
            )
            await self._record_success(agent, run_id, prior_status, llm, user_message, result)
        except Exception as e:
            await self._record_failure(run_id, prior_status, e)
            raise

    async def _record_failure(self, run_id: str, prior_status: RunStatus, error: Exception) -> None:
        logger.error("Run failed", run_id=run_id, error=str(error), error_type=type(error).__name__)

        if prior_status != RunStatus.RUNNING:
            # A finished run keeps its status; the failed turns stay in the trace
            logger.warning("Continuation failed on finished run", run_id=run_id, status=prior_status.value)
            return

        try:
            await self.traces.update_run_status(run_id, RunStatus.ERROR, error=str(error))
        except Exception as e:
            logger.error("Failed to mark run as errored", run_id=run_id, error=str(e))

    async def _record_success(
        self,
        agent: AgentConfig,
        run_id: str,
        prior_status: RunStatus,
        llm: BaseLLM,
        user_message: str,
        result: _LoopResult,
    ) -> None:
        completed = await self.traces.count_runs(agent.id, RunStatus.COMPLETED)
        memory_number = completed if prior_status == RunStatus.COMPLETED else completed + 1
        version = generate_agent_version(
            agent.prompt_version,
            memory_number,
            generate_memory_hash(user_message, result.final_content),
        )
        await self.traces.set_run_version(run_id, agent.prompt_version, version)
        if prior_status == RunStatus.ERROR:
            logger.info("Errored run keeps its status", run_id=run_id)
        else:
            await self.traces.update_run_status(run_id, RunStatus.COMPLETED)

        logger.info("Run completed", run_id=run_id, turns=result.turns, agent_version=version)

        if agent.use_structured_memory and self.structured_memory is not None:
            await self.structured_memory.update(agent.id, run_id, result.messages, llm)

    # The loop

    async def _run_loop(
        self,
        agent: AgentConfig,
        run_id: str,
        llm: BaseLLM,
        model_id: str,
        user_message: str,
        history: list[LLMMessage],
        settings: GenerationSettings,
        max_turns: int,
        options: ExecutionOptions,
        first_turn: int,
    ) -> _LoopResult:
        session_id = options.stream_session_id
        tools = self.tools.get_definitions(agent.allowed_tools) or None

        messages = await self._build_messages(agent, history, user_message, llm)
        response: LLMResponse | None = None

        for iteration in range(max_turns):
            turn_number = first_turn + iteration
            started_at = utcnow()
            started = time.monotonic()

            response = await self._call_model(
                llm, messages, tools, agent.system_prompt, settings, session_id
            )
            self.models.record_usage(model_id, _tokens_per_second(response))

            messages.append(LLMMessage(
                role="assistant",
                content=response.content,
                tool_calls=response.tool_calls or None,
            ))

            turn = TurnRecord(
                turn_number=turn_number,
                user_message=user_message if iteration == 0 else TOOL_RESULTS_MARKER,
                assistant_message=response.content,
                usage=response.usage,
                started_at=started_at,
            )

            try:
                for call in response.tool_calls:
                    execution = await self._dispatch_tool(agent, run_id, turn_number, call, session_id)
                    turn.tool_executions.append(execution)
                    messages.append(LLMMessage(
                        role="tool",
                        content=tool_message_content(execution),
                        tool_call_id=call.id,
                        name=call.name,
                    ))
            except Exception:
                await self._append_turn(run_id, turn, started)
                raise

            await self._append_turn(run_id, turn, started)

            if not response.tool_calls:
                return _LoopResult(messages, response.content, iteration + 1)

        logger.warning("max_turns_reached", run_id=run_id, max_turns=max_turns)
        return _LoopResult(messages, response.content if response else "", max_turns)

    async def _append_turn(self, run_id: str, turn: TurnRecord, started: float) -> None:
        turn.duration_ms = int((time.monotonic() - started) * 1000)
        turn.timestamp = utcnow()
        await self.traces.append_turn(run_id, turn)
        logger.debug(
            "Turn logged",
            run_id=run_id,
            turn_number=turn.turn_number,
            tool_calls=len(turn.tool_executions),
        )

    async def _dispatch_tool(
        self,
        agent: AgentConfig,
        run_id: str,
        turn_number: int,
        call: ToolCall,
        session_id: str | None,
    ) -> ToolExecutionRecord:
        if call.name not in agent.allowed_tools:
            logger.warning("Unauthorized tool call", tool=call.name, agent_id=agent.id, run_id=run_id)
            raise UnauthorizedToolError(call.name, agent.id)

        logger.debug("Dispatching tool", tool=call.name, call_id=call.id, run_id=run_id)
        result = await self.tools.execute(call.name, call.arguments)

        execution = ToolExecutionRecord(
            id=call.id,
            tool_name=call.name,
            parameters=call.arguments,
            result=result,
        )
        await self.traces.log_tool_execution(run_id, execution, turn_number)

        await self.sessions.send(
            session_id,
            StreamEvent.tool_result(call, result.success, tool_message_content(execution)),
        )
        return execution

    async def _call_model(
        self,
        llm: BaseLLM,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None,
        system_prompt: str,
        settings: GenerationSettings,
        session_id: str | None,
    ) -> LLMResponse:
        if session_id is None:
            return await llm.generate(
                messages=messages,
                tools=tools,
                system_prompt=system_prompt,
                settings=settings,
            )

        started = time.monotonic()
        content_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        usage = TokenUsage()

        async for event in llm.stream(
            messages=messages,
            tools=tools,
            system_prompt=system_prompt,
            settings=settings,
        ):
            if event.type == "error":
                raise ModelError(event.message or "Stream failed", llm.provider_name)

            await self.sessions.send(session_id, event)

            if event.type == "content":
                content_parts.append(event.text or "")
            elif event.type == "tool_call" and event.tool_call is not None:
                tool_calls.append(event.tool_call)
            elif event.type == "done" and event.usage is not None:
                usage = event.usage

        return LLMResponse(
            content="".join(content_parts),
            tool_calls=tool_calls,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            model=llm.model,
            stop_reason="tool_use" if tool_calls else "stop",
            latency_ms=int((time.monotonic() - started) * 1000),
        )

    # Helpers

    def _reserve(self, run_id: str) -> None:
        if run_id in self._active_runs:
            raise ValidationError(f"Run {run_id} already has an active loop", "run_id")
        self._active_runs.add(run_id)

    def _max_turns(self, options: ExecutionOptions) -> int:
        max_turns = self.settings.max_turns if options.max_turns is None else options.max_turns
        if max_turns < 1:
            raise ValidationError("max_turns must be at least 1", "max_turns")
        return max_turns

    async def _load_agent(self, agent_id: str) -> AgentConfig:
        agent = await self.agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    async def _resolve_model(self, model_id: str) -> BaseLLM:
        info = await self.models.get_model_info(model_id)
        if info is None:
            raise ModelNotFoundError(model_id)
        return self.llm_factory(model_id, self.settings, info)

    def _generation_settings(self, agent: AgentConfig, options: ExecutionOptions) -> GenerationSettings:
        merged: dict[str, Any] = agent.settings.to_dict()
        if options.settings is not None:
            merged.update(options.settings.to_dict())
        return GenerationSettings.from_dict(merged)

    async def _build_messages(
        self,
        agent: AgentConfig,
        history: list[LLMMessage],
        user_message: str,
        llm: BaseLLM,
    ) -> list[LLMMessage]:
        messages = [*history, LLMMessage(role="user", content=user_message)]

        window = agent.message_window_size or self.settings.default_window_size
        if window and self.windowing is not None and len(messages) > window:
            messages = await self.windowing.compress_messages(messages, window, llm)

        if agent.use_structured_memory and self.structured_memory is not None:
            memory = self.structured_memory.read(agent.id)
            if memory:
                messages.insert(0, LLMMessage(role="system", content=f"{MEMORY_PREAMBLE}{memory}"))

        return messages

    async def _open_session(
        self, options: ExecutionOptions | None, sink: StreamSink | None
    ) -> tuple[str, ExecutionOptions]:
        options = options or ExecutionOptions()
        session_id = await self.sessions.create_session(options.stream_session_id)
        if sink is not None:
            await self.sessions.register(session_id, sink)
        return session_id, replace(options, stream_session_id=session_id)

    def _spawn(self, session_id: str, run: Callable[[], Awaitable[Any]]) -> None:
        async def _background() -> None:
            try:
                await run()
            except Exception as e:
                # Already routed to the stream as an error event
                logger.error("Background run failed", session_id=session_id, error=str(e))

        task = asyncio.create_task(_background())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


def _tokens_per_second(response: LLMResponse) -> float | None:
    if not response.output_tokens or not response.latency_ms:
        return None
    return response.output_tokens / (response.latency_ms / 1000)
