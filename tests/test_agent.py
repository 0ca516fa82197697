"""
Tests for the agent execution engine.
"""

import asyncio

import httpx
import pytest

from agent_builder.agent import (
    TOOL_RESULTS_MARKER,
    AgentExecutor,
    ExecutionOptions,
    QueueSink,
    StreamSessionManager,
    generate_memory_hash,
    parse_agent_version,
)
from agent_builder.errors import (
    AgentNotFoundError,
    ModelError,
    ModelNotFoundError,
    UnauthorizedToolError,
    ValidationError,
)
from agent_builder.llm import LLMMessage, ModelRegistry
from agent_builder.models import RunStatus
from agent_builder.storage import RunQuery

from .conftest import MODEL_ID, reply, tool_reply


async def make_agent(agents, allowed_tools=None, **kwargs):
    return await agents.create(
        name="helper",
        system_prompt="You are helpful.",
        default_model=MODEL_ID,
        allowed_tools=["echo"] if allowed_tools is None else allowed_tools,
        **kwargs,
    )


async def only_run(traces, agent_id):
    runs = await traces.query_runs(RunQuery(agent_id=agent_id))
    assert len(runs) == 1
    return runs[0]


@pytest.mark.asyncio
async def test_echo_single_turn(executor, agents, traces, llm):
    """A single allowed echo call within one turn completes the run."""
    agent = await make_agent(agents)
    llm.responses = [tool_reply(("call_1", "echo", {"text": "hi"}))]

    run_id = await executor.execute(agent.id, "say hi", ExecutionOptions(max_turns=1))

    run = await traces.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert len(run.turns) == 1
    executions = run.turns[0].tool_executions
    assert len(executions) == 1
    assert executions[0].id == "call_1"
    assert executions[0].result.success is True
    assert executions[0].result.output == "hi"
    assert run.total_tool_calls == 1


@pytest.mark.asyncio
async def test_tool_result_fed_back_to_model(executor, agents, traces, llm):
    """The follow-up model call sees the tool message and becomes a second turn."""
    agent = await make_agent(agents)
    llm.responses = [
        tool_reply(("call_1", "echo", {"text": "hi"})),
        reply("The echo said hi"),
    ]

    run_id = await executor.execute(agent.id, "say hi")

    second_call = llm.calls[1]["messages"]
    assert [m.role for m in second_call] == ["user", "assistant", "tool"]
    assert second_call[2].content == "hi"
    assert second_call[2].tool_call_id == "call_1"

    run = await traces.get_run(run_id)
    assert [t.turn_number for t in run.turns] == [1, 2]
    assert run.turns[0].user_message == "say hi"
    assert run.turns[1].user_message == TOOL_RESULTS_MARKER
    assert run.turns[1].assistant_message == "The echo said hi"
    assert run.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_tools_limited_to_allowlist(executor, agents, llm, tool_registry):
    """Only the agent's allowed tools are offered to the model."""
    from agent_builder.tools.base import Tool, ToolParameter, ToolResult

    async def noop(value: str) -> ToolResult:
        return ToolResult(success=True, output=value)

    tool_registry.register(Tool(
        name="noop",
        description="Does nothing",
        parameters=[ToolParameter(name="value", param_type="string", description="Value")],
        handler=noop,
    ))
    agent = await make_agent(agents)
    llm.responses = [reply("ok")]

    await executor.execute(agent.id, "hello")

    assert [t.name for t in llm.calls[0]["tools"]] == ["echo"]
    assert llm.calls[0]["system_prompt"] == "You are helpful."


@pytest.mark.asyncio
async def test_turn_limit_completes_run(executor, agents, traces, llm):
    """A model that never stops calling tools is cut off at max_turns."""
    agent = await make_agent(agents)
    llm.responses = [tool_reply(("call_1", "echo", {"text": "again"}))]
    llm.repeat_last = True

    run_id = await executor.execute(agent.id, "loop", ExecutionOptions(max_turns=3))

    run = await traces.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert len(run.turns) == 3
    assert len(llm.calls) == 3
    # The provider reused the call id on every turn
    assert all(len(t.tool_executions) == 1 for t in run.turns)
    assert run.total_tool_calls == 3


@pytest.mark.asyncio
async def test_unauthorized_tool_stops_run(executor, agents, traces, llm):
    """A tool outside the allowlist fails the run without another model call."""
    agent = await make_agent(agents)
    llm.responses = [tool_reply(("call_1", "shell", {"command": "ls"})), reply("never")]

    with pytest.raises(UnauthorizedToolError) as exc_info:
        await executor.execute(agent.id, "list files")

    assert exc_info.value.tool_name == "shell"
    assert len(llm.calls) == 1

    run = await only_run(traces, agent.id)
    assert run.status == RunStatus.ERROR
    assert "shell" in run.error
    assert run.completed_at is not None


@pytest.mark.asyncio
async def test_empty_allowlist_rejects_any_tool(executor, agents, traces, llm):
    """With no allowed tools nothing is offered and any request is fatal."""
    agent = await make_agent(agents, allowed_tools=[])
    llm.responses = [tool_reply(("call_1", "echo", {"text": "hi"}))]

    with pytest.raises(UnauthorizedToolError):
        await executor.execute(agent.id, "say hi")

    assert llm.calls[0]["tools"] is None
    run = await only_run(traces, agent.id)
    assert run.status == RunStatus.ERROR
    assert run.total_tool_calls == 0
    assert all(not t.tool_executions for t in run.turns)


@pytest.mark.asyncio
async def test_failed_tool_is_reported_to_model(executor, agents, traces, llm):
    """Tool failures are fed back as an error message, not raised."""
    agent = await make_agent(agents)
    llm.responses = [tool_reply(("call_1", "echo", {})), reply("Sorry")]

    run_id = await executor.execute(agent.id, "echo nothing")

    tool_message = llm.calls[1]["messages"][-1]
    assert tool_message.role == "tool"
    assert tool_message.content.startswith("Error: Missing required parameters")

    run = await traces.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.turns[0].tool_executions[0].result.success is False


@pytest.mark.asyncio
async def test_run_tokens_match_turn_sum(executor, agents, traces, llm):
    """Run token totals are the sum of the turn totals."""
    agent = await make_agent(agents)
    llm.responses = [
        tool_reply(("call_1", "echo", {"text": "a"}), input_tokens=100, output_tokens=20),
        reply("done", input_tokens=130, output_tokens=7),
    ]

    run_id = await executor.execute(agent.id, "go")

    run = await traces.get_run(run_id)
    assert run.total_usage.input_tokens == 230
    assert run.total_usage.output_tokens == 27
    assert run.total_usage.total_tokens == sum(t.usage.total_tokens for t in run.turns)


@pytest.mark.asyncio
async def test_unknown_agent_creates_no_run(executor, traces):
    """Resolution errors happen before any run exists."""
    with pytest.raises(AgentNotFoundError):
        await executor.execute("missing", "hello")

    assert await traces.query_runs(RunQuery(agent_id="missing")) == []


@pytest.mark.asyncio
async def test_unknown_model_creates_no_run(agents, tool_registry, traces, settings, llm):
    """A model missing from the catalog raises ModelNotFoundError."""
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"models": []}))
    executor = AgentExecutor(
        agent_repository=agents,
        model_registry=ModelRegistry(settings, transport=transport),
        tool_registry=tool_registry,
        trace_store=traces,
        sessions=StreamSessionManager(),
        settings=settings,
        llm_factory=lambda *args, **kwargs: llm,
    )
    agent = await make_agent(agents)

    with pytest.raises(ModelNotFoundError):
        await executor.execute(agent.id, "hello")

    assert await traces.query_runs(RunQuery(agent_id=agent.id)) == []


@pytest.mark.asyncio
async def test_model_error_marks_run_failed(executor, agents, traces, llm):
    """Model failures abort the run and are re-raised."""
    agent = await make_agent(agents)
    llm.responses = [ModelError("connection refused", "ollama")]

    with pytest.raises(ModelError):
        await executor.execute(agent.id, "hello")

    run = await only_run(traces, agent.id)
    assert run.status == RunStatus.ERROR
    assert "connection refused" in run.error
    assert run.turns == []


@pytest.mark.asyncio
async def test_generation_settings_override(executor, agents, llm):
    """Per-request settings override the agent's settings field by field."""
    from agent_builder.llm import GenerationSettings

    agent = await make_agent(agents, settings=GenerationSettings(temperature=0.2, max_tokens=100))
    llm.responses = [reply("ok")]

    await executor.execute(
        agent.id, "hello", ExecutionOptions(settings=GenerationSettings(max_tokens=50))
    )

    used = llm.calls[0]["settings"]
    assert used.temperature == 0.2
    assert used.max_tokens == 50


@pytest.mark.asyncio
async def test_agent_version_recorded(executor, agents, traces, llm):
    """Completed runs carry PROMPT.MEMNUM.HASH."""
    agent = await make_agent(agents)
    llm.responses = [reply("Hi"), reply("Hi again")]

    first = await executor.execute(agent.id, "hello")
    second = await executor.execute(agent.id, "hello")

    version = parse_agent_version((await traces.get_run(first)).agent_version)
    assert version.prompt_version == 1
    assert version.memory_number == 1
    assert version.memory_hash == generate_memory_hash("hello", "Hi")

    assert parse_agent_version((await traces.get_run(second)).agent_version).memory_number == 2


@pytest.mark.asyncio
async def test_continue_conversation_replays_history(executor, agents, traces, llm):
    """Continuation sends prior turns before the new message and numbers turns on."""
    agent = await make_agent(agents)
    llm.responses = [reply("Hi, I'm here"), reply("Still here")]

    run_id = await executor.execute(agent.id, "hello")
    await executor.continue_conversation(run_id, "are you there?")

    messages = llm.calls[1]["messages"]
    assert [(m.role, m.content) for m in messages] == [
        ("user", "hello"),
        ("assistant", "Hi, I'm here"),
        ("user", "are you there?"),
    ]

    run = await traces.get_run(run_id)
    assert [t.turn_number for t in run.turns] == [1, 2]
    assert run.turns[1].user_message == "are you there?"
    assert run.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_continue_failure_keeps_finished_status(executor, agents, traces, llm):
    """A failed continuation does not flip a completed run to error."""
    agent = await make_agent(agents)
    llm.responses = [reply("Hi"), ModelError("overloaded", "ollama")]

    run_id = await executor.execute(agent.id, "hello")
    with pytest.raises(ModelError):
        await executor.continue_conversation(run_id, "more")

    run = await traces.get_run(run_id)
    assert run.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_continue_errored_run_keeps_error_status(executor, agents, traces, llm):
    agent = await make_agent(agents)
    llm.responses = [ModelError("timeout", "ollama"), reply("Recovered")]

    with pytest.raises(ModelError):
        await executor.execute(agent.id, "hello")
    run = await only_run(traces, agent.id)

    await executor.continue_conversation(run.id, "try again")

    run = await traces.get_run(run.id)
    assert run.status == RunStatus.ERROR
    assert [t.assistant_message for t in run.turns] == ["Recovered"]
    assert run.turns[0].turn_number == 1
    assert run.agent_version is not None


@pytest.mark.asyncio
async def test_concurrent_continuations_run_one_loop(executor, agents, traces, llm):
    """Only one loop may drive a run at a time."""
    agent = await make_agent(agents)
    llm.responses = [reply("Hi"), reply("First"), reply("Second")]
    run_id = await executor.execute(agent.id, "hello")

    results = await asyncio.gather(
        executor.continue_conversation(run_id, "one"),
        executor.continue_conversation(run_id, "two"),
        return_exceptions=True,
    )

    rejected = [r for r in results if isinstance(r, ValidationError)]
    assert len(rejected) == 1
    assert "active loop" in str(rejected[0])
    assert results.count(None) == 1
    assert len(llm.calls) == 2

    run = await traces.get_run(run_id)
    assert [t.turn_number for t in run.turns] == [1, 2]
    assert run.turns[1].assistant_message == "First"

    # The reservation is released once the winner finishes
    await executor.continue_conversation(run_id, "three")
    assert len((await traces.get_run(run_id)).turns) == 3


@pytest.mark.asyncio
async def test_failed_bookkeeping_marks_run_errored(executor, agents, traces, llm, monkeypatch):
    """A failure while finalizing a run still moves it out of running."""
    agent = await make_agent(agents)
    llm.responses = [reply("Hi")]

    async def broken_set_run_version(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(traces, "set_run_version", broken_set_run_version)

    with pytest.raises(RuntimeError):
        await executor.execute(agent.id, "hello")

    run = await only_run(traces, agent.id)
    assert run.status == RunStatus.ERROR
    assert run.error == "disk full"
    assert len(run.turns) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("max_turns", [0, -1])
async def test_turn_limit_below_one_rejected(executor, agents, traces, llm, max_turns):
    agent = await make_agent(agents)
    llm.responses = [reply("never")]

    with pytest.raises(ValidationError):
        await executor.execute(agent.id, "hello", ExecutionOptions(max_turns=max_turns))

    assert await traces.query_runs(RunQuery(agent_id=agent.id)) == []
    assert llm.calls == []


@pytest.mark.asyncio
async def test_window_compresses_history(executor, agents, llm):
    """History beyond the window is summarized before the model call."""
    agent = await make_agent(agents, message_window_size=2)
    history = [
        LLMMessage(role="user", content="one"),
        LLMMessage(role="assistant", content="two"),
        LLMMessage(role="user", content="three"),
        LLMMessage(role="assistant", content="four"),
    ]
    llm.responses = [reply("summary A"), reply("summary B"), reply("answer")]

    await executor.execute(agent.id, "five", ExecutionOptions(conversation_history=history))

    messages = llm.calls[2]["messages"]
    assert [(m.role, m.content) for m in messages] == [
        ("system", "Previous conversation summary: summary A"),
        ("system", "Previous conversation summary: summary B"),
        ("user", "five"),
    ]


@pytest.mark.asyncio
async def test_structured_memory_injected_and_updated(executor, agents, llm, memory_store):
    """Memory leads the buffer and is regenerated after the run."""
    agent = await make_agent(agents, use_structured_memory=True)
    memory_store.write(agent.id, "# Conversation Memory\n\nUser likes tea")
    llm.responses = [
        reply("Noted"),
        reply("KEY CONVO DATA: User likes green tea\nCURRENT TOPIC: Drinks"),
    ]

    run_id = await executor.execute(agent.id, "I like green tea")

    first = llm.calls[0]["messages"]
    assert first[0].role == "system"
    assert "User likes tea" in first[0].content
    assert first[-1].content == "I like green tea"

    memory = memory_store.read(agent.id)
    assert "User likes green tea" in memory
    assert "## CURRENT TOPIC\nDrinks" in memory
    assert f"Run ID: {run_id}" in memory


@pytest.mark.asyncio
async def test_streaming_events(executor, agents, traces, llm):
    """Streaming runs emit run_created, tool events, content and done."""
    agent = await make_agent(agents)
    llm.responses = [
        tool_reply(("call_1", "echo", {"text": "hi"})),
        reply("All done"),
    ]

    sink = QueueSink()
    session_id = await executor.execute_streaming(agent.id, "say hi", sink=sink)
    events = [event async for event in sink]
    await executor.drain()

    types = [e.type for e in events]
    assert types[0] == "run_created"
    assert types == ["run_created", "tool_call", "done", "tool_result", "content", "done"]

    tool_result = events[3].to_dict()["tool_result"]
    assert tool_result == {"id": "call_1", "name": "echo", "success": True, "output": "hi"}
    assert events[4].text == "All done"

    run = await traces.get_run(events[0].run_id)
    assert run.status == RunStatus.COMPLETED
    assert not executor.sessions.is_active(session_id)


@pytest.mark.asyncio
async def test_streaming_error_event(executor, agents, traces, llm):
    """Stream failures end the stream with an error event and fail the run."""
    agent = await make_agent(agents)
    llm.responses = [ModelError("rate limited", "ollama")]

    sink = QueueSink()
    await executor.execute_streaming(agent.id, "hello", sink=sink)
    events = [event async for event in sink]
    await executor.drain()

    assert events[0].type == "run_created"
    assert events[-1].type == "error"
    assert "rate limited" in events[-1].message

    run = await traces.get_run(events[0].run_id)
    assert run.status == RunStatus.ERROR


@pytest.mark.asyncio
async def test_streaming_unknown_agent_reports_error(executor):
    """Resolution failures in a background run reach the stream."""
    sink = QueueSink()
    await executor.execute_streaming("missing", "hello", sink=sink)
    events = [event async for event in sink]
    await executor.drain()

    assert [e.type for e in events] == ["error"]
    assert "missing" in events[0].message
