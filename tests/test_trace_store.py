"""
Tests for the trace store.
"""

import pytest
import pytest_asyncio

from agent_builder.errors import RunNotFoundError, ValidationError
from agent_builder.llm import TokenUsage
from agent_builder.models import RunStatus, TurnState
from agent_builder.storage import RunQuery, ToolExecutionRecord, TraceStore, TurnRecord
from agent_builder.tools import ToolResult


def execution(call_id: str, output: str = "ok", success: bool = True, tool: str = "echo") -> ToolExecutionRecord:
    return ToolExecutionRecord(
        id=call_id,
        tool_name=tool,
        parameters={"text": output},
        result=ToolResult(success=success, output=output, execution_time_ms=3),
    )


def turn(number: int, executions=None, input_tokens: int = 10, output_tokens: int = 5) -> TurnRecord:
    return TurnRecord(
        turn_number=number,
        user_message="hi" if number == 1 else "[Tool results]",
        assistant_message=f"reply {number}",
        tool_executions=list(executions or []),
        usage=TokenUsage(input_tokens, output_tokens),
    )


@pytest_asyncio.fixture
async def agent_id(agents):
    agent = await agents.create(name="tracer", system_prompt="Trace me.", default_model="ollama:llama3.2")
    return agent.id


@pytest_asyncio.fixture
async def other_agent_id(agents):
    agent = await agents.create(name="other", system_prompt="Trace me too.", default_model="ollama:llama3.2")
    return agent.id


class FixedPricing:
    def __init__(self, quote):
        self.quote = quote
        self.calls = 0

    async def fetch(self, model_id, provider):
        self.calls += 1
        return self.quote


@pytest.mark.asyncio
async def test_create_and_get_run(traces, agent_id):
    """New runs start running with zeroed aggregates."""
    run = await traces.create_run(agent_id, "openai:gpt-4o", {"temperature": 0.2}, prompt_version=3)

    loaded = await traces.get_run(run.id)
    assert loaded.status == RunStatus.RUNNING
    assert loaded.model_settings == {"temperature": 0.2}
    assert loaded.prompt_version == 3
    assert loaded.total_usage.total_tokens == 0
    assert loaded.turns == []


@pytest.mark.asyncio
async def test_get_missing_run(traces):
    assert await traces.get_run("nope") is None


@pytest.mark.asyncio
async def test_append_turn_aggregates(traces, agent_id):
    """Run totals are recomputed additively after every append."""
    run = await traces.create_run(agent_id, "ollama:llama3.2")

    await traces.append_turn(run.id, turn(1, [execution("c1")], 100, 10))
    loaded = await traces.get_run(run.id)
    assert loaded.total_usage.total_tokens == 110

    await traces.append_turn(run.id, turn(2, [], 50, 7))
    loaded = await traces.get_run(run.id)
    assert loaded.total_usage.input_tokens == 150
    assert loaded.total_usage.output_tokens == 17
    assert loaded.total_usage.total_tokens == sum(t.usage.total_tokens for t in loaded.turns)
    assert loaded.total_tool_calls == 1


@pytest.mark.asyncio
async def test_append_turn_rejects_gaps(traces, agent_id):
    """Turn numbers must follow the last finalized turn."""
    run = await traces.create_run(agent_id, "ollama:llama3.2")
    await traces.append_turn(run.id, turn(1))

    with pytest.raises(ValidationError):
        await traces.append_turn(run.id, turn(3))
    with pytest.raises(ValidationError):
        await traces.append_turn(run.id, turn(1))


@pytest.mark.asyncio
async def test_execution_logged_before_turn_is_reconciled(traces, agent_id):
    """An execution logged ahead of its turn ends up on the finalized turn."""
    run = await traces.create_run(agent_id, "ollama:llama3.2")
    early = execution("c1", "first")

    provisional_id = await traces.log_tool_execution(run.id, early, turn_number=1)

    loaded = await traces.get_run(run.id)
    assert len(loaded.turns) == 1
    assert loaded.turns[0].state == TurnState.PROVISIONAL
    assert loaded.finalized_turns == []

    record = turn(1, [early])
    final_id = await traces.append_turn(run.id, record)

    assert final_id != provisional_id
    assert record.state == TurnState.FINALIZED
    assert early.turn_id == final_id

    loaded = await traces.get_run(run.id)
    assert [t.state for t in loaded.turns] == [TurnState.FINALIZED]
    assert [e.id for e in loaded.turns[0].tool_executions] == ["c1"]
    assert loaded.turns[0].tool_executions[0].turn_id == final_id
    # Logged once, not again on append
    assert loaded.total_tool_calls == 1


@pytest.mark.asyncio
async def test_unlogged_executions_inserted_on_append(traces, agent_id):
    """Executions carried by the turn but never logged are stored."""
    run = await traces.create_run(agent_id, "ollama:llama3.2")
    logged = execution("c1")
    await traces.log_tool_execution(run.id, logged, turn_number=1)

    await traces.append_turn(run.id, turn(1, [logged, execution("c2")]))

    loaded = await traces.get_run(run.id)
    assert sorted(e.id for e in loaded.turns[0].tool_executions) == ["c1", "c2"]
    assert loaded.total_tool_calls == 2


@pytest.mark.asyncio
async def test_log_defaults_to_next_turn(traces, agent_id):
    """Without a turn number, executions attach to the turn after the last finalized one."""
    run = await traces.create_run(agent_id, "ollama:llama3.2")
    await traces.append_turn(run.id, turn(1))

    await traces.log_tool_execution(run.id, execution("c1"))
    await traces.append_turn(run.id, turn(2))

    loaded = await traces.get_run(run.id)
    assert [e.id for e in loaded.turns[1].tool_executions] == ["c1"]


@pytest.mark.asyncio
async def test_reused_call_ids_across_turns(traces, agent_id):
    """Providers may reuse call ids; each turn keeps its own execution."""
    run = await traces.create_run(agent_id, "ollama:llama3.2")
    for number in (1, 2):
        record = execution("call_0", f"out {number}")
        await traces.log_tool_execution(run.id, record, turn_number=number)
        await traces.append_turn(run.id, turn(number, [record]))

    loaded = await traces.get_run(run.id)
    assert [t.tool_executions[0].result.output for t in loaded.turns] == ["out 1", "out 2"]


@pytest.mark.asyncio
async def test_status_transitions(traces, agent_id):
    """Status moves from running to a terminal state and stays there."""
    run = await traces.create_run(agent_id, "ollama:llama3.2")

    await traces.update_run_status(run.id, RunStatus.COMPLETED)
    loaded = await traces.get_run(run.id)
    assert loaded.status == RunStatus.COMPLETED
    assert loaded.completed_at is not None
    assert loaded.total_duration_ms is not None

    with pytest.raises(ValidationError):
        await traces.update_run_status(run.id, RunStatus.ERROR, error="late")

    with pytest.raises(ValidationError):
        await traces.update_run_status(run.id, "paused")


@pytest.mark.asyncio
async def test_error_status_records_message(traces, agent_id):
    run = await traces.create_run(agent_id, "ollama:llama3.2")
    await traces.update_run_status(run.id, "error", error="boom")

    loaded = await traces.get_run(run.id)
    assert loaded.status == RunStatus.ERROR
    assert loaded.error == "boom"


@pytest.mark.asyncio
async def test_run_lock_released_when_finished(traces, agent_id):
    run = await traces.create_run(agent_id, "ollama:llama3.2")
    await traces.append_turn(run.id, turn(1))
    assert run.id in traces._run_locks

    await traces.update_run_status(run.id, RunStatus.COMPLETED)
    assert run.id not in traces._run_locks

    # A continuation on the finished run still serializes its writes
    await traces.append_turn(run.id, turn(2))
    await traces.update_run_status(run.id, RunStatus.COMPLETED)
    assert run.id not in traces._run_locks
    assert len((await traces.get_run(run.id)).turns) == 2


@pytest.mark.asyncio
async def test_query_runs_filters(traces, agent_id, other_agent_id):
    first = await traces.create_run(agent_id, "ollama:llama3.2")
    await traces.create_run(other_agent_id, "ollama:llama3.2")
    await traces.update_run_status(first.id, RunStatus.COMPLETED)

    runs = await traces.query_runs(RunQuery(agent_id=agent_id))
    assert [r.id for r in runs] == [first.id]

    completed = await traces.query_runs(RunQuery(status=RunStatus.COMPLETED))
    assert [r.id for r in completed] == [first.id]

    assert await traces.count_runs(agent_id) == 1
    assert await traces.count_runs(other_agent_id, RunStatus.COMPLETED) == 0


@pytest.mark.asyncio
async def test_delete_run_cascades(traces, agent_id):
    run = await traces.create_run(agent_id, "ollama:llama3.2")
    await traces.append_turn(run.id, turn(1, [execution("c1")]))

    await traces.delete_run(run.id)

    assert await traces.get_run(run.id) is None
    assert await traces.get_tool_stats(agent_id) == []
    with pytest.raises(RunNotFoundError):
        await traces.delete_run(run.id)


@pytest.mark.asyncio
async def test_tool_stats(traces, agent_id):
    run = await traces.create_run(agent_id, "ollama:llama3.2")
    await traces.append_turn(run.id, turn(1, [
        execution("c1"),
        execution("c2", success=False),
        execution("c3", tool="http"),
    ]))

    stats = {s.tool_name: s for s in await traces.get_tool_stats(agent_id)}
    assert stats["echo"].total_executions == 2
    assert stats["echo"].successful_executions == 1
    assert stats["echo"].success_rate == 0.5
    assert stats["echo"].avg_execution_time_ms == 3.0
    assert stats["http"].success_rate == 1.0


@pytest.mark.asyncio
async def test_ollama_runs_are_free(traces, agent_id):
    run = await traces.create_run(agent_id, "ollama:llama3.2")
    await traces.append_turn(run.id, turn(1, [], 1000, 1000))

    cost = await traces.calculate_run_cost(run.id)
    assert cost.total_cost == 0.0
    assert cost.model_id == "llama3.2"


@pytest.mark.asyncio
async def test_pricing_fetched_once_and_cached(session_maker, agent_id):
    """Fetched prices are stored and reused on the next lookup."""
    pricing = FixedPricing((0.5, 1.5))
    traces = TraceStore(session_maker, pricing_source=pricing)
    run = await traces.create_run(agent_id, "openrouter:meta-llama/llama-3:free")
    await traces.append_turn(run.id, turn(1, [], 2000, 1000))

    cost = await traces.calculate_run_cost(run.id)
    assert cost.model_id == "meta-llama/llama-3:free"
    assert cost.input_cost == pytest.approx(1.0)
    assert cost.output_cost == pytest.approx(1.5)
    assert cost.total_cost == pytest.approx(2.5)

    await traces.calculate_run_cost(run.id)
    assert pricing.calls == 1

    await traces.get_model_pricing("meta-llama/llama-3:free", "openrouter", force_update=True)
    assert pricing.calls == 2


@pytest.mark.asyncio
async def test_cost_unavailable_without_pricing(traces, agent_id):
    run = await traces.create_run(agent_id, "openai:gpt-4o")
    assert await traces.calculate_run_cost(run.id) is None

    await traces.set_model_pricing("gpt-4o", "openai", 0.0025, 0.01)
    await traces.append_turn(run.id, turn(1, [], 1000, 100))

    cost = await traces.calculate_run_cost(run.id)
    assert cost.total_cost == pytest.approx(0.0035)
