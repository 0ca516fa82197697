"""
Tests for message windowing and structured memory.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from agent_builder.errors import ModelError, ValidationError
from agent_builder.llm import LLMMessage, LLMResponse
from agent_builder.memory import MessageWindowingService, StructuredMemoryStore


def numbered(count: int) -> list[LLMMessage]:
    return [
        LLMMessage(role="user" if i % 2 == 0 else "assistant", content=f"message {i}")
        for i in range(count)
    ]


@pytest.mark.asyncio
async def test_window_noop_when_short():
    """Nothing is summarized while the buffer fits the window."""
    llm = MagicMock()
    llm.generate = AsyncMock()
    messages = numbered(4)

    result = await MessageWindowingService().compress_messages(messages, 4, llm)

    assert result is messages
    llm.generate.assert_not_called()


@pytest.mark.asyncio
async def test_window_rejects_bad_size():
    with pytest.raises(ValidationError):
        await MessageWindowingService().compress_messages(numbered(3), 0, MagicMock())


@pytest.mark.asyncio
async def test_window_summarizes_all_but_last_chunk():
    llm = MagicMock()
    llm.generate = AsyncMock(side_effect=[
        LLMResponse(content="first chunk"),
        LLMResponse(content="second chunk"),
    ])
    messages = numbered(10)

    result = await MessageWindowingService().compress_messages(messages, 4, llm)

    assert [m.content for m in result] == [
        "Previous conversation summary: first chunk",
        "Previous conversation summary: second chunk",
        "message 8",
        "message 9",
    ]
    assert all(m.role == "system" for m in result[:2])

    settings = llm.generate.call_args.kwargs["settings"]
    assert settings.temperature == 0.3
    assert settings.max_tokens == 500
    prompt = llm.generate.call_args_list[0].kwargs["messages"][0].content
    assert "USER: message 0" in prompt
    assert "ASSISTANT: message 3" in prompt


@pytest.mark.asyncio
async def test_window_failed_chunk_keeps_originals():
    """12 messages at window 4: the failing middle chunk survives verbatim."""
    llm = MagicMock()
    llm.generate = AsyncMock(side_effect=[
        LLMResponse(content="summary one"),
        ModelError("timeout", "ollama"),
    ])
    messages = numbered(12)

    result = await MessageWindowingService().compress_messages(messages, 4, llm)

    assert [m.content for m in result] == [
        "Previous conversation summary: summary one",
        "message 4",
        "message 5",
        "message 6",
        "message 7",
        "message 8",
        "message 9",
        "message 10",
        "message 11",
    ]


@pytest.mark.asyncio
async def test_window_chunk_mentions_tool_calls():
    from agent_builder.llm import ToolCall

    llm = MagicMock()
    llm.generate = AsyncMock(return_value=LLMResponse(content="used echo"))
    messages = [
        LLMMessage(role="user", content="say hi"),
        LLMMessage(role="assistant", content="", tool_calls=[ToolCall("c1", "echo", {"text": "hi"})]),
        LLMMessage(role="tool", content="hi", tool_call_id="c1"),
    ]

    await MessageWindowingService().compress_messages(messages, 2, llm)

    prompt = llm.generate.call_args.kwargs["messages"][0].content
    assert "[called tools: echo({'text': 'hi'})]" in prompt


def test_memory_read_missing(tmp_path):
    store = StructuredMemoryStore(str(tmp_path))
    assert store.read("agent-1") is None
    assert store.memory_path("agent-1") == tmp_path / "agent-1" / "memory.md"


def test_memory_write_and_copy(tmp_path):
    store = StructuredMemoryStore(str(tmp_path))
    store.write("agent-1", "# Conversation Memory")

    assert store.read("agent-1") == "# Conversation Memory"
    assert store.copy("agent-1", "agent-2") is True
    assert store.read("agent-2") == "# Conversation Memory"
    assert store.copy("missing", "agent-3") is False


@pytest.mark.asyncio
async def test_memory_update_parses_extraction(tmp_path):
    store = StructuredMemoryStore(str(tmp_path))
    llm = MagicMock()
    llm.generate = AsyncMock(return_value=LLMResponse(
        content="KEY CONVO DATA: Name is Sam\nPrefers Python\nCURRENT TOPIC: Packaging"
    ))
    messages = numbered(14) + [LLMMessage(role="tool", content="tool output", tool_call_id="c1")]

    await store.update("agent-1", "run-1", messages, llm)

    memory = store.read("agent-1")
    assert memory.startswith("# Conversation Memory\n\n## KEY CONVO DATA\nName is Sam\nPrefers Python\n")
    assert "## CURRENT TOPIC\nPackaging" in memory
    assert "Run ID: run-1" in memory

    sent = llm.generate.call_args.kwargs["messages"]
    # Last ten messages plus the extraction request
    assert len(sent) == 11
    assert all(m.role != "tool" for m in sent)
    assert llm.generate.call_args.kwargs["settings"].max_tokens == 1000


@pytest.mark.asyncio
async def test_memory_update_defaults_when_unparsed(tmp_path):
    store = StructuredMemoryStore(str(tmp_path))
    llm = MagicMock()
    llm.generate = AsyncMock(return_value=LLMResponse(content="I could not find anything."))

    await store.update("agent-1", "run-1", numbered(2), llm)

    memory = store.read("agent-1")
    assert "No key data extracted yet." in memory
    assert "No specific topic identified." in memory


@pytest.mark.asyncio
async def test_memory_update_swallows_errors(tmp_path):
    store = StructuredMemoryStore(str(tmp_path))
    store.write("agent-1", "old")
    llm = MagicMock()
    llm.generate = AsyncMock(side_effect=ModelError("down", "ollama"))

    await store.update("agent-1", "run-1", numbered(2), llm)

    assert store.read("agent-1") == "old"
