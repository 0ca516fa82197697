"""
Rebuild a model conversation from a persisted run.
"""

from ..llm.base import LLMMessage, ToolCall
from ..storage.records import RunRecord, ToolExecutionRecord

# User message recorded on turns that only carry tool results back to the model
TOOL_RESULTS_MARKER = "[Tool results]"


def tool_message_content(execution: ToolExecutionRecord) -> str:
    result = execution.result
    return result.output if result.success else f"Error: {result.error}"


def build_conversation_history(run: RunRecord) -> list[LLMMessage]:
    """Replay finalized turns as user, assistant and tool messages.

    Provisional placeholders are skipped, as are the marker user messages of
    tool-result turns (their tool messages already precede them).
    """
    messages: list[LLMMessage] = []

    for turn in run.finalized_turns:
        if turn.user_message and turn.user_message != TOOL_RESULTS_MARKER:
            messages.append(LLMMessage(role="user", content=turn.user_message))

        calls = [
            ToolCall(id=te.id, name=te.tool_name, arguments=te.parameters)
            for te in turn.tool_executions
        ]
        if turn.assistant_message or calls:
            messages.append(LLMMessage(
                role="assistant",
                content=turn.assistant_message or "",
                tool_calls=calls or None,
            ))

        for execution in turn.tool_executions:
            messages.append(LLMMessage(
                role="tool",
                content=tool_message_content(execution),
                tool_call_id=execution.id,
                name=execution.tool_name,
            ))

    return messages
