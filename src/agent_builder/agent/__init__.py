"""
Agent module - the execution engine.

Includes:
- AgentExecutor: ReAct loop over a model adapter and the tool registry
- StreamSessionManager: Event channels for streaming runs
- build_conversation_history: Replay of persisted turns
- AgentValidator: Model and tool checks for agent configurations
- Agent version strings
"""

from .core import AgentExecutor, ExecutionOptions
from .history import TOOL_RESULTS_MARKER, build_conversation_history
from .session import SSE_DONE, QueueSink, StreamSessionManager, StreamSink, format_sse
from .validation import AgentValidator
from .versioning import (
    AgentVersion,
    generate_agent_version,
    generate_memory_hash,
    parse_agent_version,
)

__all__ = [
    "AgentExecutor",
    "ExecutionOptions",
    "TOOL_RESULTS_MARKER",
    "build_conversation_history",
    "SSE_DONE",
    "QueueSink",
    "StreamSessionManager",
    "StreamSink",
    "format_sse",
    "AgentValidator",
    "AgentVersion",
    "generate_agent_version",
    "generate_memory_hash",
    "parse_agent_version",
]
