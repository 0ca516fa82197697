"""
Reassembly of tool calls whose arguments arrive as streamed JSON fragments.
"""

import json
from dataclasses import dataclass, field
from typing import Any

import structlog

from .base import ToolCall

logger = structlog.get_logger()


def parse_arguments(raw: str | dict[str, Any] | None, tool_name: str = "") -> dict[str, Any]:
    """Parse a tool call's argument payload.

    Unparsable or non-object JSON yields an empty dict and a warning; the
    tool's own parameter validation then reports what is missing.
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Unparsable tool arguments", tool=tool_name, error=str(e))
        return {}

    if not isinstance(parsed, dict):
        logger.warning("Tool arguments are not an object", tool=tool_name)
        return {}
    return parsed


@dataclass
class _PendingCall:
    id: str = ""
    name: str = ""
    fragments: list[str] = field(default_factory=list)


class ToolCallAccumulator:
    """Collects tool call fragments keyed by their stream index."""

    def __init__(self) -> None:
        self._calls: dict[int, _PendingCall] = {}

    def start(self, index: int, call_id: str | None = None, name: str | None = None) -> None:
        pending = self._calls.setdefault(index, _PendingCall())
        if call_id:
            pending.id = call_id
        if name:
            pending.name = name

    def add_arguments(self, index: int, fragment: str | None) -> None:
        if not fragment:
            return
        self._calls.setdefault(index, _PendingCall()).fragments.append(fragment)

    @property
    def has_pending(self) -> bool:
        return bool(self._calls)

    def finish(self) -> list[ToolCall]:
        """Emit completed calls in index order and reset."""
        calls = []
        for index in sorted(self._calls):
            pending = self._calls[index]
            calls.append(ToolCall(
                id=pending.id or f"call_{index}",
                name=pending.name,
                arguments=parse_arguments("".join(pending.fragments), pending.name),
            ))
        self._calls.clear()
        return calls
