"""
Plain records returned by the stores, detached from ORM sessions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..llm.base import GenerationSettings, TokenUsage
from ..models import RunStatus, TurnState, utcnow
from ..tools.base import ToolResult


@dataclass
class AgentConfig:
    """An agent as the executor sees it."""

    id: str
    name: str
    system_prompt: str
    default_model: str
    allowed_tools: list[str] = field(default_factory=list)
    description: str = ""
    prompt_version: int = 1
    tags: list[str] = field(default_factory=list)
    settings: GenerationSettings = field(default_factory=GenerationSettings)
    message_window_size: int | None = None
    use_structured_memory: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class PromptVersionRecord:
    agent_id: str
    version: int
    system_prompt: str
    commit_message: str | None = None
    created_at: datetime | None = None


@dataclass
class ToolExecutionRecord:
    """One tool call and its result. ``id`` is the model's tool call id."""

    id: str
    tool_name: str
    parameters: dict[str, Any]
    result: ToolResult
    timestamp: datetime = field(default_factory=utcnow)
    turn_id: str | None = None


@dataclass
class TurnRecord:
    """One model call and the tool calls it made."""

    turn_number: int
    user_message: str
    assistant_message: str
    tool_executions: list[ToolExecutionRecord] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    started_at: datetime | None = None
    duration_ms: int | None = None
    timestamp: datetime = field(default_factory=utcnow)
    state: TurnState = TurnState.FINALIZED
    id: str | None = None


@dataclass
class RunRecord:
    id: str
    agent_id: str
    model_used: str
    status: RunStatus
    turns: list[TurnRecord] = field(default_factory=list)
    total_usage: TokenUsage = field(default_factory=TokenUsage)
    total_tool_calls: int = 0
    model_settings: dict[str, Any] | None = None
    prompt_version: int = 1
    agent_version: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None
    total_duration_ms: int | None = None
    error: str | None = None

    @property
    def finalized_turns(self) -> list[TurnRecord]:
        return [t for t in self.turns if t.state == TurnState.FINALIZED]

    @property
    def last_turn_number(self) -> int:
        return max((t.turn_number for t in self.finalized_turns), default=0)


@dataclass
class RunQuery:
    agent_id: str | None = None
    status: RunStatus | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    limit: int = 50
    offset: int = 0


@dataclass
class ToolStats:
    tool_name: str
    total_executions: int
    successful_executions: int
    avg_execution_time_ms: float

    @property
    def success_rate(self) -> float:
        if not self.total_executions:
            return 0.0
        return self.successful_executions / self.total_executions


@dataclass
class PricingInfo:
    model_id: str
    provider: str
    input_price_per_1k: float
    output_price_per_1k: float
    last_updated: datetime | None = None


@dataclass
class RunCost:
    run_id: str
    model_id: str
    provider: str
    input_tokens: int
    output_tokens: int
    input_cost: float
    output_cost: float

    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost
