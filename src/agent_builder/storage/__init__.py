"""
Persistence: agent repository, trace store and pricing.
"""

from .agents import AgentRepository
from .pricing import OpenRouterPricing, PricingSource
from .records import (
    AgentConfig,
    PricingInfo,
    PromptVersionRecord,
    RunCost,
    RunQuery,
    RunRecord,
    ToolExecutionRecord,
    ToolStats,
    TurnRecord,
)
from .trace import TraceStore

__all__ = [
    "AgentRepository",
    "OpenRouterPricing",
    "PricingSource",
    "AgentConfig",
    "PricingInfo",
    "PromptVersionRecord",
    "RunCost",
    "RunQuery",
    "RunRecord",
    "ToolExecutionRecord",
    "ToolStats",
    "TurnRecord",
    "TraceStore",
]
