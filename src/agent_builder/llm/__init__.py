"""
LLM module for multi-provider model support.

Providers:
- Ollama (local HTTP API)
- OpenAI (native SDK)
- Anthropic Claude (native SDK)
- OpenRouter (via OpenAI-compatible endpoint)
"""

from .base import (
    BaseLLM,
    GenerationSettings,
    HealthStatus,
    LLMMessage,
    LLMResponse,
    ModelCapabilities,
    StreamEvent,
    TokenUsage,
    ToolCall,
    ToolDefinition,
)
from .accumulator import ToolCallAccumulator, parse_arguments
from .anthropic import AnthropicLLM
from .ollama import OllamaLLM
from .openai import OpenAILLM
from .factory import create_llm, split_model_id
from .registry import ModelInfo, ModelRegistry

__all__ = [
    "BaseLLM",
    "GenerationSettings",
    "HealthStatus",
    "LLMMessage",
    "LLMResponse",
    "ModelCapabilities",
    "StreamEvent",
    "TokenUsage",
    "ToolCall",
    "ToolDefinition",
    "ToolCallAccumulator",
    "parse_arguments",
    "AnthropicLLM",
    "OllamaLLM",
    "OpenAILLM",
    "create_llm",
    "split_model_id",
    "ModelInfo",
    "ModelRegistry",
]
