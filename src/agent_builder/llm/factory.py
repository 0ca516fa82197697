"""
LLM factory for creating adapters from ``provider:model`` identifiers.

Supports: Ollama (local), OpenAI, Anthropic Claude, OpenRouter.
"""

from typing import TYPE_CHECKING, get_args

from ..config import LLMConfig, Provider, Settings
from ..errors import ModelError, ValidationError
from .anthropic import AnthropicLLM
from .base import BaseLLM
from .ollama import OllamaLLM
from .openai import OpenAILLM

if TYPE_CHECKING:
    from .registry import ModelInfo


def split_model_id(model_id: str) -> tuple[str, str]:
    """Split ``provider:model`` on the first colon.

    OpenRouter and Ollama model names may themselves contain colons
    (``openrouter:meta-llama/llama-3:free``, ``ollama:llama3.2:1b``).
    """
    provider, sep, model = model_id.partition(":")
    if not sep or not provider or not model:
        raise ValidationError(f"Invalid model id '{model_id}', expected 'provider:model'", "model")
    return provider, model


def create_llm(
    model_id: str,
    settings: Settings | None = None,
    model_info: "ModelInfo | None" = None,
) -> BaseLLM:
    """Create an adapter for a model id.

    Provider routing:
    - ollama -> OllamaLLM (native HTTP API)
    - openai -> OpenAILLM (native OpenAI SDK)
    - anthropic -> AnthropicLLM (native Anthropic SDK)
    - openrouter -> OpenAILLM (OpenAI-compatible endpoint)
    """
    if settings is None:
        from ..config import get_settings
        settings = get_settings()

    provider, model = split_model_id(model_id)
    if provider not in get_args(Provider):
        raise ModelError(f"Unknown provider: {provider}", provider)
    config = settings.get_llm_config(provider, model)
    return create_llm_from_config(config, model_info)


def create_llm_from_config(config: LLMConfig, model_info: "ModelInfo | None" = None) -> BaseLLM:
    provider = config.provider

    if provider == "ollama":
        return OllamaLLM(
            model=config.model,
            base_url=config.base_url or "http://localhost:11434",
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        )

    if not config.api_key:
        raise ModelError(f"No API key configured for {provider}", provider)

    if provider == "anthropic":
        return AnthropicLLM(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        )
    elif provider == "openai":
        return OpenAILLM(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        )
    elif provider == "openrouter":
        return OpenAILLM(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url or "https://openrouter.ai/api/v1",
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            provider="openrouter",
            context_window=model_info.context_window if model_info else 128000,
        )
    else:
        raise ModelError(f"Unknown provider: {provider}", provider)
