"""
Configuration management for Agent Builder

Uses pydantic-settings for environment variable parsing and validation.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

Provider = Literal["ollama", "openai", "anthropic", "openrouter"]


class LLMConfig(BaseSettings):
    """Configuration for a single model adapter."""

    model_config = SettingsConfigDict(extra="ignore")

    provider: Provider = "ollama"
    model: str = "llama3.2"
    api_key: str = ""
    base_url: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.7


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "Agent-Builder"
    debug: bool = False
    log_level: str = "INFO"

    # Storage
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/agent_builder.db",
        description="Database connection URL",
    )
    workspace_dir: str = Field(
        default="~/.agent-builder/workspace",
        description="Root directory of the file tool",
    )
    memory_dir: str = Field(
        default="~/.agent-builder/memory",
        description="Per-agent structured memory files, kept out of the file tool's reach",
    )
    sandbox_dir: str = Field(
        default="~/.agent-builder/sandbox",
        description="Working directory for the shell tool",
    )

    # Model providers
    openai_api_key: str = Field(default="", description="OpenAI API key")
    anthropic_api_key: str = Field(default="", description="Anthropic API key")
    openrouter_api_key: str = Field(default="", description="OpenRouter API key")
    ollama_base_url: str = Field(default="http://localhost:11434", description="Ollama server URL")
    openrouter_base_url: str = "https://openrouter.ai/api/v1"

    # Execution defaults
    default_model: str = "ollama:llama3.2"
    static_models: list[str] = Field(
        default=["openai:gpt-4o", "openai:gpt-4o-mini", "anthropic:claude-sonnet-4-20250514"],
        description="Catalog entries for providers without a listing endpoint; kept when their key is set",
    )
    registry_timeout_seconds: float = 10.0
    max_tokens: int = 4096
    temperature: float = 0.7
    max_turns: int = Field(default=10, ge=1, description="Default ReAct turn limit per request")
    default_window_size: int | None = Field(
        default=None, description="Message window applied when an agent sets none"
    )

    # Memory
    summary_temperature: float = 0.3
    summary_max_tokens: int = 500
    memory_extraction_max_tokens: int = 1000

    # Tools
    enable_shell: bool = True
    enable_file_operations: bool = True
    enable_http: bool = True
    shell_timeout_seconds: int = 10
    http_timeout_seconds: float = 30.0

    @field_validator("default_model")
    @classmethod
    def validate_default_model(cls, v: str) -> str:
        if ":" not in v:
            raise ValueError("default_model must look like 'provider:model'")
        return v

    def get_llm_config(self, provider: str, model: str) -> LLMConfig:
        """Get adapter configuration for a provider and bare model name."""
        api_key_map = {
            "ollama": "",
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "openrouter": self.openrouter_api_key,
        }

        base_url_map = {
            "ollama": self.ollama_base_url,
            "openai": None,
            "anthropic": None,
            "openrouter": self.openrouter_base_url,
        }

        return LLMConfig(
            provider=provider,  # type: ignore
            model=model,
            api_key=api_key_map.get(provider, ""),
            base_url=base_url_map.get(provider),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
