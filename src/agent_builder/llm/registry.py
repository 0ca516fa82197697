"""
Model catalog: what models exist, their capabilities, and recent usage.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from ..config import Settings
from .base import HealthStatus
from .factory import create_llm, split_model_id

logger = structlog.get_logger()

_STATIC_CONTEXT_WINDOWS = {
    "openai": 128000,
    "anthropic": 200000,
}


@dataclass
class ModelInfo:
    """Catalog entry for one model."""

    id: str
    provider: str
    name: str
    display_name: str = ""
    context_window: int = 8192
    supports_tools: bool = True
    supports_streaming: bool = True
    input_cost_per_million: float | None = None
    output_cost_per_million: float | None = None
    size: int | None = None
    tokens_per_second: float | None = None
    last_used: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ModelRegistry:
    """Caches the model catalog of every configured provider.

    Lookups that miss the cache trigger a full refresh. Entries added with
    ``register`` survive refreshes.
    """

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self._transport = transport
        self._models: dict[str, ModelInfo] = {}
        self._pinned: dict[str, ModelInfo] = {}
        self._lock = asyncio.Lock()
        self._refreshed = False

    def register(self, info: ModelInfo) -> None:
        """Pin a catalog entry."""
        self._pinned[info.id] = info
        self._models[info.id] = info

    async def list_models(self) -> list[ModelInfo]:
        if not self._refreshed:
            await self.refresh()
        return sorted(self._models.values(), key=lambda m: m.id)

    async def list_by_provider(self, provider: str) -> list[ModelInfo]:
        return [m for m in await self.list_models() if m.provider == provider]

    async def get_model_info(self, model_id: str) -> ModelInfo | None:
        info = self._lookup(model_id)
        if info is None:
            logger.debug("Model not cached, refreshing registry", model_id=model_id)
            await self.refresh()
            info = self._lookup(model_id)
        return info

    async def refresh(self) -> None:
        async with self._lock:
            models: dict[str, ModelInfo] = {}

            for info in self._static_models():
                models[info.id] = info

            for info in await self._fetch_ollama_models():
                models[info.id] = info

            if self.settings.openrouter_api_key:
                for info in await self._fetch_openrouter_models():
                    models[info.id] = info

            models.update(self._pinned)
            self._models = models
            self._refreshed = True
            logger.info("Model registry refreshed", count=len(models))

    def record_usage(self, model_id: str, tokens_per_second: float | None) -> None:
        info = self._lookup(model_id)
        if info is None:
            return
        info.last_used = datetime.now(timezone.utc)
        if tokens_per_second is not None:
            info.tokens_per_second = tokens_per_second

    async def health_check(self, model_id: str) -> HealthStatus:
        info = await self.get_model_info(model_id)
        if info is None:
            return HealthStatus(available=False, error=f"Model {model_id} not found")
        try:
            llm = create_llm(model_id, self.settings, info)
        except Exception as e:
            return HealthStatus(available=False, error=str(e))
        return await llm.health_check()

    def _lookup(self, model_id: str) -> ModelInfo | None:
        info = self._models.get(model_id)
        if info is not None:
            return info

        # Ollama resolves an untagged name to its ":latest" tag
        provider, _, name = model_id.partition(":")
        if provider != "ollama" or not name:
            return None
        if ":" not in name:
            return self._models.get(f"{model_id}:latest")
        if name.endswith(":latest"):
            return self._models.get(model_id[: -len(":latest")])
        return None

    def _client(self, base_url: str, headers: dict[str, str] | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=self.settings.registry_timeout_seconds,
            transport=self._transport,
        )

    def _static_models(self) -> list[ModelInfo]:
        keys = {
            "openai": self.settings.openai_api_key,
            "anthropic": self.settings.anthropic_api_key,
        }
        models = []
        for model_id in self.settings.static_models:
            provider, name = split_model_id(model_id)
            if not keys.get(provider):
                continue
            models.append(ModelInfo(
                id=model_id,
                provider=provider,
                name=name,
                display_name=name,
                context_window=_STATIC_CONTEXT_WINDOWS.get(provider, 8192),
            ))
        return models

    async def _fetch_ollama_models(self) -> list[ModelInfo]:
        try:
            async with self._client(self.settings.ollama_base_url) as client:
                response = await client.get("/api/tags")
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Failed to fetch Ollama models", error=str(e))
            return []

        models = []
        for raw in response.json().get("models", []):
            name = raw["name"]
            models.append(ModelInfo(
                id=f"ollama:{name}",
                provider="ollama",
                name=name,
                display_name=name,
                size=raw.get("size"),
                metadata=raw,
            ))
        return models

    async def _fetch_openrouter_models(self) -> list[ModelInfo]:
        headers = {"Authorization": f"Bearer {self.settings.openrouter_api_key}"}
        try:
            async with self._client(self.settings.openrouter_base_url, headers) as client:
                response = await client.get("/models")
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Failed to fetch OpenRouter models", error=str(e))
            return []

        models = []
        for raw in response.json().get("data", []):
            pricing = raw.get("pricing") or {}
            models.append(ModelInfo(
                id=f"openrouter:{raw['id']}",
                provider="openrouter",
                name=raw["id"],
                display_name=raw.get("name") or raw["id"],
                context_window=raw.get("context_length") or 8192,
                input_cost_per_million=_per_million(pricing.get("prompt")),
                output_cost_per_million=_per_million(pricing.get("completion")),
                metadata=raw,
            ))
        return models


def _per_million(per_token: Any) -> float | None:
    """OpenRouter quotes USD per token as a decimal string."""
    if per_token is None:
        return None
    try:
        return float(per_token) * 1_000_000
    except (TypeError, ValueError):
        return None
