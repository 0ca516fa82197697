"""
Model pricing lookups against provider catalogs.
"""

from typing import Protocol

import httpx
import structlog

logger = structlog.get_logger()


class PricingSource(Protocol):
    async def fetch(self, model_id: str, provider: str) -> tuple[float, float] | None:
        """Return (input, output) USD per 1K tokens, or None if unknown."""
        ...


class OpenRouterPricing:
    """Reads per-token prices from the OpenRouter model catalog."""

    def __init__(
        self,
        api_key: str = "",
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self._transport = transport

    async def fetch(self, model_id: str, provider: str) -> tuple[float, float] | None:
        if provider != "openrouter":
            return None

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.get("/models")
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Failed to fetch OpenRouter pricing", model_id=model_id, error=str(e))
            return None

        for model in response.json().get("data", []):
            if model.get("id") != model_id:
                continue
            pricing = model.get("pricing") or {}
            try:
                return (
                    float(pricing.get("prompt", 0)) * 1000,
                    float(pricing.get("completion", 0)) * 1000,
                )
            except (TypeError, ValueError):
                logger.warning("Malformed OpenRouter pricing", model_id=model_id, pricing=pricing)
                return None

        logger.info("Model not in OpenRouter catalog", model_id=model_id)
        return None
