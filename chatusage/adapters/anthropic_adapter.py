"""
chatusage - Anthropic Completion Client

Calls the Anthropic Messages API for auxiliary completions.
"""

from typing import Any, Dict

import httpx

from .base import AdapterConfig, CompletionClient
from ..core.errors import handle_provider_error


class AnthropicCompletionClient(CompletionClient):
    """Completion client for Claude models."""

    provider = "anthropic"
    DEFAULT_BASE_URL = "https://api.anthropic.com"
    API_VERSION = "2023-06-01"

    MODEL_ALIASES = {
        "claude-3-5-haiku": "claude-3-5-haiku-20241022",
        "claude-3.5-haiku": "claude-3-5-haiku-20241022",
        "claude-3-5-sonnet": "claude-3-5-sonnet-20241022",
        "claude-3-haiku": "claude-3-haiku-20240307",
    }

    def __init__(self, config: AdapterConfig, model: str):
        super().__init__(config, self.MODEL_ALIASES.get(model, model))
        self.client = httpx.AsyncClient(
            base_url=config.base_url or self.DEFAULT_BASE_URL,
            headers={
                "x-api-key": config.api_key,
                "anthropic-version": self.API_VERSION,
                "Content-Type": "application/json",
            },
            timeout=config.timeout
        )

    async def generate_text(
        self,
        prompt: str,
        max_tokens: int = 300,
        temperature: float = 0.2,
    ) -> str:
        payload = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }

        try:
            response = await self.client.post("/v1/messages", json=payload)
            response.raise_for_status()
            data = response.json()
        except Exception as e:
            raise handle_provider_error(e, self.provider)

        return self._extract_text(data)

    def _extract_text(self, data: Dict[str, Any]) -> str:
        return "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        )

    async def close(self) -> None:
        await self.client.aclose()
