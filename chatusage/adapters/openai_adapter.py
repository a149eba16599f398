"""
chatusage - OpenAI Completion Client

Calls the OpenAI Chat Completions API for auxiliary completions.
"""

from typing import Any, Dict

import httpx

from .base import AdapterConfig, CompletionClient
from ..core.errors import handle_provider_error


class OpenAICompletionClient(CompletionClient):
    """Completion client for GPT models."""

    provider = "openai"
    DEFAULT_BASE_URL = "https://api.openai.com/v1"

    def __init__(self, config: AdapterConfig, model: str):
        super().__init__(config, model)
        self.client = httpx.AsyncClient(
            base_url=config.base_url or self.DEFAULT_BASE_URL,
            headers={
                "Authorization": f"Bearer {config.api_key}",
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
            response = await self.client.post("/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except Exception as e:
            raise handle_provider_error(e, self.provider)

        return self._extract_text(data)

    def _extract_text(self, data: Dict[str, Any]) -> str:
        choices = data.get("choices") or []
        if not choices:
            return ""
        return choices[0].get("message", {}).get("content") or ""

    async def close(self) -> None:
        await self.client.aclose()
