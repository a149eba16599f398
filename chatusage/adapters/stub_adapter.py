"""
chatusage - Stub Completion Client

Deterministic in-process client used for tests and local runs.
No network calls, no provider keys required.
"""

from typing import List, Optional

from .base import AdapterConfig, CompletionClient


class StubCompletionClient(CompletionClient):
    """Returns a fixed reply, or raises a configured error."""

    provider = "stub"

    def __init__(
        self,
        response: str = "stub: deterministic summary",
        error: Optional[Exception] = None,
        model: str = "stub-summary",
    ):
        super().__init__(AdapterConfig(api_key="stub"), model)
        self.response = response
        self.error = error
        self.prompts: List[str] = []

    async def generate_text(
        self,
        prompt: str,
        max_tokens: int = 300,
        temperature: float = 0.2,
    ) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.response
