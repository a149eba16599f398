"""
chatusage - Completion Client Base

Abstract interface for the auxiliary model used by conversation
summarization. Each provider implements a single text completion call.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class AdapterConfig:
    """Configuration for a completion client."""
    api_key: str
    base_url: Optional[str] = None
    timeout: int = 30


class CompletionClient(ABC):
    """
    Abstract auxiliary-model caller.

    Implementations receive a prompt and a bounded output length and
    return plain text. Any failure is raised as an exception; callers
    decide whether to degrade.
    """

    provider: str = ""

    def __init__(self, config: AdapterConfig, model: str):
        self.config = config
        self.model = model

    @abstractmethod
    async def generate_text(
        self,
        prompt: str,
        max_tokens: int = 300,
        temperature: float = 0.2,
    ) -> str:
        """
        Generate a completion for a single user prompt.

        Args:
            prompt: Full prompt text
            max_tokens: Upper bound on generated tokens
            temperature: Sampling temperature

        Returns:
            Generated text
        """
        pass

    async def close(self) -> None:
        """Release any underlying connections."""
        return None
