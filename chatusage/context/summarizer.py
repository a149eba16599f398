"""
chatusage - Conversation Summarizer

Replaces older messages with one synthetic system message produced by a
cheap auxiliary model, keeping the most recent messages verbatim.

The decision to summarize (policy) and the mechanism are separate:
- DisabledPolicy: never summarize (default)
- TokenThresholdPolicy: summarize when over budget and longer than the
  recent window

Any auxiliary-model failure degrades to returning the original messages.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from ..adapters.base import CompletionClient
from ..config import (
    SummarizationMode,
    get_default_keep_recent,
    get_default_max_tokens,
    get_default_summary_model,
)
from ..core.errors import SummarizationError
from ..core.models import ChatMessage, Role
from ..observability.logging import get_logger
from .estimator import TokenEstimator, get_estimator


logger = get_logger(__name__)


SUMMARY_PROMPT = """Summarize this conversation concisely. Focus on:
- Key topics discussed
- The user's stated preferences, requirements or constraints
- Important answers or guidance provided
- Ongoing requests or decisions

Keep the summary under 200 words, stay neutral, and preserve the context needed to continue the conversation.

Conversation:
{transcript}"""


ROLE_LABELS = {
    Role.USER: "User",
    Role.ASSISTANT: "Assistant",
    Role.SYSTEM: "System",
    Role.TOOL: "Tool",
}


@dataclass
class SummarizerConfig:
    """Summarizer configuration."""
    max_tokens: int = field(default_factory=get_default_max_tokens)
    keep_recent_messages: int = field(default_factory=get_default_keep_recent)
    summary_model: str = field(default_factory=get_default_summary_model)
    max_summary_tokens: int = 300
    temperature: float = 0.2

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_tokens": self.max_tokens,
            "keep_recent_messages": self.keep_recent_messages,
            "summary_model": self.summary_model,
            "max_summary_tokens": self.max_summary_tokens,
            "temperature": self.temperature,
        }


@dataclass
class ConversationSummary:
    """Metadata about one summarization pass."""
    summary: str = ""
    original_message_count: int = 0
    tokens_saved: int = 0
    summarized_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def applied(self) -> bool:
        return self.original_message_count > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "original_message_count": self.original_message_count,
            "tokens_saved": self.tokens_saved,
            "summarized_at": self.summarized_at.isoformat(),
        }


@dataclass
class SummarizationResult:
    """Summarized messages plus metadata."""
    messages: List[ChatMessage]
    summary: ConversationSummary
    summarization_time_ms: int = 0


# ============================================================
# Policies
# ============================================================

class SummarizationPolicy(ABC):
    """Decides whether a conversation should be summarized."""

    name: str = ""

    @abstractmethod
    def should_summarize(
        self,
        messages: Sequence[ChatMessage],
        config: SummarizerConfig,
        estimator: TokenEstimator,
    ) -> bool:
        pass


class DisabledPolicy(SummarizationPolicy):
    """Never summarize."""

    name = SummarizationMode.DISABLED.value

    def should_summarize(self, messages, config, estimator) -> bool:
        return False


class TokenThresholdPolicy(SummarizationPolicy):
    """Summarize when over the token budget and longer than the recent window."""

    name = SummarizationMode.TOKEN_THRESHOLD.value

    def should_summarize(self, messages, config, estimator) -> bool:
        return (
            estimator.estimate_tokens(messages) > config.max_tokens
            and len(messages) > config.keep_recent_messages
        )


def policy_for_mode(mode: SummarizationMode) -> SummarizationPolicy:
    """Build the policy selected by configuration."""
    if mode == SummarizationMode.TOKEN_THRESHOLD:
        return TokenThresholdPolicy()
    return DisabledPolicy()


# ============================================================
# Summarizer
# ============================================================

class ConversationSummarizer:
    """
    LLM-based compaction of old messages.

    Usage:
        summarizer = ConversationSummarizer(
            client=create_completion_client(model, keys),
            policy=TokenThresholdPolicy(),
        )
        result = await summarizer.summarize_conversation(messages)
    """

    def __init__(
        self,
        client: Optional[CompletionClient] = None,
        policy: Optional[SummarizationPolicy] = None,
        config: Optional[SummarizerConfig] = None,
        estimator: Optional[TokenEstimator] = None,
    ):
        self.client = client
        self.policy = policy or DisabledPolicy()
        self.config = config or SummarizerConfig()
        self.estimator = estimator or get_estimator()

    def should_summarize(self, messages: Sequence[ChatMessage]) -> bool:
        return self.policy.should_summarize(messages, self.config, self.estimator)

    def split(self, messages: Sequence[ChatMessage]) -> tuple:
        """Split into (older, recent) at len - keep_recent_messages."""
        keep = self.config.keep_recent_messages
        cut = max(0, len(messages) - keep)
        return list(messages[:cut]), list(messages[cut:])

    def render_transcript(self, messages: Sequence[ChatMessage]) -> str:
        """Role-labeled transcript of the messages being summarized."""
        lines = []
        for message in messages:
            label = ROLE_LABELS.get(message.role, "Assistant")
            lines.append(f"{label}: {message.text()}")
        return "\n\n".join(lines)

    def build_prompt(self, messages: Sequence[ChatMessage]) -> str:
        return SUMMARY_PROMPT.format(transcript=self.render_transcript(messages))

    async def summarize_conversation(
        self,
        messages: Sequence[ChatMessage],
    ) -> SummarizationResult:
        """
        Summarize older messages when the policy allows it.

        Never raises: on any failure the original messages are returned
        with zero-savings metadata.
        """
        passthrough = SummarizationResult(
            messages=list(messages),
            summary=ConversationSummary(),
        )

        if not self.should_summarize(messages):
            return passthrough

        older, recent = self.split(messages)
        if not older:
            return passthrough

        start = time.perf_counter()
        try:
            summary_text = await self._generate(older)
        except Exception as e:
            logger.warning(
                "Conversation summarization failed, keeping original messages",
                error=str(e),
                error_class=type(e).__name__,
                message_count=len(messages),
            )
            return passthrough

        summary_message = ChatMessage(
            role=Role.SYSTEM,
            content=f"[Conversation Summary: {summary_text}]",
            id=f"summary-{int(time.time() * 1000)}",
        )

        older_tokens = self.estimator.estimate_tokens(older)
        summary_tokens = self.estimator.estimate_text(summary_text)

        return SummarizationResult(
            messages=[summary_message] + recent,
            summary=ConversationSummary(
                summary=summary_text,
                original_message_count=len(older),
                tokens_saved=max(0, older_tokens - summary_tokens),
            ),
            summarization_time_ms=int((time.perf_counter() - start) * 1000),
        )

    async def _generate(self, older: Sequence[ChatMessage]) -> str:
        if self.client is None:
            raise SummarizationError("No completion client configured")

        text = await self.client.generate_text(
            self.build_prompt(older),
            max_tokens=self.config.max_summary_tokens,
            temperature=self.config.temperature,
        )

        if not isinstance(text, str) or not text.strip():
            raise SummarizationError(
                "Summary model returned empty output",
                provider=self.client.provider,
            )
        return text.strip()

    def get_config(self) -> Dict[str, Any]:
        result = self.config.to_dict()
        result["policy"] = self.policy.name
        return result

    def update_config(self, **changes) -> None:
        """
        Update configuration fields.

        Raises:
            ValueError: On an unknown field
        """
        for key, value in changes.items():
            if not hasattr(self.config, key):
                raise ValueError(f"Unknown summarizer setting: {key}")
            setattr(self.config, key, value)
