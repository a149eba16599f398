"""
chatusage - Conversation Limiter

Enforces a hard token budget on the outgoing message list with a
recency-biased sliding window.

Algorithm:
1. At or under budget: return the input unchanged
2. Seed the kept set with system messages if they fit on their own
3. Walk the remaining messages newest to oldest, keeping whole messages
   while the running total stays within budget
4. Never return an empty list for non-empty input; the floor is a single
   message, reported as over budget when even that does not fit
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..config import get_default_max_tokens
from ..core.models import ChatMessage
from .estimator import TokenEstimator, get_estimator


@dataclass
class LimiterConfig:
    """Limiter configuration."""
    max_tokens: int = field(default_factory=get_default_max_tokens)
    preserve_system_messages: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_tokens": self.max_tokens,
            "preserve_system_messages": self.preserve_system_messages,
        }


@dataclass
class LimitationResult:
    """Outcome of one limiting pass."""
    messages: List[ChatMessage]
    original_count: int
    limited_count: int
    original_tokens: int
    final_tokens: int
    within_budget: bool = True

    @property
    def messages_removed(self) -> int:
        return self.original_count - self.limited_count

    @property
    def tokens_saved(self) -> int:
        return max(0, self.original_tokens - self.final_tokens)

    @property
    def was_limited(self) -> bool:
        return self.messages_removed > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_message_count": self.original_count,
            "limited_message_count": self.limited_count,
            "messages_removed": self.messages_removed,
            "tokens_saved": self.tokens_saved,
            "estimated_tokens_before_limiting": self.original_tokens,
            "estimated_tokens_after_limiting": self.final_tokens,
            "within_budget": self.within_budget,
        }


class ConversationLimiter:
    """
    Sliding-window token budget for a conversation.

    Usage:
        limiter = ConversationLimiter(max_tokens=8000)
        if limiter.should_limit(messages):
            result = limiter.limit_conversation(messages)
            messages = result.messages
    """

    def __init__(
        self,
        max_tokens: Optional[int] = None,
        preserve_system_messages: bool = True,
        estimator: Optional[TokenEstimator] = None,
    ):
        self.config = LimiterConfig(preserve_system_messages=preserve_system_messages)
        if max_tokens is not None:
            self.config.max_tokens = max_tokens
        self.estimator = estimator or get_estimator()

    @property
    def max_tokens(self) -> int:
        return self.config.max_tokens

    def estimate_tokens(self, messages: Sequence[ChatMessage]) -> int:
        return self.estimator.estimate_tokens(messages)

    def should_limit(self, messages: Sequence[ChatMessage]) -> bool:
        """True when the estimated size exceeds the budget."""
        return self.estimate_tokens(messages) > self.config.max_tokens

    def limit_conversation(self, messages: Sequence[ChatMessage]) -> LimitationResult:
        """
        Trim the conversation to the token budget.

        Safe to call unconditionally: re-derives the should_limit decision
        and is a no-op when the input already fits.
        """
        max_tokens = self.config.max_tokens
        original_tokens = self.estimate_tokens(messages)

        if original_tokens <= max_tokens:
            return LimitationResult(
                messages=list(messages),
                original_count=len(messages),
                limited_count=len(messages),
                original_tokens=original_tokens,
                final_tokens=original_tokens,
            )

        if self.config.preserve_system_messages:
            system_messages = [m for m in messages if m.is_system]
            candidates = [m for m in messages if not m.is_system]
        else:
            system_messages = []
            candidates = list(messages)

        kept_system: List[ChatMessage] = []
        running = 0

        if system_messages:
            system_tokens = self.estimate_tokens(system_messages)
            if system_tokens < max_tokens:
                kept_system = system_messages
                running = system_tokens

        kept_recent: List[ChatMessage] = []
        for message in reversed(candidates):
            message_tokens = self.estimator.estimate_message(message)
            if running + message_tokens > max_tokens:
                break
            kept_recent.append(message)
            running += message_tokens
        kept_recent.reverse()

        kept = kept_system + kept_recent

        if not kept and messages:
            # Collapse to the most recent system message, else the newest message
            floor = system_messages[-1] if system_messages else candidates[-1]
            kept = [floor]

        final_tokens = self.estimate_tokens(kept)

        return LimitationResult(
            messages=kept,
            original_count=len(messages),
            limited_count=len(kept),
            original_tokens=original_tokens,
            final_tokens=final_tokens,
            within_budget=final_tokens <= max_tokens,
        )

    def get_config(self) -> Dict[str, Any]:
        """Copy of the current configuration."""
        return self.config.to_dict()

    def update_config(self, **changes) -> None:
        """
        Update configuration fields.

        Raises:
            ValueError: On an unknown field or a non-positive budget
        """
        for key, value in changes.items():
            if not hasattr(self.config, key):
                raise ValueError(f"Unknown limiter setting: {key}")
            if key == "max_tokens" and value <= 0:
                raise ValueError("max_tokens must be positive")
            setattr(self.config, key, value)
