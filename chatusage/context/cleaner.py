"""
chatusage - Content Cleaner

Strips completed tool-call results from message history before the
conversation is sent to the model, and reports what was removed.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

from ..core.models import ChatMessage, ToolInvocationPart, messages_size, serialized_size
from .estimator import TokenEstimator, get_estimator


@dataclass
class RemovedToolResult:
    """Audit record for one dropped tool invocation."""
    message_index: int
    tool_name: str
    size: int

    def label(self) -> str:
        return f"msg{self.message_index}:{self.tool_name}({self.size}chars)"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_index": self.message_index,
            "tool_name": self.tool_name,
            "size": self.size,
        }


@dataclass
class CleaningResult:
    """Cleaned messages plus a before/after report."""
    messages: List[ChatMessage]
    original_count: int = 0
    cleaned_count: int = 0
    original_size: int = 0
    cleaned_size: int = 0
    removed_tool_results: int = 0
    removed_tool_results_size: int = 0
    removed_items: List[RemovedToolResult] = field(default_factory=list)
    estimated_tokens_saved: int = 0

    @property
    def size_saved(self) -> int:
        return self.original_size - self.cleaned_size

    def to_dict(self) -> Dict[str, Any]:
        """Summary suitable for a usage step's additional data."""
        return {
            "original_messages_count": self.original_count,
            "cleaned_messages_count": self.cleaned_count,
            "original_size": self.original_size,
            "cleaned_size": self.cleaned_size,
            "size_saved": self.size_saved,
            "removed_tool_results": self.removed_tool_results,
            "removed_tool_results_size": self.removed_tool_results_size,
            "tool_results_found": [item.label() for item in self.removed_items],
            "estimated_tokens_saved": self.estimated_tokens_saved,
        }


class ContentCleaner:
    """
    Drops tool invocation parts that already carry a result.

    All other parts, message order and message count are preserved.
    The input list is never mutated; cleaning is idempotent.
    """

    def __init__(self, estimator: Optional[TokenEstimator] = None):
        self.estimator = estimator or get_estimator()

    def clean(self, messages: Sequence[ChatMessage]) -> CleaningResult:
        cleaned: List[ChatMessage] = []
        removed: List[RemovedToolResult] = []

        for index, message in enumerate(messages):
            kept_parts = []
            for part in message.parts:
                if isinstance(part, ToolInvocationPart) and part.has_result:
                    removed.append(
                        RemovedToolResult(
                            message_index=index,
                            tool_name=part.tool_name or "unknown",
                            size=serialized_size(part.result),
                        )
                    )
                    continue
                kept_parts.append(part)

            if len(kept_parts) == len(message.parts):
                cleaned.append(message)
            else:
                cleaned.append(replace(message, parts=kept_parts))

        removed_size = sum(item.size for item in removed)

        return CleaningResult(
            messages=cleaned,
            original_count=len(messages),
            cleaned_count=len(cleaned),
            original_size=messages_size(messages),
            cleaned_size=messages_size(cleaned),
            removed_tool_results=len(removed),
            removed_tool_results_size=removed_size,
            removed_items=removed,
            estimated_tokens_saved=self.estimator.estimate_size(removed_size),
        )


def clean_messages(messages: Sequence[ChatMessage]) -> CleaningResult:
    """Convenience function using a default cleaner."""
    return ContentCleaner().clean(messages)
