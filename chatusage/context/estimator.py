"""
chatusage - Token Estimation

Approximates token counts from the byte length of message content.

The default ratio (4 bytes per token) is an approximation, not a tokenizer
call. Subclass TokenEstimator and override `estimate_bytes` (or set
BYTES_PER_TOKEN) to plug in something more exact.
"""

import math
from typing import Iterable, Optional

from ..core.models import (
    ChatMessage,
    TextPart,
    ToolInvocationPart,
    UnknownPart,
    byte_length,
    serialized_size,
)


class TokenEstimator:
    """
    Byte-ratio token estimator.

    Per message the counted bytes are:
    - the content string
    - text of each text part
    - compact JSON of {"toolName", "args"} for each tool invocation
      (the attached result is never counted)
    - compact JSON of unrecognized parts
    """

    BYTES_PER_TOKEN = 4

    def __init__(self, bytes_per_token: Optional[int] = None):
        self.bytes_per_token = bytes_per_token or self.BYTES_PER_TOKEN

    def message_bytes(self, message: ChatMessage) -> int:
        """Counted byte size of one message."""
        total = byte_length(message.content or "")

        for part in message.parts:
            if isinstance(part, TextPart):
                total += byte_length(part.text)
            elif isinstance(part, ToolInvocationPart):
                total += serialized_size(part.call_payload())
            elif isinstance(part, UnknownPart):
                total += serialized_size(part.raw)

        return total

    def estimate_bytes(self, messages: Iterable[ChatMessage]) -> int:
        return sum(self.message_bytes(m) for m in messages)

    def estimate_size(self, size_bytes: int) -> int:
        """Convert a byte size to tokens."""
        if size_bytes <= 0:
            return 0
        return int(math.ceil(size_bytes / self.bytes_per_token))

    def estimate_text(self, text: Optional[str]) -> int:
        if not text:
            return 0
        return self.estimate_size(byte_length(text))

    def estimate_message(self, message: ChatMessage) -> int:
        return self.estimate_size(self.message_bytes(message))

    def estimate_tokens(self, messages: Iterable[ChatMessage]) -> int:
        """Estimated tokens for a message list: ceil(total bytes / ratio)."""
        return self.estimate_size(self.estimate_bytes(messages))


# Global estimator instance
_default_estimator: Optional[TokenEstimator] = None


def get_estimator() -> TokenEstimator:
    """Get the default estimator."""
    global _default_estimator
    if _default_estimator is None:
        _default_estimator = TokenEstimator()
    return _default_estimator


def set_estimator(estimator: TokenEstimator) -> None:
    """Replace the default estimator (e.g. with a tokenizer-backed one)."""
    global _default_estimator
    _default_estimator = estimator


def estimate_tokens(messages: Iterable[ChatMessage]) -> int:
    """Convenience function for token estimation."""
    return get_estimator().estimate_tokens(messages)
