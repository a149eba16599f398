"""
chatusage - Context Reduction

Transforms that shrink the message set sent to the model:
- Estimator: byte-ratio token estimation
- Cleaner: drops completed tool results
- Limiter: sliding-window token budget
- Summarizer: optional LLM compaction of old messages
"""

from .estimator import (
    TokenEstimator,
    get_estimator,
    set_estimator,
    estimate_tokens,
)
from .cleaner import (
    ContentCleaner,
    CleaningResult,
    RemovedToolResult,
    clean_messages,
)
from .limiter import (
    ConversationLimiter,
    LimiterConfig,
    LimitationResult,
)
from .summarizer import (
    ConversationSummarizer,
    ConversationSummary,
    SummarizationResult,
    SummarizerConfig,
    SummarizationPolicy,
    DisabledPolicy,
    TokenThresholdPolicy,
    policy_for_mode,
)

__all__ = [
    "TokenEstimator",
    "get_estimator",
    "set_estimator",
    "estimate_tokens",
    "ContentCleaner",
    "CleaningResult",
    "RemovedToolResult",
    "clean_messages",
    "ConversationLimiter",
    "LimiterConfig",
    "LimitationResult",
    "ConversationSummarizer",
    "ConversationSummary",
    "SummarizationResult",
    "SummarizerConfig",
    "SummarizationPolicy",
    "DisabledPolicy",
    "TokenThresholdPolicy",
    "policy_for_mode",
]
