"""
chatusage - Usage Accounting

- Usage logs and steps for one chat turn
- Request-scoped accumulator with a single flush point
- Aggregations and the analytics query service
- Chat turn pipeline tying context reduction to accounting
"""

from .models import (
    StepName,
    ToolCallResult,
    PromptSizeBreakdown,
    ActualContent,
    UsageStep,
    TokensBreakdown,
    OverheadAnalysis,
    ConversationSnapshotMessage,
    FullConversationContext,
    UsageLog,
)
from .aggregator import (
    TimeRange,
    UsageFilters,
    TokenUsageSummary,
    SessionUsage,
    ModelUsage,
    UsageBucket,
    MessageSummary,
    SessionSummary,
    SessionAnalytics,
    DailyUsageStats,
    BucketSize,
    UsageAggregator,
    get_aggregator,
)
from .accumulator import (
    HIGH_USAGE_THRESHOLD,
    AccumulatorState,
    UsageAccumulator,
)
from .analytics import UsageAnalytics
from .pipeline import (
    ChatTurn,
    ChatTurnPipeline,
    ModelResult,
    PreparedTurn,
    SystemPromptParts,
    ToolCallRecord,
)

__all__ = [
    "StepName",
    "ToolCallResult",
    "PromptSizeBreakdown",
    "ActualContent",
    "UsageStep",
    "TokensBreakdown",
    "OverheadAnalysis",
    "ConversationSnapshotMessage",
    "FullConversationContext",
    "UsageLog",
    "TimeRange",
    "UsageFilters",
    "TokenUsageSummary",
    "SessionUsage",
    "ModelUsage",
    "UsageBucket",
    "MessageSummary",
    "SessionSummary",
    "SessionAnalytics",
    "DailyUsageStats",
    "BucketSize",
    "UsageAggregator",
    "get_aggregator",
    "HIGH_USAGE_THRESHOLD",
    "AccumulatorState",
    "UsageAccumulator",
    "UsageAnalytics",
    "ChatTurn",
    "ChatTurnPipeline",
    "ModelResult",
    "PreparedTurn",
    "SystemPromptParts",
    "ToolCallRecord",
]
