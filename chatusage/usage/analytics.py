"""
chatusage - Usage Analytics Service

Query facade over a UsageStore for the HTTP API and dashboards.

Store failures degrade to zeroed or empty results and are logged; a bad
time range is a caller error and propagates as InvalidTimeRangeError.
"""

import asyncio
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from ..core.errors import SemanticError
from ..observability.logging import get_logger, log_context
from .aggregator import (
    DEFAULT_HIGH_USAGE_LIMIT,
    DEFAULT_HIGH_USAGE_MIN_TOKENS,
    DEFAULT_SESSION_LOG_LIMIT,
    DailyUsageStats,
    ModelUsage,
    SessionAnalytics,
    SessionUsage,
    TimeRange,
    TokenUsageSummary,
    UsageBucket,
    UsageFilters,
)

if TYPE_CHECKING:
    from ..storage.base import UsageStore


logger = get_logger(__name__)

T = TypeVar("T")


class UsageAnalytics:
    """
    Graceful reads over a usage store.

    Usage:
        analytics = UsageAnalytics(store)
        summary = await analytics.token_usage_summary(UsageFilters(time_range=TimeRange.LAST_DAY))
        dashboard = await analytics.dashboard(user_id="u1")
    """

    def __init__(self, store: "UsageStore"):
        self.store = store

    async def _safe(self, query: str, call: Callable[[], Awaitable[T]], default: Callable[[], T]) -> T:
        try:
            return await call()
        except SemanticError:
            raise
        except Exception as e:
            logger.error(
                "Usage analytics query failed",
                query=query,
                store=self.store.name,
                error=str(e),
                error_class=type(e).__name__,
            )
            return default()

    async def token_usage_summary(self, filters: Optional[UsageFilters] = None) -> TokenUsageSummary:
        return await self._safe(
            "token_usage_summary",
            lambda: self.store.token_usage_summary(filters),
            TokenUsageSummary,
        )

    async def high_usage_sessions(
        self,
        limit: int = DEFAULT_HIGH_USAGE_LIMIT,
        min_tokens: int = DEFAULT_HIGH_USAGE_MIN_TOKENS,
        filters: Optional[UsageFilters] = None,
    ) -> List[SessionUsage]:
        return await self._safe(
            "high_usage_sessions",
            lambda: self.store.high_usage_sessions(limit=limit, min_tokens=min_tokens, filters=filters),
            list,
        )

    async def model_usage_summary(self, filters: Optional[UsageFilters] = None) -> List[ModelUsage]:
        return await self._safe("model_usage_summary", lambda: self.store.model_usage_summary(filters), list)

    async def hourly_usage(self, hours: int = 24) -> List[UsageBucket]:
        return await self._safe("hourly_usage", lambda: self.store.hourly_usage(hours), list)

    async def minute_usage(self, minutes: int = 60) -> List[UsageBucket]:
        return await self._safe("minute_usage", lambda: self.store.minute_usage(minutes), list)

    async def latest_hourly_usage(self, limit: int = 24) -> List[UsageBucket]:
        return await self._safe("latest_hourly_usage", lambda: self.store.latest_hourly_usage(limit), list)

    async def latest_minute_usage(self, limit: int = 60) -> List[UsageBucket]:
        return await self._safe("latest_minute_usage", lambda: self.store.latest_minute_usage(limit), list)

    async def session_analytics(
        self,
        session_id: str,
        limit: int = DEFAULT_SESSION_LOG_LIMIT,
    ) -> SessionAnalytics:
        return await self._safe(
            "session_analytics",
            lambda: self.store.session_analytics(session_id, limit),
            lambda: SessionAnalytics(session_id=session_id),
        )

    @log_context(operation="daily_rollup")
    async def update_daily_stats(self, day=None) -> DailyUsageStats:
        """Upsert a day's rollup. Store failures propagate to the caller."""
        return await self.store.update_daily_stats(day)

    async def dashboard(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Summaries for the last minute, hour and week plus top sessions and latest buckets."""
        def window(time_range: TimeRange) -> UsageFilters:
            return UsageFilters(time_range=time_range, user_id=user_id)

        (
            last_minute,
            last_hour,
            last_week,
            top_sessions,
            hourly,
            minutely,
        ) = await asyncio.gather(
            self.token_usage_summary(window(TimeRange.LAST_MINUTE)),
            self.token_usage_summary(window(TimeRange.LAST_HOUR)),
            self.token_usage_summary(window(TimeRange.LAST_WEEK)),
            self.high_usage_sessions(filters=UsageFilters(user_id=user_id)),
            self.latest_hourly_usage(),
            self.latest_minute_usage(),
        )

        return {
            "last_minute": last_minute.to_dict(),
            "last_hour": last_hour.to_dict(),
            "last_week": last_week.to_dict(),
            "high_usage_sessions": [s.to_dict() for s in top_sessions],
            "hourly_usage": [b.to_dict() for b in hourly],
            "minute_usage": [b.to_dict() for b in minutely],
        }
