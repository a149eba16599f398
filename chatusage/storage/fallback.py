"""
chatusage - Fallback Usage Store

Writes go to the primary store and, when it fails, to a secondary one
(typically the file store next to Postgres). Reads are served by the
primary only.
"""

from typing import List, Optional

from ..core.errors import PersistenceError
from ..observability.logging import get_logger
from ..usage.aggregator import (
    DailyUsageStats,
    ModelUsage,
    SessionAnalytics,
    SessionUsage,
    TokenUsageSummary,
    UsageBucket,
    UsageFilters,
)
from ..usage.models import UsageLog
from .base import (
    DEFAULT_HIGH_USAGE_LIMIT,
    DEFAULT_HIGH_USAGE_MIN_TOKENS,
    DEFAULT_SESSION_LOG_LIMIT,
    UsageStore,
)


logger = get_logger(__name__)


class FallbackUsageStore(UsageStore):
    """Primary store with a secondary store for failed writes."""

    def __init__(self, primary: UsageStore, secondary: UsageStore):
        self.primary = primary
        self.secondary = secondary

    @property
    def name(self) -> str:
        return f"{self.primary.name}+{self.secondary.name}"

    async def connect(self) -> None:
        await self.secondary.connect()
        await self.primary.connect()

    async def close(self) -> None:
        try:
            await self.primary.close()
        finally:
            await self.secondary.close()

    async def persist(self, log: UsageLog) -> str:
        """
        Persist to the primary, falling back to the secondary.

        Raises:
            PersistenceError: If both stores fail
        """
        try:
            return await self.primary.persist(log)
        except Exception as primary_error:
            logger.warning(
                "Primary usage store failed, writing to fallback",
                primary=self.primary.name,
                secondary=self.secondary.name,
                session_id=log.session_id,
                error=str(primary_error),
            )
            try:
                return await self.secondary.persist(log)
            except Exception as secondary_error:
                raise PersistenceError(
                    self.name,
                    f"Primary and fallback stores failed: {primary_error}; {secondary_error}",
                ) from secondary_error

    async def delete_log(self, log_id: str) -> bool:
        deleted = await self.primary.delete_log(log_id)
        return await self.secondary.delete_log(log_id) or deleted

    async def token_usage_summary(self, filters: Optional[UsageFilters] = None) -> TokenUsageSummary:
        return await self.primary.token_usage_summary(filters)

    async def high_usage_sessions(
        self,
        limit: int = DEFAULT_HIGH_USAGE_LIMIT,
        min_tokens: int = DEFAULT_HIGH_USAGE_MIN_TOKENS,
        filters: Optional[UsageFilters] = None,
    ) -> List[SessionUsage]:
        return await self.primary.high_usage_sessions(limit, min_tokens, filters)

    async def model_usage_summary(self, filters: Optional[UsageFilters] = None) -> List[ModelUsage]:
        return await self.primary.model_usage_summary(filters)

    async def hourly_usage(self, hours: int = 24) -> List[UsageBucket]:
        return await self.primary.hourly_usage(hours)

    async def minute_usage(self, minutes: int = 60) -> List[UsageBucket]:
        return await self.primary.minute_usage(minutes)

    async def latest_hourly_usage(self, limit: int = 24) -> List[UsageBucket]:
        return await self.primary.latest_hourly_usage(limit)

    async def latest_minute_usage(self, limit: int = 60) -> List[UsageBucket]:
        return await self.primary.latest_minute_usage(limit)

    async def session_analytics(
        self,
        session_id: str,
        limit: int = DEFAULT_SESSION_LOG_LIMIT,
    ) -> SessionAnalytics:
        return await self.primary.session_analytics(session_id, limit)

    async def update_daily_stats(self, day=None) -> DailyUsageStats:
        return await self.primary.update_daily_stats(day)
