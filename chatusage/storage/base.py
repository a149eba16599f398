"""
chatusage - Usage Store Interface

Persistence and query contract for usage logs.

Write side: one usage log and its ordered steps are persisted as a unit;
steps belong to their log and are removed with it.

Read side: token summaries, top sessions, per-model rollups, hourly and
per-minute buckets, session analytics and daily rollups, all filtered by
UsageFilters.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional

from ..usage.aggregator import (
    DEFAULT_HIGH_USAGE_LIMIT,
    DEFAULT_HIGH_USAGE_MIN_TOKENS,
    DEFAULT_SESSION_LOG_LIMIT,
    BucketSize,
    DailyUsageStats,
    ModelUsage,
    SessionAnalytics,
    SessionUsage,
    TokenUsageSummary,
    UsageAggregator,
    UsageBucket,
    UsageFilters,
    get_aggregator,
)
from ..usage.models import UsageLog, utcnow


def yesterday(now: datetime) -> date:
    return (now - timedelta(days=1)).date()


class UsageStore(ABC):
    """
    Abstract usage store.

    Implementations must make persist() atomic per turn: readers see all
    of a log's steps or none of them.
    """

    name: str = ""

    async def connect(self) -> None:
        """Open underlying resources."""
        return None

    async def close(self) -> None:
        """Release underlying resources."""
        return None

    @abstractmethod
    async def persist(self, log: UsageLog) -> str:
        """
        Durably record a log and its ordered steps.

        Returns:
            The stored log id
        """
        pass

    @abstractmethod
    async def delete_log(self, log_id: str) -> bool:
        """Delete a log and, with it, all of its steps."""
        pass

    @abstractmethod
    async def token_usage_summary(
        self,
        filters: Optional[UsageFilters] = None,
    ) -> TokenUsageSummary:
        pass

    @abstractmethod
    async def high_usage_sessions(
        self,
        limit: int = DEFAULT_HIGH_USAGE_LIMIT,
        min_tokens: int = DEFAULT_HIGH_USAGE_MIN_TOKENS,
        filters: Optional[UsageFilters] = None,
    ) -> List[SessionUsage]:
        pass

    @abstractmethod
    async def model_usage_summary(
        self,
        filters: Optional[UsageFilters] = None,
    ) -> List[ModelUsage]:
        pass

    @abstractmethod
    async def hourly_usage(self, hours: int = 24) -> List[UsageBucket]:
        """Hourly buckets over the trailing window, ascending."""
        pass

    @abstractmethod
    async def minute_usage(self, minutes: int = 60) -> List[UsageBucket]:
        """Per-minute buckets over the trailing window, ascending."""
        pass

    @abstractmethod
    async def latest_hourly_usage(self, limit: int = 24) -> List[UsageBucket]:
        """The most recent non-empty hourly buckets, ascending."""
        pass

    @abstractmethod
    async def latest_minute_usage(self, limit: int = 60) -> List[UsageBucket]:
        """The most recent non-empty minute buckets, ascending."""
        pass

    @abstractmethod
    async def session_analytics(
        self,
        session_id: str,
        limit: int = DEFAULT_SESSION_LOG_LIMIT,
    ) -> SessionAnalytics:
        pass

    @abstractmethod
    async def update_daily_stats(self, day: Optional[date] = None) -> DailyUsageStats:
        """Idempotently upsert a day's rollup (defaults to yesterday, UTC)."""
        pass


class AggregatingUsageStore(UsageStore):
    """
    Store whose reads are computed in-process from all persisted logs.

    Subclasses provide `_load_logs` and `_save_daily_stats`.
    """

    def __init__(
        self,
        aggregator: Optional[UsageAggregator] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.aggregator = aggregator or get_aggregator()
        self._now = clock

    @abstractmethod
    async def _load_logs(self) -> List[UsageLog]:
        pass

    @abstractmethod
    async def _save_daily_stats(self, stats: DailyUsageStats) -> None:
        pass

    async def _filtered(self, filters: Optional[UsageFilters]) -> List[UsageLog]:
        filters = filters or UsageFilters()
        bounds = filters.resolve(self._now())
        return [log for log in await self._load_logs() if filters.matches(log, bounds)]

    async def token_usage_summary(self, filters=None) -> TokenUsageSummary:
        return self.aggregator.summarize(await self._filtered(filters))

    async def high_usage_sessions(
        self,
        limit: int = DEFAULT_HIGH_USAGE_LIMIT,
        min_tokens: int = DEFAULT_HIGH_USAGE_MIN_TOKENS,
        filters: Optional[UsageFilters] = None,
    ) -> List[SessionUsage]:
        return self.aggregator.high_usage_sessions(
            await self._filtered(filters), limit=limit, min_tokens=min_tokens
        )

    async def model_usage_summary(self, filters=None) -> List[ModelUsage]:
        return self.aggregator.model_usage(await self._filtered(filters))

    async def hourly_usage(self, hours: int = 24) -> List[UsageBucket]:
        since = self._now() - timedelta(hours=hours)
        return self.aggregator.buckets(await self._load_logs(), BucketSize.HOUR, since=since)

    async def minute_usage(self, minutes: int = 60) -> List[UsageBucket]:
        since = self._now() - timedelta(minutes=minutes)
        return self.aggregator.buckets(await self._load_logs(), BucketSize.MINUTE, since=since)

    async def latest_hourly_usage(self, limit: int = 24) -> List[UsageBucket]:
        return self.aggregator.latest_buckets(await self._load_logs(), BucketSize.HOUR, limit)

    async def latest_minute_usage(self, limit: int = 60) -> List[UsageBucket]:
        return self.aggregator.latest_buckets(await self._load_logs(), BucketSize.MINUTE, limit)

    async def session_analytics(
        self,
        session_id: str,
        limit: int = DEFAULT_SESSION_LOG_LIMIT,
    ) -> SessionAnalytics:
        logs = [log for log in await self._load_logs() if log.session_id == session_id]
        logs.sort(key=lambda log: log.timestamp)
        return SessionAnalytics(
            session_id=session_id,
            logs=logs[-limit:] if limit > 0 else [],
            summary=self.aggregator.session_summary(session_id, logs),
        )

    async def update_daily_stats(self, day: Optional[date] = None) -> DailyUsageStats:
        day = day or yesterday(self._now())
        stats = self.aggregator.daily_stats(await self._load_logs(), day)
        await self._save_daily_stats(stats)
        return stats
