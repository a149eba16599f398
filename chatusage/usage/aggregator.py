"""
chatusage - Usage Aggregation

Read-side views over persisted usage logs.

Features:
- Time-window filters (last minute/hour/day/week/month, custom)
- Token summaries with request and session counts
- Top sessions by total tokens
- Per-model rollups
- Hourly and per-minute buckets
- Cumulative per-session summaries and daily rollups

The in-memory and file stores aggregate with UsageAggregator directly;
the Postgres store computes the same shapes in SQL.
"""

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..core.errors import InvalidTimeRangeError
from .models import UsageLog, parse_timestamp, utcnow


BUCKET_LABEL_FORMAT = "%Y-%m-%d %H:%M:%S"

DEFAULT_HIGH_USAGE_LIMIT = 10
DEFAULT_HIGH_USAGE_MIN_TOKENS = 10000
DEFAULT_SESSION_LOG_LIMIT = 100


def rounded_average(total: int, count: int) -> int:
    """total / count rounded half up; 0 when count is 0."""
    if count <= 0:
        return 0
    return (2 * total + count) // (2 * count)


# ============================================================
# Filters
# ============================================================

class TimeRange(str, Enum):
    """Query time windows."""
    ALL = "all"
    LAST_MINUTE = "last_minute"
    LAST_HOUR = "last_hour"
    LAST_DAY = "last_day"
    LAST_WEEK = "last_week"
    LAST_MONTH = "last_month"
    CUSTOM = "custom"


TIME_RANGE_SPANS = {
    TimeRange.LAST_MINUTE: timedelta(minutes=1),
    TimeRange.LAST_HOUR: timedelta(hours=1),
    TimeRange.LAST_DAY: timedelta(days=1),
    TimeRange.LAST_WEEK: timedelta(days=7),
    TimeRange.LAST_MONTH: timedelta(days=30),
}


@dataclass
class UsageFilters:
    """Filter set shared by all read queries."""
    time_range: TimeRange = TimeRange.ALL
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None

    def resolve(self, now: Optional[datetime] = None) -> Tuple[Optional[datetime], Optional[datetime]]:
        """
        Concrete [start, end] bounds, both inclusive.

        Raises:
            InvalidTimeRangeError: custom range missing a bound or inverted
        """
        if self.time_range == TimeRange.ALL:
            return None, None

        if self.time_range == TimeRange.CUSTOM:
            if self.start is None or self.end is None:
                raise InvalidTimeRangeError("Custom time range requires both start and end")
            start, end = _aware(self.start), _aware(self.end)
            if start > end:
                raise InvalidTimeRangeError("Time range start must not be after end", param="start")
            return start, end

        now = now or utcnow()
        return now - TIME_RANGE_SPANS[self.time_range], now

    def matches(self, log: UsageLog, bounds: Tuple[Optional[datetime], Optional[datetime]]) -> bool:
        start, end = bounds
        if start is not None and log.timestamp < start:
            return False
        if end is not None and log.timestamp > end:
            return False
        if self.user_id and log.user_id != self.user_id:
            return False
        if self.session_id and log.session_id != self.session_id:
            return False
        return True


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================================
# Aggregate shapes
# ============================================================

@dataclass
class TokenUsageSummary:
    """Token totals over a filtered set of logs. All zero when empty."""
    total_tokens: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_requests: int = 0
    unique_sessions: int = 0
    average_tokens_per_request: int = 0
    peak_token_usage: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_tokens": self.total_tokens,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_requests": self.total_requests,
            "unique_sessions": self.unique_sessions,
            "average_tokens_per_request": self.average_tokens_per_request,
            "peak_token_usage": self.peak_token_usage,
        }


@dataclass
class SessionUsage:
    """One row of the top-sessions ranking."""
    session_id: str
    user_id: Optional[str]
    total_tokens: int
    peak_token_usage: int
    message_count: int
    last_activity: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "total_tokens": self.total_tokens,
            "peak_token_usage": self.peak_token_usage,
            "message_count": self.message_count,
            "last_activity": self.last_activity.isoformat(),
        }


@dataclass
class ModelUsage(TokenUsageSummary):
    """Token summary for a single model."""
    model: str = ""
    last_used: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"model": self.model}
        result.update(super().to_dict())
        result["last_used"] = self.last_used.isoformat() if self.last_used else None
        return result


@dataclass
class UsageBucket:
    """Token and request sums for one time bucket."""
    bucket_start: datetime
    tokens: int = 0
    requests: int = 0

    @property
    def label(self) -> str:
        return self.bucket_start.strftime(BUCKET_LABEL_FORMAT)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bucket_start": self.bucket_start.isoformat(),
            "label": self.label,
            "tokens": self.tokens,
            "requests": self.requests,
        }


@dataclass
class MessageSummary:
    """Per-turn line in a session summary."""
    message_id: str
    timestamp: datetime
    total_tokens: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    execution_time: int = 0
    step_count: int = 0
    tool_usage: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_log(cls, log: UsageLog) -> "MessageSummary":
        return cls(
            message_id=log.message_id,
            timestamp=log.timestamp,
            total_tokens=log.total_tokens,
            prompt_tokens=log.total_prompt_tokens,
            completion_tokens=log.total_completion_tokens,
            execution_time=log.total_execution_time,
            step_count=log.step_count,
            tool_usage=log.tool_usage(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "timestamp": self.timestamp.isoformat(),
            "total_tokens": self.total_tokens,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "execution_time": self.execution_time,
            "step_count": self.step_count,
            "tool_usage": self.tool_usage,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MessageSummary":
        return cls(
            message_id=data["message_id"],
            timestamp=parse_timestamp(data["timestamp"]),
            total_tokens=int(data.get("total_tokens", 0)),
            prompt_tokens=int(data.get("prompt_tokens", 0)),
            completion_tokens=int(data.get("completion_tokens", 0)),
            execution_time=int(data.get("execution_time", 0)),
            step_count=int(data.get("step_count", 0)),
            tool_usage=dict(data.get("tool_usage") or {}),
        )


@dataclass
class SessionSummary:
    """Cumulative usage for one session."""
    session_id: str
    total_messages: int = 0
    total_tokens: int = 0
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    average_tokens_per_message: int = 0
    peak_token_usage: int = 0
    most_used_tools: Dict[str, int] = field(default_factory=dict)
    messages: List[MessageSummary] = field(default_factory=list)

    @classmethod
    def from_messages(cls, session_id: str, messages: Iterable[MessageSummary]) -> "SessionSummary":
        """Recompute every total from the per-message lines."""
        ordered = sorted(messages, key=lambda m: m.timestamp)
        tools: Counter = Counter()
        for message in ordered:
            tools.update(message.tool_usage)

        total_tokens = sum(m.total_tokens for m in ordered)
        return cls(
            session_id=session_id,
            total_messages=len(ordered),
            total_tokens=total_tokens,
            total_prompt_tokens=sum(m.prompt_tokens for m in ordered),
            total_completion_tokens=sum(m.completion_tokens for m in ordered),
            average_tokens_per_message=rounded_average(total_tokens, len(ordered)),
            peak_token_usage=max((m.total_tokens for m in ordered), default=0),
            most_used_tools=dict(tools.most_common()),
            messages=ordered,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "total_messages": self.total_messages,
            "total_tokens": self.total_tokens,
            "total_prompt_tokens": self.total_prompt_tokens,
            "total_completion_tokens": self.total_completion_tokens,
            "average_tokens_per_message": self.average_tokens_per_message,
            "peak_token_usage": self.peak_token_usage,
            "most_used_tools": self.most_used_tools,
            "messages": [m.to_dict() for m in self.messages],
        }


@dataclass
class SessionAnalytics:
    """Ordered logs of one session plus its cumulative summary."""
    session_id: str
    logs: List[UsageLog] = field(default_factory=list)
    summary: Optional[SessionSummary] = None

    def to_dict(self, include_steps: bool = False) -> Dict[str, Any]:
        summary = self.summary or SessionSummary(session_id=self.session_id)
        return {
            "session_id": self.session_id,
            "logs": [log.to_dict(include_steps=include_steps) for log in self.logs],
            "summary": summary.to_dict(),
        }


@dataclass
class DailyUsageStats:
    """Daily rollup row."""
    day: date
    total_tokens: int = 0
    total_requests: int = 0
    unique_sessions: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "total_tokens": self.total_tokens,
            "total_requests": self.total_requests,
            "unique_sessions": self.unique_sessions,
        }


# ============================================================
# Aggregator
# ============================================================

class BucketSize(str, Enum):
    HOUR = "hour"
    MINUTE = "minute"


class UsageAggregator:
    """
    Aggregates usage logs into analytics views.

    Pure functions of the logs passed in; no I/O.
    """

    def filter(
        self,
        logs: Iterable[UsageLog],
        filters: Optional[UsageFilters] = None,
        now: Optional[datetime] = None,
    ) -> List[UsageLog]:
        filters = filters or UsageFilters()
        bounds = filters.resolve(now)
        return [log for log in logs if filters.matches(log, bounds)]

    def summarize(self, logs: Iterable[UsageLog]) -> TokenUsageSummary:
        logs = list(logs)
        total = sum(log.total_tokens for log in logs)
        return TokenUsageSummary(
            total_tokens=total,
            prompt_tokens=sum(log.total_prompt_tokens for log in logs),
            completion_tokens=sum(log.total_completion_tokens for log in logs),
            total_requests=len(logs),
            unique_sessions=len({log.session_id for log in logs}),
            average_tokens_per_request=rounded_average(total, len(logs)),
            peak_token_usage=max((log.total_tokens for log in logs), default=0),
        )

    def high_usage_sessions(
        self,
        logs: Iterable[UsageLog],
        limit: int = 10,
        min_tokens: int = 10000,
    ) -> List[SessionUsage]:
        """Sessions whose summed tokens reach min_tokens, largest first."""
        groups: Dict[Tuple[str, Optional[str]], List[UsageLog]] = defaultdict(list)
        for log in logs:
            groups[(log.session_id, log.user_id)].append(log)

        rows = []
        for (session_id, user_id), session_logs in groups.items():
            total = sum(log.total_tokens for log in session_logs)
            if total < min_tokens:
                continue
            rows.append(SessionUsage(
                session_id=session_id,
                user_id=user_id,
                total_tokens=total,
                peak_token_usage=max(log.total_tokens for log in session_logs),
                message_count=len(session_logs),
                last_activity=max(log.timestamp for log in session_logs),
            ))

        rows.sort(key=lambda r: (-r.total_tokens, r.session_id))
        return rows[:max(0, limit)]

    def model_usage(self, logs: Iterable[UsageLog]) -> List[ModelUsage]:
        """Per-model summaries, largest total first."""
        groups: Dict[str, List[UsageLog]] = defaultdict(list)
        for log in logs:
            groups[log.model].append(log)

        rows = []
        for model, model_logs in groups.items():
            summary = self.summarize(model_logs)
            rows.append(ModelUsage(
                model=model,
                last_used=max(log.timestamp for log in model_logs),
                **summary.to_dict(),
            ))

        rows.sort(key=lambda r: (-r.total_tokens, r.model))
        return rows

    def buckets(
        self,
        logs: Iterable[UsageLog],
        size: BucketSize,
        since: Optional[datetime] = None,
    ) -> List[UsageBucket]:
        """Non-empty buckets in ascending order; no zero filling."""
        buckets: Dict[datetime, UsageBucket] = {}
        for log in logs:
            if since is not None and log.timestamp < since:
                continue
            key = self._truncate(log.timestamp, size)
            bucket = buckets.setdefault(key, UsageBucket(bucket_start=key))
            bucket.tokens += log.total_tokens
            bucket.requests += 1
        return [buckets[key] for key in sorted(buckets)]

    def latest_buckets(
        self,
        logs: Iterable[UsageLog],
        size: BucketSize,
        limit: int,
    ) -> List[UsageBucket]:
        """The most recent `limit` non-empty buckets, ascending."""
        all_buckets = self.buckets(logs, size)
        if limit <= 0:
            return []
        return all_buckets[-limit:]

    def session_summary(self, session_id: str, logs: Iterable[UsageLog]) -> SessionSummary:
        return SessionSummary.from_messages(
            session_id, [MessageSummary.from_log(log) for log in logs]
        )

    def daily_stats(self, logs: Iterable[UsageLog], day: date) -> DailyUsageStats:
        day_logs = [log for log in logs if log.timestamp.astimezone(timezone.utc).date() == day]
        return DailyUsageStats(
            day=day,
            total_tokens=sum(log.total_tokens for log in day_logs),
            total_requests=len(day_logs),
            unique_sessions=len({log.session_id for log in day_logs}),
        )

    def _truncate(self, dt: datetime, size: BucketSize) -> datetime:
        dt = _aware(dt).astimezone(timezone.utc)
        if size == BucketSize.HOUR:
            return dt.replace(minute=0, second=0, microsecond=0)
        return dt.replace(second=0, microsecond=0)


# Global instance
_aggregator = UsageAggregator()


def get_aggregator() -> UsageAggregator:
    return _aggregator
