"""
chatusage - Postgres Usage Store

Relational usage store on asyncpg.

A log row and its step rows are inserted in one transaction. Steps
reference their log with ON DELETE CASCADE. Aggregations run in SQL;
averages are rounded in Python so every backend rounds the same way.
"""

import json
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import asyncpg

from ..core.errors import PersistenceError, StoreUnavailableError
from ..db.connection import DatabasePool
from ..db.schema import ensure_schema
from ..observability.logging import get_logger
from ..usage.aggregator import (
    DailyUsageStats,
    ModelUsage,
    SessionAnalytics,
    SessionUsage,
    TokenUsageSummary,
    UsageBucket,
    UsageFilters,
    get_aggregator,
    rounded_average,
)
from ..usage.models import (
    ActualContent,
    FullConversationContext,
    PromptSizeBreakdown,
    ToolCallResult,
    UsageLog,
    UsageStep,
    utcnow,
)
from .base import (
    DEFAULT_HIGH_USAGE_LIMIT,
    DEFAULT_HIGH_USAGE_MIN_TOKENS,
    DEFAULT_SESSION_LOG_LIMIT,
    UsageStore,
    yesterday,
)


logger = get_logger(__name__)


LOG_COLUMNS = (
    "id", "session_id", "message_id", "user_id", "model", "timestamp",
    "total_prompt_tokens", "total_completion_tokens", "total_tokens",
    "total_execution_time", "request_size", "response_size",
    "full_conversation_context",
)

STEP_COLUMNS = ("log_id", "position", "step_name", "timestamp") + UsageStep.COUNT_FIELDS + (
    "tool_call_results", "prompt_size_breakdown", "actual_content", "additional_data",
)

SUMMARY_COLUMNS = """
    COALESCE(SUM(total_tokens), 0) AS total_tokens,
    COALESCE(SUM(total_prompt_tokens), 0) AS prompt_tokens,
    COALESCE(SUM(total_completion_tokens), 0) AS completion_tokens,
    COUNT(*) AS total_requests,
    COUNT(DISTINCT session_id) AS unique_sessions,
    COALESCE(MAX(total_tokens), 0) AS peak_token_usage
"""


def _insert_sql(table: str, columns: Sequence[str]) -> str:
    placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
    return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"


INSERT_LOG_SQL = _insert_sql("chat_usage_log", LOG_COLUMNS)
INSERT_STEP_SQL = _insert_sql("chat_usage_step", STEP_COLUMNS)


def _dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


def _load(value: Any) -> Any:
    """JSONB arrives as text unless a codec is registered."""
    if isinstance(value, str):
        return json.loads(value)
    return value


def build_where(
    filters: Optional[UsageFilters],
    now: datetime,
    start_index: int = 1,
) -> Tuple[str, List[Any]]:
    """
    WHERE clause and positional args for a filter set.

    Raises:
        InvalidTimeRangeError: custom range missing a bound or inverted
    """
    filters = filters or UsageFilters()
    start, end = filters.resolve(now)

    clauses = []
    args: List[Any] = []

    def add(expression: str, value: Any) -> None:
        args.append(value)
        clauses.append(expression.format(f"${start_index + len(args) - 1}"))

    if start is not None:
        add("timestamp >= {}", start)
    if end is not None:
        add("timestamp <= {}", end)
    if filters.user_id:
        add("user_id = {}", filters.user_id)
    if filters.session_id:
        add("session_id = {}", filters.session_id)

    if not clauses:
        return "", args
    return "WHERE " + " AND ".join(clauses), args


def _summary_from_row(row) -> Dict[str, int]:
    total = int(row["total_tokens"])
    requests = int(row["total_requests"])
    return {
        "total_tokens": total,
        "prompt_tokens": int(row["prompt_tokens"]),
        "completion_tokens": int(row["completion_tokens"]),
        "total_requests": requests,
        "unique_sessions": int(row["unique_sessions"]),
        "average_tokens_per_request": rounded_average(total, requests),
        "peak_token_usage": int(row["peak_token_usage"]),
    }


def _step_from_row(row) -> UsageStep:
    step = UsageStep(
        step_name=row["step_name"],
        timestamp=row["timestamp"],
        tool_call_results=[
            ToolCallResult.from_dict(r) for r in _load(row["tool_call_results"]) or []
        ],
        additional_data=_load(row["additional_data"]) or {},
    )
    for name in UsageStep.COUNT_FIELDS:
        setattr(step, name, row[name])
    breakdown = _load(row["prompt_size_breakdown"])
    if breakdown:
        step.prompt_size_breakdown = PromptSizeBreakdown.from_dict(breakdown)
    content = _load(row["actual_content"])
    if content:
        step.actual_content = ActualContent.from_dict(content)
    return step


def _log_from_row(row, steps: List[UsageStep]) -> UsageLog:
    log = UsageLog(
        id=str(row["id"]),
        session_id=row["session_id"],
        message_id=row["message_id"],
        user_id=row["user_id"],
        model=row["model"],
        timestamp=row["timestamp"],
        steps=steps,
        total_prompt_tokens=row["total_prompt_tokens"],
        total_completion_tokens=row["total_completion_tokens"],
        total_tokens=row["total_tokens"],
        total_execution_time=row["total_execution_time"],
        request_size=row["request_size"],
        response_size=row["response_size"],
    )
    context = _load(row["full_conversation_context"])
    if context:
        log.full_conversation_context = FullConversationContext.from_dict(context)
    return log


class PostgresUsageStore(UsageStore):
    """
    Usage store backed by PostgreSQL.

    Usage:
        store = PostgresUsageStore(DatabasePool(settings.database_url))
        await store.connect()
        await store.persist(log)
    """

    name = "postgres"

    def __init__(
        self,
        pool: DatabasePool,
        create_schema: bool = True,
        clock=utcnow,
    ):
        self.pool = pool
        self.create_schema = create_schema
        self._now = clock

    async def connect(self) -> None:
        await self.pool.connect()
        if self.create_schema:
            await ensure_schema(self.pool)

    async def close(self) -> None:
        await self.pool.close()

    @asynccontextmanager
    async def _reading(self):
        try:
            yield
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreUnavailableError(self.name, f"Usage query failed: {e}") from e

    # ============================================================
    # Writes
    # ============================================================

    async def persist(self, log: UsageLog) -> str:
        context = log.full_conversation_context
        log_values = (
            log.id, log.session_id, log.message_id, log.user_id, log.model, log.timestamp,
            log.total_prompt_tokens, log.total_completion_tokens, log.total_tokens,
            log.total_execution_time, log.request_size, log.response_size,
            _dump(context.to_dict()) if context is not None else None,
        )
        step_values = [self._step_values(log.id, position, step) for position, step in enumerate(log.steps)]

        try:
            async with self.pool.transaction() as conn:
                await conn.execute(INSERT_LOG_SQL, *log_values)
                if step_values:
                    await conn.executemany(INSERT_STEP_SQL, step_values)
        except (asyncpg.PostgresError, OSError) as e:
            raise PersistenceError(self.name, f"Failed to insert usage log: {e}") from e

        return log.id

    def _step_values(self, log_id: str, position: int, step: UsageStep) -> Tuple:
        return (
            log_id, position, step.step_name, step.timestamp,
            *(getattr(step, name) for name in UsageStep.COUNT_FIELDS),
            _dump([r.to_dict() for r in step.tool_call_results]) if step.tool_call_results else None,
            _dump(step.prompt_size_breakdown.to_dict()) if step.prompt_size_breakdown else None,
            _dump(step.actual_content.to_dict()) if step.actual_content else None,
            _dump(step.additional_data) if step.additional_data else None,
        )

    async def delete_log(self, log_id: str) -> bool:
        try:
            uuid.UUID(log_id)
        except ValueError:
            return False

        try:
            status = await self.pool.execute("DELETE FROM chat_usage_log WHERE id = $1", log_id)
        except (asyncpg.PostgresError, OSError) as e:
            raise PersistenceError(self.name, f"Failed to delete usage log: {e}") from e
        return status.endswith(" 1")

    # ============================================================
    # Reads
    # ============================================================

    async def token_usage_summary(self, filters=None) -> TokenUsageSummary:
        where, args = build_where(filters, self._now())
        async with self._reading():
            row = await self.pool.fetchrow(
                f"SELECT {SUMMARY_COLUMNS} FROM chat_usage_log {where}", *args
            )
        return TokenUsageSummary(**_summary_from_row(row))

    async def high_usage_sessions(
        self,
        limit: int = DEFAULT_HIGH_USAGE_LIMIT,
        min_tokens: int = DEFAULT_HIGH_USAGE_MIN_TOKENS,
        filters: Optional[UsageFilters] = None,
    ) -> List[SessionUsage]:
        where, args = build_where(filters, self._now(), start_index=3)
        query = f"""
            SELECT session_id, user_id,
                   SUM(total_tokens) AS total_tokens,
                   MAX(total_tokens) AS peak_token_usage,
                   COUNT(*) AS message_count,
                   MAX(timestamp) AS last_activity
            FROM chat_usage_log
            {where}
            GROUP BY session_id, user_id
            HAVING SUM(total_tokens) >= $1
            ORDER BY total_tokens DESC, session_id
            LIMIT $2
        """
        async with self._reading():
            rows = await self.pool.fetch(query, min_tokens, max(0, limit), *args)
        return [
            SessionUsage(
                session_id=row["session_id"],
                user_id=row["user_id"],
                total_tokens=int(row["total_tokens"]),
                peak_token_usage=int(row["peak_token_usage"]),
                message_count=int(row["message_count"]),
                last_activity=row["last_activity"],
            )
            for row in rows
        ]

    async def model_usage_summary(self, filters=None) -> List[ModelUsage]:
        where, args = build_where(filters, self._now())
        query = f"""
            SELECT model, {SUMMARY_COLUMNS}, MAX(timestamp) AS last_used
            FROM chat_usage_log
            {where}
            GROUP BY model
            ORDER BY total_tokens DESC, model
        """
        async with self._reading():
            rows = await self.pool.fetch(query, *args)
        return [
            ModelUsage(model=row["model"], last_used=row["last_used"], **_summary_from_row(row))
            for row in rows
        ]

    async def _buckets(self, unit: str, since: Optional[datetime] = None, limit: Optional[int] = None) -> List[UsageBucket]:
        args: List[Any] = []
        where = ""
        if since is not None:
            args.append(since)
            where = "WHERE timestamp >= $1"
        query = f"""
            SELECT date_trunc('{unit}', timestamp AT TIME ZONE 'UTC') AS bucket,
                   COALESCE(SUM(total_tokens), 0) AS tokens,
                   COUNT(*) AS requests
            FROM chat_usage_log
            {where}
            GROUP BY bucket
            ORDER BY bucket {'DESC' if limit is not None else 'ASC'}
        """
        if limit is not None:
            args.append(limit)
            query += f" LIMIT ${len(args)}"

        async with self._reading():
            rows = await self.pool.fetch(query, *args)

        buckets = [
            UsageBucket(
                bucket_start=row["bucket"].replace(tzinfo=timezone.utc),
                tokens=int(row["tokens"]),
                requests=int(row["requests"]),
            )
            for row in rows
        ]
        if limit is not None:
            buckets.reverse()
        return buckets

    async def hourly_usage(self, hours: int = 24) -> List[UsageBucket]:
        return await self._buckets("hour", since=self._now() - timedelta(hours=hours))

    async def minute_usage(self, minutes: int = 60) -> List[UsageBucket]:
        return await self._buckets("minute", since=self._now() - timedelta(minutes=minutes))

    async def latest_hourly_usage(self, limit: int = 24) -> List[UsageBucket]:
        if limit <= 0:
            return []
        return await self._buckets("hour", limit=limit)

    async def latest_minute_usage(self, limit: int = 60) -> List[UsageBucket]:
        if limit <= 0:
            return []
        return await self._buckets("minute", limit=limit)

    async def session_analytics(
        self,
        session_id: str,
        limit: int = DEFAULT_SESSION_LOG_LIMIT,
    ) -> SessionAnalytics:
        async with self._reading():
            log_rows = await self.pool.fetch(
                "SELECT * FROM chat_usage_log WHERE session_id = $1 ORDER BY timestamp ASC",
                session_id,
            )
            step_rows = await self.pool.fetch(
                """
                SELECT s.* FROM chat_usage_step s
                JOIN chat_usage_log l ON l.id = s.log_id
                WHERE l.session_id = $1
                ORDER BY s.log_id, s.position
                """,
                session_id,
            )

        steps_by_log: Dict[str, List[UsageStep]] = {}
        for row in step_rows:
            steps_by_log.setdefault(str(row["log_id"]), []).append(_step_from_row(row))

        logs = [_log_from_row(row, steps_by_log.get(str(row["id"]), [])) for row in log_rows]
        return SessionAnalytics(
            session_id=session_id,
            logs=logs[-limit:] if limit > 0 else [],
            summary=get_aggregator().session_summary(session_id, logs),
        )

    async def update_daily_stats(self, day: Optional[date] = None) -> DailyUsageStats:
        day = day or yesterday(self._now())
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1)
        query = """
            INSERT INTO daily_usage_stats (date, total_tokens, total_requests, unique_sessions, updated_at)
            SELECT $1::date,
                   COALESCE(SUM(total_tokens), 0),
                   COUNT(*),
                   COUNT(DISTINCT session_id),
                   NOW()
            FROM chat_usage_log
            WHERE timestamp >= $2 AND timestamp < $3
            ON CONFLICT (date) DO UPDATE SET
                total_tokens = EXCLUDED.total_tokens,
                total_requests = EXCLUDED.total_requests,
                unique_sessions = EXCLUDED.unique_sessions,
                updated_at = NOW()
            RETURNING date, total_tokens, total_requests, unique_sessions
        """
        try:
            row = await self.pool.fetchrow(query, day, start, end)
        except (asyncpg.PostgresError, OSError) as e:
            raise PersistenceError(self.name, f"Failed to update daily stats: {e}") from e

        logger.info("Daily usage stats updated", day=day.isoformat(), total_tokens=int(row["total_tokens"]))
        return DailyUsageStats(
            day=row["date"],
            total_tokens=int(row["total_tokens"]),
            total_requests=int(row["total_requests"]),
            unique_sessions=int(row["unique_sessions"]),
        )
