"""
chatusage - Usage Accounting Tests

Covers:
- Usage log and step models
- Request-scoped accumulator (state machine, recorders, flush)
- Aggregations and time-window filters
- Analytics service fallbacks
"""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from chatusage.context import ContentCleaner, ConversationLimiter
from chatusage.context.summarizer import ConversationSummary, SummarizationResult
from chatusage.core.errors import InvalidTimeRangeError, PersistenceError
from chatusage.core.models import ChatMessage, Role, Usage
from chatusage.usage import (
    AccumulatorState,
    BucketSize,
    PromptSizeBreakdown,
    SessionSummary,
    MessageSummary,
    StepName,
    TimeRange,
    UsageAccumulator,
    UsageAggregator,
    UsageAnalytics,
    UsageFilters,
    UsageLog,
    UsageStep,
)
from chatusage.usage.aggregator import rounded_average

from conftest import NOW, make_log, text_message, tool_message


def sample_value(metrics, name, labels):
    return metrics.registry.get_sample_value(name, labels) or 0


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


# ============================================================
# Models
# ============================================================

class TestUsageModels:

    def test_add_step_folds_totals(self):
        log = UsageLog(session_id="s", message_id="m")
        log.add_step(UsageStep(step_name="llm_call", prompt_tokens=100, completion_tokens=20, total_tokens=120))
        log.add_step(UsageStep(step_name="tools_loaded", tools_count=3))
        log.add_step(UsageStep(step_name="final_llm_call", prompt_tokens=400, completion_tokens=100, total_tokens=500))

        assert log.total_prompt_tokens == 500
        assert log.total_completion_tokens == 120
        assert log.total_tokens == 620
        assert log.step_count == 3

    def test_step_to_dict_omits_unset_counts(self):
        step = UsageStep(step_name="tools_loaded", tools_count=2)
        data = step.to_dict()
        assert data["tools_count"] == 2
        assert "prompt_tokens" not in data
        assert "actual_content" not in data

    def test_prompt_breakdown_total_defaults_to_sum(self):
        breakdown = PromptSizeBreakdown(user_system_prompt=10, mcp_customizations=5, thinking_prompt=2)
        assert breakdown.total == 17

    def test_tool_usage_histogram(self):
        log = make_log(tools=["search", "search", "weather"])
        assert log.tool_usage() == {"search": 2, "weather": 1}

    def test_log_from_dict_restores_steps_and_totals(self):
        original = make_log(total_tokens=800, tools=["search"])
        restored = UsageLog.from_dict(original.to_dict())

        assert restored.id == original.id
        assert restored.timestamp == original.timestamp
        assert restored.total_tokens == 800
        assert [s.step_name for s in restored.steps] == ["tool_call", "final_llm_call"]
        assert restored.steps[0].tool_call_results[0].tool_name == "search"

    def test_from_dict_treats_naive_timestamps_as_utc(self):
        data = make_log().to_dict()
        data["timestamp"] = "2024-01-15T12:00:00"
        assert UsageLog.from_dict(data).timestamp == NOW


# ============================================================
# Accumulator
# ============================================================

class TestUsageAccumulator:

    @pytest.fixture
    def accumulator(self, memory_store, metrics):
        return UsageAccumulator(memory_store, metrics=metrics)

    @pytest.mark.asyncio
    async def test_single_turn_totals(self, accumulator, memory_store):
        accumulator.initialize("sess-1", "msg-1", "user-1", "anthropic/claude-3-5-sonnet", request_size=2048)
        accumulator.log_tools_loaded(
            mcp_tools={"a": {}, "b": {}, "c": {}},
            workflow_tools={},
            app_default_tools={"d": {}, "e": {}},
        )
        accumulator.log_llm_usage(prompt_tokens=500, completion_tokens=120)

        log = await accumulator.finalize_and_save(response_size=512)

        assert log is not None
        assert log.total_prompt_tokens == 500
        assert log.total_completion_tokens == 120
        assert log.total_tokens == 620
        assert log.request_size == 2048
        assert log.response_size == 512

        tools_step = log.steps[0]
        assert tools_step.step_name == StepName.TOOLS_LOADED.value
        assert tools_step.tools_count == 5
        assert tools_step.mcp_tools_count == 3
        assert tools_step.workflow_tools_count == 0
        assert tools_step.app_default_tools_count == 2
        assert len(memory_store) == 1

    @pytest.mark.asyncio
    async def test_steps_before_initialize_are_dropped(self, accumulator, memory_store):
        accumulator.log_llm_usage(prompt_tokens=10, completion_tokens=5)
        accumulator.add_step(UsageStep(step_name="llm_call"))

        assert accumulator.log is None
        assert await accumulator.finalize_and_save() is None
        assert len(memory_store) == 0

    @pytest.mark.asyncio
    async def test_initialize_only_once(self, accumulator):
        accumulator.initialize("sess-1", "msg-1")
        first = accumulator.log
        accumulator.initialize("sess-2", "msg-2")
        assert accumulator.log is first
        assert accumulator.log.session_id == "sess-1"

    @pytest.mark.asyncio
    async def test_finalize_seals(self, accumulator, memory_store):
        accumulator.initialize("sess-1", "msg-1")
        await accumulator.finalize_and_save()

        assert accumulator.state == AccumulatorState.SEALED
        accumulator.log_llm_usage(prompt_tokens=1, completion_tokens=1)
        assert await accumulator.finalize_and_save() is None
        assert len(memory_store) == 1

    @pytest.mark.asyncio
    async def test_execution_time_from_clock(self, memory_store, metrics):
        clock = FakeClock()
        accumulator = UsageAccumulator(memory_store, metrics=metrics, clock=clock)
        accumulator.initialize("sess-1", "msg-1")
        clock.now += 1.5

        log = await accumulator.finalize_and_save()
        assert log.total_execution_time == 1500

    @pytest.mark.asyncio
    async def test_persist_failure_is_swallowed(self, metrics):
        store = MagicMock()
        store.name = "broken"
        store.persist = AsyncMock(side_effect=PersistenceError("broken", "disk full"))
        accumulator = UsageAccumulator(store, metrics=metrics)
        accumulator.initialize("sess-1", "msg-1")

        assert await accumulator.finalize_and_save() is None
        assert sample_value(metrics, "chatusage_persist_failures_total", {"store": "broken"}) == 1

    @pytest.mark.asyncio
    async def test_success_reports_token_metrics(self, accumulator, metrics):
        accumulator.initialize("sess-1", "msg-1", model="openai/gpt-4o")
        accumulator.log_llm_usage(prompt_tokens=30, completion_tokens=12)
        await accumulator.finalize_and_save()

        labels = {"model": "openai/gpt-4o", "type": "prompt"}
        assert sample_value(metrics, "chatusage_tokens_total", labels) == 30

    @pytest.mark.asyncio
    async def test_metrics_failure_after_persist(self, memory_store, broken_metrics):
        accumulator = UsageAccumulator(memory_store, metrics=broken_metrics)
        accumulator.initialize("sess-1", "msg-1", model="openai/gpt-4o")
        accumulator.log_llm_usage(prompt_tokens=30, completion_tokens=12)

        log = await accumulator.finalize_and_save()

        assert log is not None
        assert log.total_tokens == 42
        assert len(memory_store) == 1
        broken_metrics.record_tokens.assert_called_once()

    @pytest.mark.asyncio
    async def test_metrics_failure_after_persist_error(self, broken_metrics):
        store = MagicMock()
        store.name = "broken"
        store.persist = AsyncMock(side_effect=OSError("disk full"))
        accumulator = UsageAccumulator(store, metrics=broken_metrics)
        accumulator.initialize("sess-1", "msg-1")

        assert await accumulator.finalize_and_save() is None
        broken_metrics.record_persist_failure.assert_called_once_with("broken")

    def test_recorder_errors_are_swallowed(self, accumulator):
        accumulator.initialize("sess-1", "msg-1")
        accumulator.log_cleaning(None)
        assert accumulator.log.step_count == 0

    def test_tool_call_result_sizes(self, accumulator, estimator):
        accumulator.initialize("sess-1", "msg-1")
        accumulator.log_tool_call_result("search", "x" * 98, execution_time=42, args={"q": "lisbon"})

        step = accumulator.log.steps[0]
        assert step.step_name == StepName.TOOL_CALL.value
        assert step.tool_call_results[0].result_size == 100
        assert step.tool_call_results[0].execution_time == 42
        assert step.additional_data["estimated_tokens_from_result"] == 25
        assert step.actual_content.tool_calls[0]["args"] == {"q": "lisbon"}

    def test_system_prompt_breakdown(self, accumulator):
        accumulator.initialize("sess-1", "msg-1")
        accumulator.log_system_prompt_breakdown(
            user_system_prompt="Be brief.",
            mcp_customizations="Use tools.",
            full_prompt="Be brief.\n\nUse tools.",
        )

        step = accumulator.log.steps[0]
        assert step.prompt_size_breakdown.user_system_prompt == 9
        assert step.prompt_size_breakdown.mcp_customizations == 10
        assert step.system_prompt_size == 21
        assert step.actual_content.system_prompt == "Be brief.\n\nUse tools."

    def test_cleaning_and_limitation_steps(self, accumulator):
        accumulator.initialize("sess-1", "msg-1")
        cleaning = ContentCleaner().clean([tool_message(["x" * 1198])])
        limitation = ConversationLimiter(max_tokens=100).limit_conversation(
            [text_message(Role.USER, 400), text_message(Role.USER, 400)]
        )
        accumulator.log_cleaning(cleaning)
        accumulator.log_limitation(limitation, max_tokens=100, limitation_time_ms=3)

        clean_step, limit_step = accumulator.log.steps
        assert clean_step.additional_data["removed_tool_results_size"] == 1200
        assert limit_step.messages_count == 1
        assert limit_step.additional_data["max_tokens_allowed"] == 100
        assert limit_step.additional_data["limitation_time"] == 3

    def test_summarization_step(self, accumulator):
        accumulator.initialize("sess-1", "msg-1")
        result = SummarizationResult(
            messages=[ChatMessage(role=Role.SYSTEM, content="[Conversation Summary: x]")],
            summary=ConversationSummary(summary="x", original_message_count=8, tokens_saved=900),
            summarization_time_ms=12,
        )
        accumulator.log_summarization(result)

        data = accumulator.log.steps[0].additional_data
        assert data["messages_compressed"] == 8
        assert data["tokens_saved"] == 900
        assert data["summary"] == "x"

    def test_content_capture_off(self, memory_store, metrics):
        accumulator = UsageAccumulator(memory_store, capture_content=False, metrics=metrics)
        accumulator.initialize("sess-1", "msg-1")
        accumulator.log_user_messages([ChatMessage(role=Role.USER, content="secret")])
        accumulator.log_final_response("also secret")
        accumulator.log_full_conversation_context(
            "system", [ChatMessage(role=Role.USER, content="secret")], "also secret", Usage(100, 10)
        )

        log = accumulator.log
        assert all(step.actual_content is None for step in log.steps)
        assert log.steps[0].messages_count == 1
        context = log.full_conversation_context
        assert context.final_response == ""
        assert context.messages == []
        assert context.tokens_breakdown.total == 110

    def test_full_context_breakdown(self, accumulator):
        accumulator.initialize("sess-1", "msg-1")
        messages = [ChatMessage(role=Role.USER, content="u" * 400)]
        accumulator.log_full_conversation_context("s" * 200, messages, "done", Usage(500, 40))

        breakdown = accumulator.log.full_conversation_context.tokens_breakdown
        assert breakdown.system_prompt_actual == 50
        assert breakdown.messages_content_actual == 100
        assert breakdown.tools_and_overhead_actual == 350
        assert breakdown.response_actual == 40
        assert breakdown.total == 540
        assert accumulator.log.steps[-1].step_name == StepName.TOKEN_BREAKDOWN_ANALYSIS.value

    def test_overhead_residual_clamped(self, accumulator):
        accumulator.initialize("sess-1", "msg-1")
        messages = [ChatMessage(role=Role.USER, content="u" * 4000)]
        accumulator.log_full_conversation_context("", messages, "", Usage(10, 1))

        breakdown = accumulator.log.full_conversation_context.tokens_breakdown
        assert breakdown.tools_and_overhead_actual == 0


# ============================================================
# Aggregation
# ============================================================

class TestUsageAggregator:

    @pytest.fixture
    def aggregator(self):
        return UsageAggregator()

    def test_empty_summary_is_zero(self, aggregator):
        summary = aggregator.summarize([])
        assert summary.to_dict() == {
            "total_tokens": 0,
            "prompt_tokens": 0,
            "completion_tokens": 0,
            "total_requests": 0,
            "unique_sessions": 0,
            "average_tokens_per_request": 0,
            "peak_token_usage": 0,
        }

    def test_summary(self, aggregator):
        logs = [make_log("a", 100), make_log("a", 300), make_log("b", 201)]
        summary = aggregator.summarize(logs)

        assert summary.total_tokens == 601
        assert summary.total_requests == 3
        assert summary.unique_sessions == 2
        assert summary.average_tokens_per_request == 200
        assert summary.peak_token_usage == 300

    def test_rounded_average_half_up(self):
        assert rounded_average(3, 2) == 2
        assert rounded_average(5, 4) == 1
        assert rounded_average(10, 0) == 0

    def test_high_usage_sessions(self, aggregator):
        logs = [make_log("a", 500), make_log("b", 1200), make_log("c", 5000)]
        rows = aggregator.high_usage_sessions(logs, limit=10, min_tokens=1000)

        assert [r.total_tokens for r in rows] == [5000, 1200]
        assert [r.session_id for r in rows] == ["c", "b"]

    def test_high_usage_sums_session(self, aggregator):
        logs = [
            make_log("a", 600, timestamp=NOW - timedelta(minutes=5)),
            make_log("a", 600),
            make_log("b", 1000),
        ]
        rows = aggregator.high_usage_sessions(logs, limit=1, min_tokens=1000)

        assert len(rows) == 1
        assert rows[0].session_id == "a"
        assert rows[0].message_count == 2
        assert rows[0].peak_token_usage == 600
        assert rows[0].last_activity == NOW

    def test_model_usage_ranked(self, aggregator):
        logs = [
            make_log("a", 100, model="openai/gpt-4o-mini"),
            make_log("b", 900, model="anthropic/claude-3-5-sonnet"),
            make_log("c", 50, model="openai/gpt-4o-mini"),
        ]
        rows = aggregator.model_usage(logs)

        assert [r.model for r in rows] == ["anthropic/claude-3-5-sonnet", "openai/gpt-4o-mini"]
        assert rows[1].total_requests == 2
        assert rows[1].average_tokens_per_request == 75

    def test_hourly_buckets(self, aggregator):
        logs = [
            make_log("a", 100, timestamp=NOW.replace(hour=10, minute=5)),
            make_log("a", 200, timestamp=NOW.replace(hour=10, minute=55)),
            make_log("b", 300, timestamp=NOW.replace(hour=8, minute=0)),
        ]
        buckets = aggregator.buckets(logs, BucketSize.HOUR)

        assert [b.label for b in buckets] == ["2024-01-15 08:00:00", "2024-01-15 10:00:00"]
        assert [b.tokens for b in buckets] == [300, 300]
        assert [b.requests for b in buckets] == [1, 2]

    def test_latest_buckets(self, aggregator):
        logs = [make_log("a", 10 * i, timestamp=NOW - timedelta(minutes=i)) for i in range(1, 6)]
        buckets = aggregator.latest_buckets(logs, BucketSize.MINUTE, 2)

        assert [b.tokens for b in buckets] == [20, 10]
        assert buckets[0].bucket_start < buckets[1].bucket_start

    def test_session_summary(self, aggregator):
        logs = [
            make_log("a", 100, tools=["search"], timestamp=NOW),
            make_log("a", 300, tools=["search", "weather"], timestamp=NOW - timedelta(minutes=1)),
        ]
        summary = aggregator.session_summary("a", logs)

        assert summary.total_messages == 2
        assert summary.total_tokens == 400
        assert summary.average_tokens_per_message == 200
        assert summary.peak_token_usage == 300
        assert summary.most_used_tools == {"search": 2, "weather": 1}
        assert summary.messages[0].timestamp < summary.messages[1].timestamp

    def test_session_summary_from_messages_is_recomputed(self):
        line = MessageSummary(message_id="m1", timestamp=NOW, total_tokens=10, tool_usage={"x": 1})
        summary = SessionSummary.from_messages("s", [line, MessageSummary.from_dict(line.to_dict())])
        assert summary.total_tokens == 20
        assert summary.most_used_tools == {"x": 2}

    def test_daily_stats(self, aggregator):
        day = date(2024, 1, 14)
        logs = [
            make_log("a", 100, timestamp=datetime(2024, 1, 14, 1, tzinfo=timezone.utc)),
            make_log("b", 200, timestamp=datetime(2024, 1, 14, 23, 59, tzinfo=timezone.utc)),
            make_log("c", 400, timestamp=datetime(2024, 1, 15, 0, 0, tzinfo=timezone.utc)),
        ]
        stats = aggregator.daily_stats(logs, day)
        assert (stats.total_tokens, stats.total_requests, stats.unique_sessions) == (300, 2, 2)


class TestUsageFilters:

    def test_relative_window(self):
        logs = [
            make_log("a", 1, timestamp=NOW - timedelta(minutes=30)),
            make_log("b", 1, timestamp=NOW - timedelta(hours=2)),
        ]
        filtered = UsageAggregator().filter(logs, UsageFilters(time_range=TimeRange.LAST_HOUR), now=NOW)
        assert [log.session_id for log in filtered] == ["a"]

    def test_custom_range_inclusive(self):
        filters = UsageFilters(time_range=TimeRange.CUSTOM, start=NOW - timedelta(hours=1), end=NOW)
        bounds = filters.resolve()
        assert filters.matches(make_log(timestamp=NOW), bounds)
        assert filters.matches(make_log(timestamp=NOW - timedelta(hours=1)), bounds)

    def test_custom_range_requires_bounds(self):
        with pytest.raises(InvalidTimeRangeError):
            UsageFilters(time_range=TimeRange.CUSTOM, start=NOW).resolve()

    def test_inverted_range_rejected(self):
        filters = UsageFilters(time_range=TimeRange.CUSTOM, start=NOW, end=NOW - timedelta(days=1))
        with pytest.raises(InvalidTimeRangeError):
            filters.resolve()

    def test_user_and_session_filters(self):
        filters = UsageFilters(user_id="u1", session_id="s1")
        bounds = filters.resolve()
        assert filters.matches(make_log("s1", user_id="u1"), bounds)
        assert not filters.matches(make_log("s1", user_id="u2"), bounds)
        assert not filters.matches(make_log("s2", user_id="u1"), bounds)


# ============================================================
# Analytics service
# ============================================================

class TestUsageAnalytics:

    @pytest.mark.asyncio
    async def test_store_failure_returns_zeros(self):
        store = MagicMock()
        store.name = "broken"
        store.token_usage_summary = AsyncMock(side_effect=ConnectionError("db down"))
        store.high_usage_sessions = AsyncMock(side_effect=ConnectionError("db down"))
        store.session_analytics = AsyncMock(side_effect=ConnectionError("db down"))

        analytics = UsageAnalytics(store)

        assert (await analytics.token_usage_summary()).total_tokens == 0
        assert await analytics.high_usage_sessions() == []
        session = await analytics.session_analytics("s1")
        assert session.logs == []
        assert session.to_dict()["summary"]["total_messages"] == 0

    @pytest.mark.asyncio
    async def test_invalid_range_propagates(self, memory_store):
        analytics = UsageAnalytics(memory_store)
        with pytest.raises(InvalidTimeRangeError):
            await analytics.token_usage_summary(UsageFilters(time_range=TimeRange.CUSTOM))

    @pytest.mark.asyncio
    async def test_dashboard(self, memory_store):
        await memory_store.persist(make_log("a", 12000, timestamp=NOW - timedelta(seconds=30)))
        await memory_store.persist(make_log("b", 500, timestamp=NOW - timedelta(days=2)))

        dashboard = await UsageAnalytics(memory_store).dashboard()

        assert dashboard["last_minute"]["total_tokens"] == 12000
        assert dashboard["last_hour"]["total_requests"] == 1
        assert dashboard["last_week"]["total_tokens"] == 12500
        assert [s["session_id"] for s in dashboard["high_usage_sessions"]] == ["a"]
        assert len(dashboard["hourly_usage"]) == 2
        assert len(dashboard["minute_usage"]) == 2

    @pytest.mark.asyncio
    async def test_dashboard_user_filter(self, memory_store):
        await memory_store.persist(make_log("a", 100, user_id="u1"))
        await memory_store.persist(make_log("b", 200, user_id="u2"))

        dashboard = await UsageAnalytics(memory_store).dashboard(user_id="u2")
        assert dashboard["last_minute"]["total_tokens"] == 200

    @pytest.mark.asyncio
    async def test_daily_stats_saved(self, memory_store):
        await memory_store.persist(make_log("a", 100, timestamp=NOW - timedelta(days=1)))
        stats = await UsageAnalytics(memory_store).update_daily_stats()

        assert stats.day == date(2024, 1, 14)
        assert stats.total_tokens == 100
        assert memory_store.daily_stats[date(2024, 1, 14)] is stats
