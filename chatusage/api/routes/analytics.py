"""
chatusage - Usage Analytics API

Read endpoints for token usage dashboards, plus the daily rollup trigger.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ...storage.base import (
    DEFAULT_HIGH_USAGE_LIMIT,
    DEFAULT_HIGH_USAGE_MIN_TOKENS,
    DEFAULT_SESSION_LOG_LIMIT,
)
from ...usage.aggregator import UsageFilters
from ...usage.analytics import UsageAnalytics
from ..dependencies import get_analytics, get_usage_filters
from ..models import (
    DailyStatsRequest,
    DailyUsageStatsResponse,
    DashboardResponse,
    ModelUsageResponse,
    SessionAnalyticsResponse,
    SessionUsageResponse,
    TokenUsageSummaryResponse,
    UsageBucketResponse,
)


router = APIRouter(prefix="/v1/usage", tags=["usage"])


@router.get("/summary", response_model=TokenUsageSummaryResponse)
async def token_usage_summary(
    filters: UsageFilters = Depends(get_usage_filters),
    analytics: UsageAnalytics = Depends(get_analytics),
):
    """
    Token totals for a time window.

    **Example:**
    ```
    GET /v1/usage/summary?time_range=last_day&user_id=u1
    ```
    """
    summary = await analytics.token_usage_summary(filters)
    return summary.to_dict()


@router.get("/sessions/high-usage", response_model=List[SessionUsageResponse])
async def high_usage_sessions(
    limit: int = Query(DEFAULT_HIGH_USAGE_LIMIT, ge=1, le=1000),
    min_tokens: int = Query(DEFAULT_HIGH_USAGE_MIN_TOKENS, ge=0),
    filters: UsageFilters = Depends(get_usage_filters),
    analytics: UsageAnalytics = Depends(get_analytics),
):
    """Sessions whose summed tokens reach min_tokens, largest first."""
    sessions = await analytics.high_usage_sessions(limit=limit, min_tokens=min_tokens, filters=filters)
    return [s.to_dict() for s in sessions]


@router.get("/sessions/{session_id}", response_model=SessionAnalyticsResponse)
async def session_analytics(
    session_id: str,
    limit: int = Query(DEFAULT_SESSION_LOG_LIMIT, ge=1, le=1000),
    analytics: UsageAnalytics = Depends(get_analytics),
):
    """Ordered logs of one session (oldest first) plus its cumulative summary."""
    result = await analytics.session_analytics(session_id, limit=limit)
    return result.to_dict(include_steps=False)


@router.get("/models", response_model=List[ModelUsageResponse])
async def model_usage(
    filters: UsageFilters = Depends(get_usage_filters),
    analytics: UsageAnalytics = Depends(get_analytics),
):
    models = await analytics.model_usage_summary(filters)
    return [m.to_dict() for m in models]


@router.get("/hourly", response_model=List[UsageBucketResponse])
async def hourly_usage(
    hours: int = Query(24, ge=1, le=24 * 90),
    analytics: UsageAnalytics = Depends(get_analytics),
):
    buckets = await analytics.hourly_usage(hours)
    return [b.to_dict() for b in buckets]


@router.get("/hourly/latest", response_model=List[UsageBucketResponse])
async def latest_hourly_usage(
    limit: int = Query(24, ge=1, le=1000),
    analytics: UsageAnalytics = Depends(get_analytics),
):
    buckets = await analytics.latest_hourly_usage(limit)
    return [b.to_dict() for b in buckets]


@router.get("/minute", response_model=List[UsageBucketResponse])
async def minute_usage(
    minutes: int = Query(60, ge=1, le=60 * 24),
    analytics: UsageAnalytics = Depends(get_analytics),
):
    buckets = await analytics.minute_usage(minutes)
    return [b.to_dict() for b in buckets]


@router.get("/minute/latest", response_model=List[UsageBucketResponse])
async def latest_minute_usage(
    limit: int = Query(60, ge=1, le=1000),
    analytics: UsageAnalytics = Depends(get_analytics),
):
    buckets = await analytics.latest_minute_usage(limit)
    return [b.to_dict() for b in buckets]


@router.get("/dashboard", response_model=DashboardResponse)
async def dashboard(
    user_id: Optional[str] = Query(None),
    analytics: UsageAnalytics = Depends(get_analytics),
):
    """Last minute, hour and week summaries with top sessions and latest buckets."""
    return await analytics.dashboard(user_id=user_id)


@router.post("/daily-stats", response_model=DailyUsageStatsResponse)
async def update_daily_stats(
    request: Optional[DailyStatsRequest] = None,
    analytics: UsageAnalytics = Depends(get_analytics),
):
    """Upsert a day's rollup (yesterday, UTC, unless a day is given)."""
    stats = await analytics.update_daily_stats(request.day if request else None)
    return stats.to_dict()
