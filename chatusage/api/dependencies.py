"""
chatusage - API Dependencies

Shared dependencies for the analytics routes.
"""

from datetime import datetime
from typing import Callable, Optional

from fastapi import Query

from ..core.errors import StoreUnavailableError
from ..usage.aggregator import TimeRange, UsageFilters
from ..usage.analytics import UsageAnalytics


# Set by the server lifespan
_analytics_getter: Optional[Callable[[], UsageAnalytics]] = None


def set_analytics_getter(getter: Optional[Callable[[], UsageAnalytics]]) -> None:
    """Set the function that returns the analytics service."""
    global _analytics_getter
    _analytics_getter = getter


def get_analytics() -> UsageAnalytics:
    """
    Dependency providing the analytics service.

    Raises:
        StoreUnavailableError: If the server has not finished starting
    """
    if _analytics_getter is None:
        raise StoreUnavailableError("usage", "Usage store not initialized. Server may be starting up.")
    return _analytics_getter()


def get_usage_filters(
    time_range: TimeRange = Query(TimeRange.ALL, description="Query window"),
    start: Optional[datetime] = Query(None, description="Start of a custom range (inclusive)"),
    end: Optional[datetime] = Query(None, description="End of a custom range (inclusive)"),
    user_id: Optional[str] = Query(None),
    session_id: Optional[str] = Query(None),
) -> UsageFilters:
    """Build UsageFilters from query parameters."""
    return UsageFilters(
        time_range=time_range,
        start=start,
        end=end,
        user_id=user_id,
        session_id=session_id,
    )
