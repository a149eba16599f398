"""
chatusage - API Layer

Analytics endpoints under /v1/usage.
"""

from .dependencies import (
    get_analytics,
    get_usage_filters,
    set_analytics_getter,
)
from .middleware import RequestLoggingMiddleware
from .routes import analytics_router

__all__ = [
    "analytics_router",
    "get_analytics",
    "get_usage_filters",
    "set_analytics_getter",
    "RequestLoggingMiddleware",
]
