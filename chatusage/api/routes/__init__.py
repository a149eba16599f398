"""
chatusage - API Routes
"""

from .analytics import router as analytics_router

__all__ = [
    "analytics_router",
]
