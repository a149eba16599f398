"""
chatusage - API Request/Response Models

Pydantic models for the analytics API.
"""

from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# ============================================================
# Summaries
# ============================================================

class TokenUsageSummaryResponse(BaseModel):
    """Token totals over a filtered window."""
    total_tokens: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_requests: int = 0
    unique_sessions: int = 0
    average_tokens_per_request: int = 0
    peak_token_usage: int = 0


class ModelUsageResponse(TokenUsageSummaryResponse):
    """Token totals for one model."""
    model: str
    last_used: Optional[datetime] = None


class SessionUsageResponse(BaseModel):
    """One row of the top-sessions ranking."""
    session_id: str
    user_id: Optional[str] = None
    total_tokens: int
    peak_token_usage: int
    message_count: int
    last_activity: datetime


class UsageBucketResponse(BaseModel):
    """Token and request sums for one time bucket."""
    bucket_start: datetime
    label: str
    tokens: int
    requests: int


# ============================================================
# Sessions
# ============================================================

class MessageSummaryResponse(BaseModel):
    message_id: str
    timestamp: datetime
    total_tokens: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    execution_time: int = 0
    step_count: int = 0
    tool_usage: Dict[str, int] = Field(default_factory=dict)


class SessionSummaryResponse(BaseModel):
    session_id: str
    total_messages: int = 0
    total_tokens: int = 0
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    average_tokens_per_message: int = 0
    peak_token_usage: int = 0
    most_used_tools: Dict[str, int] = Field(default_factory=dict)
    messages: List[MessageSummaryResponse] = Field(default_factory=list)


class UsageLogResponse(BaseModel):
    """A persisted turn without its step list."""
    id: str
    session_id: str
    message_id: str
    user_id: Optional[str] = None
    model: str = ""
    timestamp: datetime
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    total_tokens: int = 0
    total_execution_time: int = 0
    request_size: int = 0
    response_size: int = 0


class SessionAnalyticsResponse(BaseModel):
    session_id: str
    logs: List[UsageLogResponse] = Field(default_factory=list)
    summary: SessionSummaryResponse


# ============================================================
# Dashboard and rollups
# ============================================================

class DashboardResponse(BaseModel):
    """Everything the usage dashboard renders, gathered in one call."""
    last_minute: TokenUsageSummaryResponse
    last_hour: TokenUsageSummaryResponse
    last_week: TokenUsageSummaryResponse
    high_usage_sessions: List[SessionUsageResponse] = Field(default_factory=list)
    hourly_usage: List[UsageBucketResponse] = Field(default_factory=list)
    minute_usage: List[UsageBucketResponse] = Field(default_factory=list)


class DailyStatsRequest(BaseModel):
    """Day to roll up; defaults to yesterday (UTC)."""
    day: Optional[date] = None


class DailyUsageStatsResponse(BaseModel):
    day: date = Field(alias="date")
    total_tokens: int = 0
    total_requests: int = 0
    unique_sessions: int = 0


class HealthResponse(BaseModel):
    status: str
    version: str
    store: str
