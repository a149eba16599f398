"""
chatusage - Pytest Configuration

Configures:
- Integration test markers (skip by default)
- Shared fixtures: estimator, isolated metrics, stores, message and log builders
"""

import os
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from unittest.mock import MagicMock

import pytest
from prometheus_client import CollectorRegistry

from chatusage.context.estimator import TokenEstimator
from chatusage.core.models import ChatMessage, Role, TextPart, ToolInvocationPart, ToolInvocationState
from chatusage.observability.metrics import UsageMetrics
from chatusage.storage.memory import InMemoryUsageStore
from chatusage.usage.models import ToolCallResult, UsageLog, UsageStep


# ============================================================
# Environment Configuration
# ============================================================

def _is_truthy(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.lower() in ("1", "true", "yes", "on")


RUN_INTEGRATION = _is_truthy(os.getenv("RUN_INTEGRATION"))

NOW = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


# ============================================================
# Pytest Markers
# ============================================================

def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (requires RUN_INTEGRATION=1)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless RUN_INTEGRATION=1."""
    skip_integration = pytest.mark.skip(
        reason="Integration test - set RUN_INTEGRATION=1 to run"
    )
    for item in items:
        if "integration" in item.keywords and not RUN_INTEGRATION:
            item.add_marker(skip_integration)


# ============================================================
# Builders
# ============================================================

def text_message(role: Role, size: int, char: str = "a") -> ChatMessage:
    """Message whose content is exactly `size` ASCII bytes."""
    return ChatMessage(role=role, content=char * size)


def tool_message(results: List[str], name_prefix: str = "search") -> ChatMessage:
    """Assistant message with one completed tool invocation per result."""
    parts = [TextPart(text="Looking that up.")]
    for i, result in enumerate(results):
        parts.append(ToolInvocationPart(
            tool_name=f"{name_prefix}_{i}",
            args={"q": i},
            result=result,
            state=ToolInvocationState.RESULT,
        ))
    return ChatMessage(role=Role.ASSISTANT, parts=parts)


def make_log(
    session_id: str = "sess-1",
    total_tokens: int = 100,
    prompt_tokens: Optional[int] = None,
    timestamp: datetime = NOW,
    user_id: Optional[str] = "user-1",
    model: str = "anthropic/claude-3-5-sonnet",
    message_id: Optional[str] = None,
    tools: Optional[List[str]] = None,
) -> UsageLog:
    """Persisted-looking log with a single final LLM step."""
    if prompt_tokens is None:
        prompt_tokens = total_tokens - total_tokens // 4
    completion = total_tokens - prompt_tokens

    log = UsageLog(
        session_id=session_id,
        message_id=message_id or f"msg-{session_id}-{timestamp.isoformat()}",
        user_id=user_id,
        model=model,
        timestamp=timestamp,
    )
    for tool in tools or []:
        log.add_step(UsageStep(
            step_name="tool_call",
            timestamp=timestamp,
            tool_call_results=[ToolCallResult(tool_name=tool, result_size=10, execution_time=5)],
        ))
    log.add_step(UsageStep(
        step_name="final_llm_call",
        timestamp=timestamp,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion,
        total_tokens=total_tokens,
    ))
    return log


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def estimator():
    return TokenEstimator()


@pytest.fixture
def metrics():
    """Metrics on a private registry."""
    return UsageMetrics(CollectorRegistry())


@pytest.fixture
def broken_metrics():
    """Metrics whose every recorder raises."""
    metrics = MagicMock(spec=UsageMetrics)
    for name in ("record_turn", "record_tokens", "record_tokens_saved", "record_persist_failure"):
        getattr(metrics, name).side_effect = RuntimeError("metrics registry unavailable")
    return metrics


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def memory_store(clock):
    return InMemoryUsageStore(clock=clock)


@pytest.fixture
def conversation():
    """System prompt plus alternating user/assistant turns."""
    return [
        ChatMessage(role=Role.SYSTEM, content="You are a helpful assistant."),
        ChatMessage(role=Role.USER, content="Find me a flight to Lisbon."),
        tool_message(['{"flights": 3}']),
        ChatMessage(role=Role.ASSISTANT, content="I found three flights."),
        ChatMessage(role=Role.USER, content="Book the cheapest one."),
    ]


@pytest.fixture
def frozen_timestamps():
    """A spread of timestamps ending at NOW."""
    return [NOW - timedelta(minutes=m) for m in (0, 1, 30, 90, 60 * 26)]
