"""
chatusage - Observability Tests

Covers:
- Structured JSON logging and turn context
- Prometheus metrics on an isolated registry
- Tracing spans
- Request logging middleware
"""

import asyncio
import json
import logging

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from chatusage.api.middleware import RequestLoggingMiddleware
from chatusage.observability.logging import (
    JSONFormatter,
    LogContext,
    TimedOperation,
    get_logger,
    log_context,
)
from chatusage.observability.metrics import UsageMetrics
from chatusage.observability.tracing import start_span


def make_record(msg="hello", **fields):
    record = logging.LogRecord(
        name="chatusage.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in fields.items():
        setattr(record, key, value)
    return record


@pytest.fixture(autouse=True)
def clear_context():
    LogContext.clear()
    yield
    LogContext.clear()


# ============================================================
# Logging
# ============================================================

class TestJSONFormatter:

    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(make_record()))
        assert data["level"] == "INFO"
        assert data["logger"] == "chatusage.test"
        assert data["message"] == "hello"
        assert "timestamp" in data

    def test_extra_fields(self):
        data = json.loads(JSONFormatter().format(make_record(total_tokens=620)))
        assert data["total_tokens"] == 620

    def test_redacts_sensitive_fields(self):
        data = json.loads(JSONFormatter().format(make_record(api_key="sk-live")))
        assert data["api_key"] == "[REDACTED]"

    def test_redaction_can_be_disabled(self):
        data = json.loads(JSONFormatter(redact_sensitive=False).format(make_record(api_key="sk-live")))
        assert data["api_key"] == "sk-live"

    def test_turn_context_injected(self):
        LogContext.set_current(LogContext(session_id="s-1", message_id="m-1"))
        data = json.loads(JSONFormatter().format(make_record()))
        assert data["session_id"] == "s-1"
        assert data["message_id"] == "m-1"
        assert "user_id" not in data

    def test_location(self):
        data = json.loads(JSONFormatter(include_location=True).format(make_record()))
        assert data["location"].endswith(":10")


class TestStructuredLogger:

    def test_kwargs_become_fields(self, caplog):
        logger = get_logger("chatusage.test.structured")
        with caplog.at_level(logging.INFO, logger="chatusage.test.structured"):
            logger.info("Chat usage log saved", total_tokens=620, step_count=9)

        record = caplog.records[-1]
        assert record.total_tokens == 620
        assert record.step_count == 9

    def test_log_context_decorator(self):
        @log_context(operation="daily_rollup")
        async def rollup():
            return LogContext.get_current()

        ctx = asyncio.run(rollup())
        assert ctx.to_dict()["operation"] == "daily_rollup"

    def test_timed_operation(self):
        with TimedOperation("conversation_limitation") as timer:
            pass
        assert timer.duration_ms is not None
        assert timer.duration_ms >= 0


# ============================================================
# Metrics
# ============================================================

class TestUsageMetrics:

    @pytest.fixture
    def registry(self):
        return CollectorRegistry()

    def test_turns(self, registry):
        metrics = UsageMetrics(registry)
        metrics.record_turn("openai/gpt-4o", "success", 1.2)
        metrics.record_turn("", "error", 0.1)

        assert registry.get_sample_value(
            "chatusage_turns_total", {"model": "openai/gpt-4o", "outcome": "success"}
        ) == 1
        assert registry.get_sample_value(
            "chatusage_turns_total", {"model": "unknown", "outcome": "error"}
        ) == 1
        assert registry.get_sample_value(
            "chatusage_turn_duration_seconds_count", {"model": "openai/gpt-4o"}
        ) == 1

    def test_tokens(self, registry):
        metrics = UsageMetrics(registry)
        metrics.record_tokens("openai/gpt-4o", 500, 120)

        assert registry.get_sample_value(
            "chatusage_tokens_total", {"model": "openai/gpt-4o", "type": "completion"}
        ) == 120

    def test_tokens_saved_ignores_zero(self, registry):
        metrics = UsageMetrics(registry)
        metrics.record_tokens_saved("cleaning", 0)
        metrics.record_tokens_saved("limitation", 1200)

        assert registry.get_sample_value(
            "chatusage_context_tokens_saved_total", {"transform": "cleaning"}
        ) is None
        assert registry.get_sample_value(
            "chatusage_context_tokens_saved_total", {"transform": "limitation"}
        ) == 1200

    def test_persist_failures(self, registry):
        metrics = UsageMetrics(registry)
        metrics.record_persist_failure("postgres")
        assert registry.get_sample_value(
            "chatusage_persist_failures_total", {"store": "postgres"}
        ) == 1


# ============================================================
# Tracing
# ============================================================

class TestTracing:

    def test_span_yields(self):
        with start_span("context.clean", {"chat.session_id": "s-1", "skipped": None}) as span:
            assert span is not None

    def test_span_reraises(self):
        with pytest.raises(ValueError):
            with start_span("model_call"):
                raise ValueError("boom")


# ============================================================
# Middleware
# ============================================================

@pytest.fixture
def middleware_client():
    app = FastAPI()
    app.add_middleware(RequestLoggingMiddleware)

    @app.get("/ping")
    async def ping():
        return {"request_id": LogContext.get_current().request_id}

    @app.get("/health")
    async def health():
        return {"ok": True}

    return TestClient(app)


class TestRequestLoggingMiddleware:

    def test_generates_request_id(self, middleware_client):
        response = middleware_client.get("/ping")
        request_id = response.headers["X-Request-Id"]

        assert request_id.startswith("req_")
        assert response.json()["request_id"] == request_id
        assert int(response.headers["X-Duration-Ms"]) >= 0

    def test_propagates_request_id(self, middleware_client):
        response = middleware_client.get("/ping", headers={"X-Request-Id": "req-abc"})
        assert response.headers["X-Request-Id"] == "req-abc"

    def test_excluded_paths(self, middleware_client):
        response = middleware_client.get("/health")
        assert "X-Request-Id" not in response.headers
