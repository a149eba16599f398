"""
chatusage - Observability Module

- Structured JSON logging with per-turn context
- Prometheus metrics for tokens, transforms and persistence
- OpenTelemetry spans around pipeline stages
"""

from .logging import (
    StructuredLogger,
    LogContext,
    JSONFormatter,
    TimedOperation,
    get_logger,
    setup_logging,
    log_context,
)
from .metrics import (
    UsageMetrics,
    get_metrics,
    setup_metrics,
    metrics_endpoint,
)
from .tracing import (
    get_tracer,
    setup_tracing,
    start_span,
)

__all__ = [
    "StructuredLogger",
    "LogContext",
    "JSONFormatter",
    "TimedOperation",
    "get_logger",
    "setup_logging",
    "log_context",
    "UsageMetrics",
    "get_metrics",
    "setup_metrics",
    "metrics_endpoint",
    "get_tracer",
    "setup_tracing",
    "start_span",
]
