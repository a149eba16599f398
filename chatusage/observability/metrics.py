"""
chatusage - Prometheus Metrics

Usage-pipeline metrics collected with the Prometheus client library.

Metrics exposed:
- chatusage_turns_total: Counter of chat turns by model and outcome
- chatusage_tokens_total: Counter of tokens by model and type (prompt/completion)
- chatusage_context_tokens_saved_total: Tokens removed by each context transform
- chatusage_persist_failures_total: Failed usage-log writes by store
- chatusage_turn_duration_seconds: Histogram of turn wall-clock time

Usage:
    from chatusage.observability.metrics import get_metrics, metrics_endpoint

    metrics = get_metrics()
    metrics.record_tokens(model="anthropic/claude-3-5-haiku", prompt_tokens=500, completion_tokens=120)

    @app.get("/metrics")
    async def metrics():
        return metrics_endpoint()
"""

from typing import Optional

from prometheus_client import (
    Counter,
    Histogram,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY,
)
from fastapi import Response


class UsageMetrics:
    """
    Central metrics collector for the usage pipeline.

    One instance per registry; use get_metrics() for the global one.
    """

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.registry = registry

        self.turns_total = Counter(
            "chatusage_turns_total",
            "Total number of instrumented chat turns",
            labelnames=["model", "outcome"],  # outcome = success/error/cancelled
            registry=registry,
        )

        self.tokens_total = Counter(
            "chatusage_tokens_total",
            "Total tokens reported by providers",
            labelnames=["model", "type"],  # type = prompt/completion
            registry=registry,
        )

        self.tokens_saved_total = Counter(
            "chatusage_context_tokens_saved_total",
            "Estimated tokens removed by context reduction",
            labelnames=["transform"],  # cleaning/limitation/summarization
            registry=registry,
        )

        self.persist_failures_total = Counter(
            "chatusage_persist_failures_total",
            "Usage log writes that failed",
            labelnames=["store"],
            registry=registry,
        )

        # Chat turns range from sub-second to minutes with tool loops
        self.turn_duration = Histogram(
            "chatusage_turn_duration_seconds",
            "Chat turn duration in seconds",
            labelnames=["model"],
            buckets=(0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 25.0, 50.0, 100.0, float("inf")),
            registry=registry,
        )

    def record_turn(self, model: str, outcome: str, duration_seconds: float):
        """Record a finished chat turn."""
        self.turns_total.labels(model=model or "unknown", outcome=outcome).inc()
        self.turn_duration.labels(model=model or "unknown").observe(duration_seconds)

    def record_tokens(self, model: str, prompt_tokens: int, completion_tokens: int):
        """Record provider-reported token usage."""
        model = model or "unknown"
        self.tokens_total.labels(model=model, type="prompt").inc(max(0, prompt_tokens))
        self.tokens_total.labels(model=model, type="completion").inc(max(0, completion_tokens))

    def record_tokens_saved(self, transform: str, tokens: int):
        """Record tokens removed by a context transform."""
        if tokens > 0:
            self.tokens_saved_total.labels(transform=transform).inc(tokens)

    def record_persist_failure(self, store: str):
        self.persist_failures_total.labels(store=store).inc()


_metrics_instance: Optional[UsageMetrics] = None


def setup_metrics(registry: CollectorRegistry = REGISTRY) -> UsageMetrics:
    """
    Setup metrics collection.

    Safe to call multiple times with the same registry.
    """
    global _metrics_instance

    if _metrics_instance is not None and _metrics_instance.registry is registry:
        return _metrics_instance

    _metrics_instance = UsageMetrics(registry)
    return _metrics_instance


def get_metrics() -> UsageMetrics:
    """Get the metrics collector, creating it on the default registry."""
    if _metrics_instance is None:
        return setup_metrics()
    return _metrics_instance


def metrics_endpoint() -> Response:
    """Prometheus exposition for the active registry."""
    content = generate_latest(get_metrics().registry)
    return Response(
        content=content,
        media_type=CONTENT_TYPE_LATEST,
    )
