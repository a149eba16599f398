"""
chatusage - OpenTelemetry Tracing

Spans around each stage of the chat-turn pipeline.

Usage:
    from chatusage.observability.tracing import setup_tracing, start_span

    setup_tracing(service_name="chatusage", console_export=True)

    with start_span("conversation_limitation", {"max_tokens": 8000}) as span:
        ...
"""

import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION
from opentelemetry.trace import Status, StatusCode


TRACER_NAME = "chatusage"

_provider: Optional[TracerProvider] = None


def setup_tracing(
    service_name: str = "chatusage",
    service_version: str = "1.0.0",
    console_export: bool = False,
) -> TracerProvider:
    """
    Install a tracer provider.

    Call once at startup. Without it spans go to the no-op provider.
    """
    global _provider

    if _provider is not None:
        return _provider

    resource = Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
        "deployment.environment": os.getenv("MODE", "local"),
    })
    _provider = TracerProvider(resource=resource)

    if console_export:
        _provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(_provider)
    return _provider


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(TRACER_NAME)


@contextmanager
def start_span(name: str, attributes: Optional[Dict[str, Any]] = None) -> Iterator[trace.Span]:
    """
    Start a span as current, recording any exception before re-raising.
    """
    with get_tracer().start_as_current_span(name, record_exception=False) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except BaseException as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise
