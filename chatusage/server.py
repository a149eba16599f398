"""
chatusage - Analytics API Server

FastAPI app serving usage analytics from the configured UsageStore.

Features:
- /v1/usage analytics endpoints
- Health check reporting the active store
- Prometheus metrics at /metrics
- Structured JSON logging and OpenTelemetry spans
"""

import uuid
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from . import __version__
from .api import RequestLoggingMiddleware, analytics_router, set_analytics_getter
from .api.models import HealthResponse
from .config import UsageSettings
from .core.errors import UsageException
from .observability import (
    get_logger,
    metrics_endpoint,
    setup_logging,
    setup_metrics,
    setup_tracing,
)
from .storage import UsageStore, create_store
from .usage.analytics import UsageAnalytics


def create_app(
    store: Optional[UsageStore] = None,
    settings: Optional[UsageSettings] = None,
) -> FastAPI:
    """
    Build the API app.

    The store is taken as given or built from settings (read from the
    environment when not passed) when the app starts.
    """
    state = {"store": store, "analytics": None}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        resolved = settings or UsageSettings.from_env()
        setup_logging(level=resolved.log_level, json_output=resolved.log_json)
        setup_metrics()
        setup_tracing(service_name="chatusage", service_version=__version__)

        logger = get_logger("chatusage.server")

        usage_store = state["store"] or create_store(resolved)
        await usage_store.connect()
        state["store"] = usage_store
        state["analytics"] = UsageAnalytics(usage_store)
        set_analytics_getter(lambda: state["analytics"])

        logger.info("chatusage server ready", store=usage_store.name, version=__version__)

        yield

        set_analytics_getter(None)
        await usage_store.close()
        logger.info("chatusage server stopped")

    app = FastAPI(
        title="chatusage",
        description="Token usage analytics for instrumented chat turns",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(analytics_router)

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        usage_store = state["store"]
        return {
            "status": "healthy" if state["analytics"] is not None else "starting",
            "version": __version__,
            "store": usage_store.name if usage_store is not None else "none",
        }

    @app.get("/metrics")
    async def prometheus_metrics():
        """Prometheus metrics in text exposition format."""
        return metrics_endpoint()

    @app.exception_handler(UsageException)
    async def usage_exception_handler(request: Request, exc: UsageException):
        headers = {
            "X-Error-Type": exc.error.type.value,
            "X-Error-Code": exc.error.code,
        }
        if exc.error.retry_after:
            headers["Retry-After"] = str(exc.error.retry_after)

        return JSONResponse(
            status_code=exc.status_code,
            content=exc.error.to_dict(),
            headers=headers,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "code": "http_error",
                    "message": message,
                    "type": "semantic_error" if exc.status_code < 500 else "infra_error",
                    "retryable": exc.status_code >= 500,
                }
            },
            headers={"X-Request-Id": request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:24]}"},
        )

    return app


def main() -> None:
    """Run the server with uvicorn."""
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
