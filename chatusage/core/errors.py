"""
chatusage - Error Definitions

Error taxonomy with infra vs semantic classification.

Infra errors (store unavailable, provider failures) are retryable and are
absorbed by the instrumentation layer. Semantic errors (bad query input)
are surfaced to API clients as 4xx responses.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx


class ErrorType(str, Enum):
    """Error classification."""
    INFRA = "infra_error"
    SEMANTIC = "semantic_error"


@dataclass
class ErrorDetails:
    """Full error information for API response."""
    code: str
    message: str
    type: ErrorType

    provider: Optional[str] = None
    param: Optional[str] = None
    store: Optional[str] = None

    retryable: bool = False
    retry_after: Optional[int] = None

    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "code": self.code,
            "message": self.message,
            "type": self.type.value,
            "retryable": self.retryable,
        }

        if self.provider:
            result["provider"] = self.provider
        if self.param:
            result["param"] = self.param
        if self.store:
            result["store"] = self.store
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        if self.details:
            result["details"] = self.details

        return {"error": result}


class UsageException(Exception):
    """Base exception for all chatusage errors."""

    def __init__(self, error: ErrorDetails, status_code: int = 500):
        self.error = error
        self.status_code = status_code
        super().__init__(error.message)


# ============================================================
# Infra Errors (Retryable)
# ============================================================

class InfraError(UsageException):
    """Base class for infrastructure errors."""
    pass


class PersistenceError(InfraError):
    """A usage log could not be written."""

    def __init__(self, store: str, message: str = ""):
        super().__init__(
            ErrorDetails(
                code="persistence_failed",
                message=message or f"Failed to persist usage log to {store} store",
                type=ErrorType.INFRA,
                store=store,
                retryable=True,
            ),
            status_code=503
        )


class StoreUnavailableError(InfraError):
    """The usage store is not configured or not connected."""

    def __init__(self, store: str, message: str = ""):
        super().__init__(
            ErrorDetails(
                code="store_unavailable",
                message=message or f"{store} usage store is not available",
                type=ErrorType.INFRA,
                store=store,
                retryable=True,
                retry_after=5,
            ),
            status_code=503
        )


class UpstreamError(InfraError):
    """Auxiliary model provider returned an error or could not be reached."""

    def __init__(self, provider: str, status_code: int = 502, message: str = ""):
        super().__init__(
            ErrorDetails(
                code="upstream_error",
                message=message or f"{provider} returned error {status_code}",
                type=ErrorType.INFRA,
                provider=provider,
                retryable=status_code >= 500 or status_code == 429,
                details={"upstream_status": status_code},
            ),
            status_code=502
        )


class SummarizationError(InfraError):
    """The auxiliary model produced no usable summary."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(
            ErrorDetails(
                code="summarization_failed",
                message=message,
                type=ErrorType.INFRA,
                provider=provider,
                retryable=True,
            ),
            status_code=502
        )


# ============================================================
# Semantic Errors (Client must fix request)
# ============================================================

class SemanticError(UsageException):
    """Base class for semantic errors."""
    pass


class InvalidTimeRangeError(SemanticError):
    """Time window filter is incomplete or inverted."""

    def __init__(self, message: str, param: str = "time_range"):
        super().__init__(
            ErrorDetails(
                code="invalid_time_range",
                message=message,
                type=ErrorType.SEMANTIC,
                param=param,
                retryable=False,
            ),
            status_code=400
        )


# ============================================================
# Provider error mapping
# ============================================================

def handle_provider_error(error: Exception, provider: str) -> UsageException:
    """
    Convert an httpx failure from an auxiliary model call to a
    canonical exception.
    """
    if isinstance(error, UsageException):
        return error

    if isinstance(error, httpx.TimeoutException):
        return UpstreamError(provider, 504, f"{provider} did not respond within timeout")

    if isinstance(error, httpx.ConnectError):
        return UpstreamError(provider, 503, f"Failed to connect to {provider}")

    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        try:
            body = error.response.json()
            info = body.get("error", {}) if isinstance(body, dict) else {}
            message = info.get("message", str(error)) if isinstance(info, dict) else str(info)
        except ValueError:
            message = str(error)
        return UpstreamError(provider, status_code, message)

    return UpstreamError(provider, 502, str(error))
