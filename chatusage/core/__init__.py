"""
chatusage - Core Module

Message models and the error taxonomy.
"""

from .models import (
    Role,
    ToolInvocationState,
    TextPart,
    ToolInvocationPart,
    UnknownPart,
    MessagePart,
    ChatMessage,
    Usage,
    part_from_dict,
    messages_from_dicts,
    messages_size,
    serialized_size,
    byte_length,
    to_json,
)
from .errors import (
    ErrorType,
    ErrorDetails,
    UsageException,
    InfraError,
    PersistenceError,
    StoreUnavailableError,
    UpstreamError,
    SummarizationError,
    SemanticError,
    InvalidTimeRangeError,
    handle_provider_error,
)

__all__ = [
    "Role",
    "ToolInvocationState",
    "TextPart",
    "ToolInvocationPart",
    "UnknownPart",
    "MessagePart",
    "ChatMessage",
    "Usage",
    "part_from_dict",
    "messages_from_dicts",
    "messages_size",
    "serialized_size",
    "byte_length",
    "to_json",
    "ErrorType",
    "ErrorDetails",
    "UsageException",
    "InfraError",
    "PersistenceError",
    "StoreUnavailableError",
    "UpstreamError",
    "SummarizationError",
    "SemanticError",
    "InvalidTimeRangeError",
    "handle_provider_error",
]
