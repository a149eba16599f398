"""
chatusage - Configuration

Environment-driven settings for the usage pipeline and its stores.
Invalid values fail closed at startup.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional


DEFAULT_MAX_TOKENS = 8000
DEFAULT_KEEP_RECENT_MESSAGES = 6
# Summarization trigger as a share of the limiter budget
DEFAULT_SUMMARY_THRESHOLD_RATIO = 0.75
DEFAULT_SUMMARY_MODEL = "anthropic/claude-3-5-haiku"
DEFAULT_LOG_DIR = "logs/chat-usage"


class StoreBackend(str, Enum):
    """Where usage logs are persisted."""

    MEMORY = "memory"      # Process-local, for tests and local runs
    FILE = "file"          # Legacy per-session JSON documents
    POSTGRES = "postgres"  # Table-backed via asyncpg


class SummarizationMode(str, Enum):
    """Policy gating conversation summarization."""

    DISABLED = "disabled"
    TOKEN_THRESHOLD = "token_threshold"


def _is_truthy(value: Optional[str], default: bool = False) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _get_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _get_enum(name: str, enum_cls, default):
    raw = os.getenv(name, default.value).lower().strip()
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValueError(f"Invalid {name}. Use one of: {allowed}")


@dataclass
class UsageSettings:
    """Resolved runtime configuration."""
    store_backend: StoreBackend = StoreBackend.MEMORY
    database_url: Optional[str] = None
    log_dir: str = DEFAULT_LOG_DIR
    fallback_log_dir: Optional[str] = None
    capture_content: bool = True

    max_tokens: int = DEFAULT_MAX_TOKENS
    keep_recent_messages: int = DEFAULT_KEEP_RECENT_MESSAGES
    summary_model: str = DEFAULT_SUMMARY_MODEL
    summarization: SummarizationMode = SummarizationMode.DISABLED
    summary_threshold: Optional[int] = None  # tokens; None = ratio of max_tokens

    provider_keys: Dict[str, Optional[str]] = field(default_factory=dict)

    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls) -> "UsageSettings":
        """
        Read settings from the environment.

        Raises:
            ValueError: If a variable holds an invalid value
        """
        settings = cls(
            store_backend=_get_enum("USAGE_STORE_BACKEND", StoreBackend, StoreBackend.MEMORY),
            database_url=os.getenv("DATABASE_URL") or None,
            log_dir=os.getenv("USAGE_LOG_DIR", DEFAULT_LOG_DIR),
            fallback_log_dir=os.getenv("USAGE_FALLBACK_LOG_DIR") or None,
            capture_content=_is_truthy(os.getenv("USAGE_CAPTURE_CONTENT"), default=True),
            max_tokens=_get_int("CONVERSATION_MAX_TOKENS", DEFAULT_MAX_TOKENS, minimum=1),
            keep_recent_messages=_get_int(
                "CONVERSATION_KEEP_RECENT", DEFAULT_KEEP_RECENT_MESSAGES, minimum=0
            ),
            summary_model=os.getenv("CONVERSATION_SUMMARY_MODEL", DEFAULT_SUMMARY_MODEL),
            summarization=_get_enum(
                "CONVERSATION_SUMMARIZATION", SummarizationMode, SummarizationMode.DISABLED
            ),
            summary_threshold=_get_int("CONVERSATION_SUMMARY_THRESHOLD", 0, minimum=0) or None,
            provider_keys=get_provider_keys(),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=os.getenv("LOG_FORMAT", "json").lower() == "json",
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Fail closed for inconsistent configuration."""
        if self.store_backend == StoreBackend.POSTGRES and not self.database_url:
            raise ValueError("DATABASE_URL is required when USAGE_STORE_BACKEND=postgres")
        if (
            self.summarization != SummarizationMode.DISABLED
            and self.summary_threshold_tokens >= self.max_tokens
        ):
            raise ValueError(
                "CONVERSATION_SUMMARY_THRESHOLD must be below CONVERSATION_MAX_TOKENS"
            )

    @property
    def summary_threshold_tokens(self) -> int:
        """Token count above which the limited conversation is summarized."""
        if self.summary_threshold:
            return self.summary_threshold
        return int(self.max_tokens * DEFAULT_SUMMARY_THRESHOLD_RATIO)


def get_provider_keys() -> Dict[str, Optional[str]]:
    """Provider API keys for auxiliary model calls."""
    return {
        "anthropic": os.getenv("ANTHROPIC_API_KEY"),
        "openai": os.getenv("OPENAI_API_KEY"),
    }


def get_default_max_tokens() -> int:
    """Token budget for outgoing conversations (CONVERSATION_MAX_TOKENS)."""
    return _get_int("CONVERSATION_MAX_TOKENS", DEFAULT_MAX_TOKENS, minimum=1)


def get_default_keep_recent() -> int:
    """Messages kept verbatim by summarization (CONVERSATION_KEEP_RECENT)."""
    return _get_int("CONVERSATION_KEEP_RECENT", DEFAULT_KEEP_RECENT_MESSAGES, minimum=0)


def get_default_summary_model() -> str:
    return os.getenv("CONVERSATION_SUMMARY_MODEL", DEFAULT_SUMMARY_MODEL)
