"""
chatusage - Usage Storage

Backends:
- memory: process-local, for tests and local runs
- file: per-session JSON documents
- postgres: relational tables with cascading steps

Postgres can be paired with a file fallback for failed writes.
"""

from typing import Optional

from ..config import StoreBackend, UsageSettings
from ..db.connection import DatabasePool
from .base import (
    DEFAULT_HIGH_USAGE_LIMIT,
    DEFAULT_HIGH_USAGE_MIN_TOKENS,
    DEFAULT_SESSION_LOG_LIMIT,
    AggregatingUsageStore,
    UsageStore,
)
from .fallback import FallbackUsageStore
from .file import FileUsageStore
from .memory import InMemoryUsageStore
from .postgres import PostgresUsageStore


def create_store(settings: Optional[UsageSettings] = None) -> UsageStore:
    """
    Build the store selected by configuration (not yet connected).

    Raises:
        ValueError: If the configuration is inconsistent
    """
    settings = settings or UsageSettings.from_env()
    settings.validate()

    if settings.store_backend == StoreBackend.MEMORY:
        return InMemoryUsageStore()

    if settings.store_backend == StoreBackend.FILE:
        return FileUsageStore(settings.log_dir)

    store: UsageStore = PostgresUsageStore(DatabasePool(settings.database_url))
    if settings.fallback_log_dir:
        store = FallbackUsageStore(store, FileUsageStore(settings.fallback_log_dir))
    return store


__all__ = [
    "DEFAULT_HIGH_USAGE_LIMIT",
    "DEFAULT_HIGH_USAGE_MIN_TOKENS",
    "DEFAULT_SESSION_LOG_LIMIT",
    "AggregatingUsageStore",
    "UsageStore",
    "InMemoryUsageStore",
    "FileUsageStore",
    "PostgresUsageStore",
    "FallbackUsageStore",
    "create_store",
]
