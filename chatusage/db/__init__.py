"""
chatusage - Database

PostgreSQL connection pool and schema for the usage store.
"""

from .connection import DatabasePool
from .schema import SCHEMA_STATEMENTS, ensure_schema

__all__ = [
    "DatabasePool",
    "SCHEMA_STATEMENTS",
    "ensure_schema",
]
