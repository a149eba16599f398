"""
chatusage - Database Schema

Tables backing the Postgres usage store:
- chat_usage_log: one row per chat turn
- chat_usage_step: ordered steps, deleted with their log
- daily_usage_stats: one rollup row per day
"""

from typing import Sequence

from ..observability.logging import get_logger


logger = get_logger(__name__)


SCHEMA_STATEMENTS: Sequence[str] = (
    """
    CREATE TABLE IF NOT EXISTS chat_usage_log (
        id UUID PRIMARY KEY,
        session_id TEXT NOT NULL,
        message_id TEXT NOT NULL,
        user_id TEXT,
        model TEXT NOT NULL DEFAULT '',
        timestamp TIMESTAMPTZ NOT NULL,
        total_prompt_tokens INTEGER NOT NULL DEFAULT 0,
        total_completion_tokens INTEGER NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        total_execution_time INTEGER NOT NULL DEFAULT 0,
        request_size INTEGER NOT NULL DEFAULT 0,
        response_size INTEGER NOT NULL DEFAULT 0,
        full_conversation_context JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_usage_step (
        id BIGSERIAL PRIMARY KEY,
        log_id UUID NOT NULL REFERENCES chat_usage_log(id) ON DELETE CASCADE,
        position INTEGER NOT NULL,
        step_name TEXT NOT NULL,
        timestamp TIMESTAMPTZ NOT NULL,
        prompt_tokens INTEGER,
        completion_tokens INTEGER,
        total_tokens INTEGER,
        system_prompt_size INTEGER,
        messages_count INTEGER,
        tools_count INTEGER,
        mcp_tools_count INTEGER,
        workflow_tools_count INTEGER,
        app_default_tools_count INTEGER,
        tool_call_results JSONB,
        prompt_size_breakdown JSONB,
        actual_content JSONB,
        additional_data JSONB,
        UNIQUE (log_id, position)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS daily_usage_stats (
        date DATE PRIMARY KEY,
        total_tokens BIGINT NOT NULL DEFAULT 0,
        total_requests INTEGER NOT NULL DEFAULT 0,
        unique_sessions INTEGER NOT NULL DEFAULT 0,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_chat_usage_log_session ON chat_usage_log (session_id)",
    "CREATE INDEX IF NOT EXISTS idx_chat_usage_log_user ON chat_usage_log (user_id)",
    "CREATE INDEX IF NOT EXISTS idx_chat_usage_log_timestamp ON chat_usage_log (timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_chat_usage_log_model ON chat_usage_log (model)",
    "CREATE INDEX IF NOT EXISTS idx_chat_usage_step_log ON chat_usage_step (log_id)",
)


async def ensure_schema(pool) -> None:
    """Create tables and indexes if they do not exist."""
    async with pool.transaction() as conn:
        for statement in SCHEMA_STATEMENTS:
            await conn.execute(statement)
    logger.info("Usage schema ensured", statements=len(SCHEMA_STATEMENTS))
