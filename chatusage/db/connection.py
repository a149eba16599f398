"""
chatusage - Database Connection Pool

Async PostgreSQL pool for the usage store, using asyncpg.
"""

from contextlib import asynccontextmanager
from typing import Optional

import asyncpg

from ..core.errors import StoreUnavailableError
from ..observability.logging import get_logger


logger = get_logger(__name__)

STORE_NAME = "postgres"


class DatabasePool:
    """
    Async PostgreSQL connection pool.

    Usage:
        pool = DatabasePool(settings.database_url)
        await pool.connect()

        async with pool.transaction() as conn:
            await conn.execute("INSERT INTO chat_usage_log ...")

        await pool.close()
    """

    def __init__(
        self,
        dsn: str,
        min_size: int = 1,
        max_size: int = 10,
        command_timeout: float = 30,
    ):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self._pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """Create the connection pool."""
        if self._pool is not None:
            return

        try:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout,
            )
        except (OSError, asyncpg.PostgresError) as e:
            raise StoreUnavailableError(STORE_NAME, f"Could not connect to database: {e}") from e

        logger.info("Database pool connected", min_size=self.min_size, max_size=self.max_size)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def acquire(self):
        """
        Acquire a connection from the pool.

        Raises:
            StoreUnavailableError: If the pool is not connected
        """
        if self._pool is None:
            raise StoreUnavailableError(STORE_NAME, "Database pool not connected")

        async with self._pool.acquire() as connection:
            yield connection

    @asynccontextmanager
    async def transaction(self):
        """Acquire a connection inside a transaction; rolls back on error."""
        async with self.acquire() as connection:
            async with connection.transaction():
                yield connection

    async def execute(self, query: str, *args) -> str:
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch(self, query: str, *args) -> list:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def fetchrow(self, query: str, *args):
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    @property
    def is_connected(self) -> bool:
        return self._pool is not None
