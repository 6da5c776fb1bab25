"""PostgreSQL database connection pool."""
from contextlib import asynccontextmanager
from typing import Optional, Any, AsyncIterator
import asyncpg

from arena.config import config
from arena.utils.logger import get_logger

logger = get_logger(__name__)


class Database:
    """Async PostgreSQL connection pool manager."""

    _instance: Optional["Database"] = None
    _pool: Optional[asyncpg.Pool] = None

    def __new__(cls) -> "Database":
        """Singleton pattern for database connection."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def connect(self) -> None:
        """Create connection pool."""
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                config.database_url,
                min_size=config.db_pool_min,
                max_size=config.db_pool_max,
            )
            logger.info("Connected to PostgreSQL")

    async def disconnect(self) -> None:
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Disconnected from PostgreSQL")

    @property
    def pool(self) -> asyncpg.Pool:
        """Get connection pool, raise if not connected."""
        if self._pool is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection and run the block inside one transaction.

        The transaction commits when the block exits normally and rolls back
        on any exception. Lock waits and statements are bounded by the
        configured timeouts.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    f"SET LOCAL lock_timeout = '{int(config.lock_timeout_seconds * 1000)}ms'"
                )
                await conn.execute(
                    f"SET LOCAL statement_timeout = '{int(config.statement_timeout_seconds * 1000)}ms'"
                )
                yield conn

    async def execute(self, query: str, *args: Any) -> str:
        """Execute a query without returning results."""
        async with self.pool.acquire() as conn:
            return await conn.execute(query, *args)


# Global instance
db = Database()
