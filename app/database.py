import asyncio
import asyncpg
import logging
from contextlib import asynccontextmanager
from app.config import settings

logger = logging.getLogger(__name__)

# Driver, network and timeout failures. Issuance maps them to StoreFailure,
# reconciliation records them per row or per step.
STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)

# Every session runs in UTC so created_at windows compare as stored
SERVER_SETTINGS = {
    "application_name": "conference-reconciliation",
    "timezone": "UTC",
}


class DatabasePool:
    """Process-wide asyncpg pool, created lazily on first use"""
    _pool = None

    @classmethod
    async def create_pool(cls):
        if cls._pool is not None:
            return cls._pool

        try:
            cls._pool = await asyncpg.create_pool(
                **settings.db_connection_params,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size,
                command_timeout=settings.db_command_timeout,
                server_settings=SERVER_SETTINGS,
                max_inactive_connection_lifetime=300,
                timeout=30
            )
        except STORE_ERRORS as e:
            logger.error(f"Could not create pool for {settings.db_name}@{settings.db_host}: {e}")
            raise

        logger.info(
            f"Pool ready: {settings.db_name}@{settings.db_host} "
            f"({settings.db_pool_min_size}-{settings.db_pool_max_size} connections)"
        )
        return cls._pool

    @classmethod
    async def close_pool(cls):
        if cls._pool is None:
            return
        await cls._pool.close()
        cls._pool = None
        logger.info("Pool closed")


@asynccontextmanager
async def get_db_connection(use_transaction: bool = True):
    """
    Pooled connection, by default inside a transaction.

    The transaction is the atomicity unit for issuance, each correction, lock
    operations and metric persistence: leaving the block with an exception
    rolls every statement back. Pass use_transaction=False for reads.
    """
    pool = await DatabasePool.create_pool()
    async with pool.acquire() as conn:
        if not use_transaction:
            yield conn
            return

        async with conn.transaction():
            yield conn


async def check_connection() -> bool:
    """Round-trip a trivial query; raises on failure."""
    async with get_db_connection(use_transaction=False) as conn:
        await conn.fetchval("SELECT 1")
    return True
