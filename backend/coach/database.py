import logging
from collections.abc import AsyncIterator

import psycopg
from fastapi import HTTPException
from psycopg import AsyncConnection
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from .config import settings

logger = logging.getLogger(__name__)

# Process-wide pool; connections are handed out per request and never shared across turns.
pool: AsyncConnectionPool | None = None


async def init_db_pool() -> None:
    global pool

    if not settings.database_url:
        logger.warning("DATABASE_URL is not set; coach routes will return 503")
        return

    pool = AsyncConnectionPool(
        conninfo=settings.database_url,
        open=False,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        name="coach",
        kwargs={"autocommit": True, "row_factory": dict_row},
    )
    await pool.open()


async def close_db_pool() -> None:
    global pool

    if pool is None:
        return

    await pool.close()
    pool = None


async def database_ready() -> bool:
    """Round-trip one query through the pool; False when unconfigured or unreachable."""
    if pool is None:
        return False
    try:
        async with pool.connection() as connection:
            await connection.execute("SELECT 1")
    except psycopg.Error:
        logger.exception("Database health check failed")
        return False
    return True


async def get_db_connection() -> AsyncIterator[AsyncConnection]:
    # Autocommit by default; services wrap multi-row writes in connection.transaction().
    if pool is None:
        raise HTTPException(status_code=503, detail="DATABASE_URL is not configured")

    async with pool.connection() as connection:
        yield connection
