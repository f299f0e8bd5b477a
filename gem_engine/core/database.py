"""
Async PostgreSQL connection pool for the storage collaborator.

The engine itself is pure; only the repository functions in the services
modules (fetch_*, persist_*, get/update_engine_config) touch storage, and all
of them obtain connections through this module.

Key Components:
- Global connection pool singleton (_pool)
- init_db(): Create the pool from Settings
- get_db_pool(): Get the pool, initializing lazily
- close_db(): Close the pool at shutdown
- fetch_rows() / execute_many(): Small helpers for one-shot reads and
  batched writes

Usage:
    await init_db()

    pool = await get_db_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch("SELECT * FROM engine_config")

    await close_db()
"""

from typing import Any, Iterable, List, Optional, Sequence

import asyncpg
from asyncpg import Pool

from gem_engine.core.config import get_settings
from gem_engine.core.exceptions import ConfigurationError


# =============================================================================
# Global Pool Singleton
# =============================================================================

# None until init_db() is called; shared across all tasks of a run
_pool: Optional[Pool] = None


# =============================================================================
# Pool Lifecycle Functions
# =============================================================================

async def init_db() -> Pool:
    """
    Initialize the database connection pool.

    Idempotent: returns the existing pool when already initialized.

    Returns:
        Pool: The asyncpg connection pool instance.

    Raises:
        ConfigurationError: If DATABASE_URL is not configured.
        asyncpg.PostgresError: If connection to the database fails.
    """
    global _pool

    if _pool is None:
        settings = get_settings()
        if not settings.database_url:
            raise ConfigurationError("DATABASE_URL is not set")

        _pool = await asyncpg.create_pool(
            dsn=settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            command_timeout=settings.db_command_timeout,
        )

    return _pool


async def get_db_pool() -> Pool:
    """
    Get the database connection pool, initializing if needed.

    Returns:
        Pool: The asyncpg connection pool instance.
    """
    global _pool

    if _pool is None:
        await init_db()

    assert _pool is not None, "Pool should be initialized after init_db()"

    return _pool


async def close_db() -> None:
    """Close the pool gracefully. Safe to call when no pool exists."""
    global _pool

    if _pool is not None:
        await _pool.close()
        _pool = None


# =============================================================================
# Query Helpers
# =============================================================================

async def fetch_rows(query: str, *args: Any) -> List[asyncpg.Record]:
    """
    Execute a read query on a pooled connection and return all rows.

    Args:
        query: SQL with $1, $2 ... placeholders.
        *args: Positional parameters for the placeholders.
    """
    pool = await get_db_pool()

    async with pool.acquire() as conn:
        return await conn.fetch(query, *args)


async def execute_many(query: str, args: Iterable[Sequence[Any]]) -> int:
    """
    Run one statement for every parameter tuple inside a single transaction.

    Batched writes keep a client run to one round-trip per table instead of
    one per entity.

    Args:
        query: SQL command with $1, $2 ... placeholders.
        args: Parameter tuples, one per row.

    Returns:
        int: Number of parameter tuples written. Zero tuples skips the
            round-trip entirely.
    """
    batch = list(args)
    if not batch:
        return 0

    pool = await get_db_pool()

    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.executemany(query, batch)

    return len(batch)
