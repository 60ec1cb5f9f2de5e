"""
Connection helper for the PostgreSQL stores.

Stores accept either an ``AsyncEngine`` (they open a connection or a
transaction per call) or an ``AsyncConnection`` owned by the caller (used
as-is, so the caller can fold store writes into its own transaction).
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection ready for ``execute()``.

    Args:
        conn: Database connection or engine
        transactional: Begin a transaction when ``conn`` is an engine.
            Use False for read-only queries. Ignored for connections;
            the caller manages their transaction.

    Example:
        >>> async with execute_with_connection(self.conn) as conn:
        ...     await conn.execute(query, params)
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn
