"""
Connection helpers shared by the SQL State Store.

SQLAlchemyStateStore accepts either an AsyncEngine (it then opens a
connection or transaction per call) or an AsyncConnection owned by the
caller (used as-is, the caller manages the transaction).
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
    Yield a connection ready for execute() calls.

    Args:
        conn: Database connection or engine
        transactional: For engines, begin a transaction (writes) instead of
            a bare connection (reads). Ignored for connections.

    Example:
        >>> async with execute_with_connection(self._conn) as conn:
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


def dialect_name(conn: AsyncConnection | AsyncEngine) -> str:
    """Return the SQLAlchemy dialect name ('postgresql', 'sqlite', ...)."""
    return conn.dialect.name
