"""
Connection handling helper for migration components.

Components accept either an AsyncEngine or an AsyncConnection. The
``execute_with_connection`` context manager normalizes the two:

- an AsyncEngine opens a fresh transaction (``begin``) or a plain
  connection (``connect``) per unit of work;
- an AsyncConnection is passed through, and the caller owns its transaction.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

DatabaseTarget = AsyncConnection | AsyncEngine


@asynccontextmanager
async def execute_with_connection(
    conn: DatabaseTarget,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Context manager for executing database operations.

    Args:
        conn: Database connection or engine
        transactional: If True, wrap in transaction (begin).
                       If False, use bare connection (connect).
                       Only applies when conn is an AsyncEngine.

    Yields:
        AsyncConnection ready for execute() calls

    Example:
        >>> async with execute_with_connection(self._conn) as conn:
        ...     await conn.execute(statement.clause(), statement.params)

    Note:
        - DDL and UPDATE statements use transactional=True so each unit of
          work commits or rolls back on its own
        - Catalog inspection uses transactional=False
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        # Caller is responsible for transaction management
        yield conn
