"""
Run lock based on a PostgreSQL advisory lock.

Two migration runs against the same database would race on the same DDL,
so a run holds a session-level advisory lock from start to finish. The lock
lives on a dedicated connection and is released when the run ends or the
connection drops.

Usage:
    >>> lock = AdvisoryLock(engine, "tenantshard:migration", timeout=30.0)
    >>> async with lock.hold() as info:
    ...     await run_phases()
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from tenantshard.exceptions import MigrationLockError
from tenantshard.observability import (
    ATTR_LOCK_ID,
    ATTR_LOCK_KEY,
    ATTR_LOCK_TIMEOUT,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

_TRY_LOCK = text("SELECT pg_try_advisory_lock(:lock_id)")
_UNLOCK = text("SELECT pg_advisory_unlock(:lock_id)")


@dataclass(frozen=True)
class LockInfo:
    """
    Information about an acquired lock.

    Attributes:
        key: The string key used to identify the lock
        lock_id: The numeric PostgreSQL lock ID (derived from key hash)
        acquired_at: When the lock was acquired
    """

    key: str
    lock_id: int
    acquired_at: datetime


def key_to_lock_id(key: str) -> int:
    """
    Convert a string key to a 63-bit advisory lock id.

    Uses SHA-256 truncated to 63 bits so the value fits a signed bigint.
    """
    digest = hashlib.sha256(key.encode()).digest()
    return int.from_bytes(digest[:8], byteorder="big") & 0x7FFFFFFFFFFFFFFF


class AdvisoryLock:
    """
    Session-level advisory lock guarding a migration run.

    Args:
        engine: Engine the dedicated lock connection is taken from.
        key: Lock key.
        timeout: Seconds to keep retrying; None tries once.
        retry_interval: Seconds between attempts.
        tracer: Optional tracer.
        enable_tracing: Whether to create a tracer when none is given.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        key: str,
        *,
        timeout: float | None = None,
        retry_interval: float = 0.5,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._engine = engine
        self.key = key
        self.lock_id = key_to_lock_id(key)
        self._timeout = timeout
        self._retry_interval = retry_interval
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[LockInfo]:
        """
        Hold the lock for the duration of the context.

        Yields:
            LockInfo with lock details.

        Raises:
            MigrationLockError: If another session holds the lock past the
                timeout, or the lock query fails.
        """
        with self._tracer.span(
            "tenantshard.lock.acquire",
            {
                ATTR_LOCK_KEY: self.key,
                ATTR_LOCK_ID: self.lock_id,
                ATTR_LOCK_TIMEOUT: self._timeout if self._timeout is not None else -1,
            },
        ):
            conn = await self._acquire()

        info = LockInfo(key=self.key, lock_id=self.lock_id, acquired_at=datetime.now(UTC))
        logger.info("Acquired run lock: key=%s, lock_id=%d", self.key, self.lock_id)
        try:
            yield info
        finally:
            await self._release(conn)

    async def _acquire(self) -> AsyncConnection:
        conn = await self._engine.connect()
        try:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + (self._timeout or 0.0)
            while True:
                result = await conn.execute(_TRY_LOCK, {"lock_id": self.lock_id})
                acquired = result.scalar()
                await conn.commit()
                if acquired:
                    return conn
                if loop.time() >= deadline:
                    reason = (
                        f"Timeout after {self._timeout}s"
                        if self._timeout
                        else "another migration run holds it"
                    )
                    raise MigrationLockError(self.key, reason, timeout=self._timeout)
                await asyncio.sleep(self._retry_interval)
        except MigrationLockError:
            await conn.close()
            raise
        except SQLAlchemyError as e:
            await conn.close()
            raise MigrationLockError(self.key, f"Database error: {e}") from e

    async def _release(self, conn: AsyncConnection) -> None:
        with self._tracer.span(
            "tenantshard.lock.release",
            {ATTR_LOCK_KEY: self.key, ATTR_LOCK_ID: self.lock_id},
        ):
            try:
                await conn.execute(_UNLOCK, {"lock_id": self.lock_id})
                await conn.commit()
                logger.debug("Released run lock: key=%s", self.key)
            except SQLAlchemyError as e:
                # Closing the session releases the lock anyway.
                logger.warning("Error releasing run lock %s: %s", self.key, e)
            finally:
                await conn.close()


__all__ = ["AdvisoryLock", "LockInfo", "key_to_lock_id"]
