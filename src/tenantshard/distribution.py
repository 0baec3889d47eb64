"""
Citus distributed-table control.

DistributionController reads and mutates the cluster's distributed-table
catalog. When the ``citus`` extension is not installed every table stays
an ordinary table and all mutating operations are no-ops, so the engine
runs the same way against a single PostgreSQL server.

``create_distributed_table`` is not atomic: it can report an error after
the table has already been converted. After any reported error the
controller re-reads ``pg_dist_partition`` and trusts what it observes.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from tenantshard._connection import DatabaseTarget, execute_with_connection
from tenantshard.exceptions import (
    DistributionAmbiguityError,
    TableOperationError,
    log_error,
)
from tenantshard.inspector import SchemaInspector
from tenantshard.models import ConstraintType
from tenantshard.observability import (
    ATTR_DB_OPERATION,
    ATTR_DB_TABLE,
    ATTR_PARTITION_COLUMN,
    Tracer,
    create_tracer,
)
from tenantshard.sql import SqlBuilder, Statement

logger = logging.getLogger(__name__)

_CITUS_AVAILABLE = text("SELECT EXISTS(SELECT 1 FROM pg_extension WHERE extname = 'citus')")

_IS_DISTRIBUTED = text(
    """
    SELECT EXISTS(
        SELECT 1 FROM pg_dist_partition
        WHERE logicalrelid = to_regclass(:table_name)
    )
    """
)

_DISTRIBUTED_TABLES = text(
    """
    SELECT logicalrelid::text, partmethod::text
    FROM pg_dist_partition
    ORDER BY logicalrelid::text
    """
)

# pg_dist_partition.partmethod of reference tables
_REFERENCE_METHOD = "n"


class DistributionStatus(Enum):
    """Outcome of a distribute or undistribute call."""

    DISTRIBUTED = "distributed"
    """The table was converted to distributed form."""

    ALREADY_DISTRIBUTED = "already_distributed"
    """The table was distributed before the call."""

    UNDISTRIBUTED = "undistributed"
    """The table was converted back to a local table."""

    NOT_DISTRIBUTED = "not_distributed"
    """The table was local before the call."""

    UNAVAILABLE = "unavailable"
    """Citus is not installed; nothing was done."""

    @property
    def is_distributed(self) -> bool:
        return self in (DistributionStatus.DISTRIBUTED, DistributionStatus.ALREADY_DISTRIBUTED)


@dataclass(frozen=True)
class DistributionEligibility:
    """
    Whether a table can be distributed by a column.

    Attributes:
        table: Table checked.
        eligible: True if no blocking condition was found.
        reasons: Blocking conditions, empty when eligible.
    """

    table: str
    eligible: bool
    reasons: tuple[str, ...] = ()


@dataclass(frozen=True)
class DistributionReport:
    """
    Snapshot of the distributed-table catalog.

    Attributes:
        available: Whether Citus is installed.
        distributed_tables: Hash-distributed tables.
        reference_tables: Reference tables.
        missing: Expected tables that are not distributed.
    """

    available: bool
    distributed_tables: tuple[str, ...] = ()
    reference_tables: tuple[str, ...] = ()
    missing: tuple[str, ...] = ()


class DistributionController:
    """
    Converts tables to and from distributed form.

    Args:
        conn: Database engine or connection.
        builder: SQL builder for the catalog.
        inspector: Schema inspector (created from conn if omitted).
        tracer: Optional tracer.
        enable_tracing: Whether to create a tracer when none is given.

    Example:
        >>> controller = DistributionController(engine, builder)
        >>> if await controller.is_available():
        ...     await controller.distribute("sessions", "tenant_code")
    """

    def __init__(
        self,
        conn: DatabaseTarget,
        builder: SqlBuilder,
        *,
        inspector: SchemaInspector | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._conn = conn
        self._builder = builder
        self._inspector = inspector or SchemaInspector(conn)
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._available: bool | None = None

    async def is_available(self) -> bool:
        """Whether the citus extension is installed. Cached for the run."""
        if self._available is None:
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(_CITUS_AVAILABLE)
                self._available = bool(result.scalar())
            logger.info(
                "Citus %s", "is available" if self._available else "not installed, tables stay local"
            )
        return self._available

    async def is_distributed(self, table: str) -> bool:
        if not await self.is_available():
            return False
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(_IS_DISTRIBUTED, {"table_name": table})
            return bool(result.scalar())

    async def check_eligibility(self, table: str, column: str) -> DistributionEligibility:
        """
        Check that nothing on the table prevents distributing it by ``column``.

        A table is eligible when it has the column, every primary key and
        unique constraint includes it, and it has no foreign keys.
        """
        reasons: list[str] = []
        if not await self._inspector.column_exists(table, column):
            reasons.append(f"missing partition column {column}")

        constraints = await self._inspector.constraints(
            (table,),
            (ConstraintType.PRIMARY_KEY, ConstraintType.UNIQUE, ConstraintType.FOREIGN_KEY),
        )
        for record in constraints:
            if record.is_foreign_key:
                reasons.append(f"foreign key {record.name}")
            elif not record.includes(column):
                reasons.append(
                    f"{record.constraint_type.value.lower()} {record.name} omits {column}"
                )
        return DistributionEligibility(table, not reasons, tuple(reasons))

    async def _run(self, statement: Statement) -> None:
        async with execute_with_connection(self._conn) as conn:
            await conn.execute(statement.clause(), statement.params)

    async def distribute(
        self,
        table: str,
        column: str,
        *,
        check: bool = True,
    ) -> DistributionStatus:
        """
        Distribute a table by ``column``.

        Args:
            table: Table to convert.
            column: Partition column.
            check: Verify eligibility first.

        Returns:
            DISTRIBUTED, ALREADY_DISTRIBUTED or UNAVAILABLE.

        Raises:
            TableOperationError: If the table is ineligible, or the conversion
                failed and the table is not distributed.
        """
        if not await self.is_available():
            return DistributionStatus.UNAVAILABLE
        if await self.is_distributed(table):
            logger.debug("%s is already distributed", table)
            return DistributionStatus.ALREADY_DISTRIBUTED

        if check:
            eligibility = await self.check_eligibility(table, column)
            if not eligibility.eligible:
                raise TableOperationError(
                    table,
                    "distribute",
                    "not eligible: " + "; ".join(eligibility.reasons),
                )

        statement = self._builder.create_distributed_table(table, column)
        with self._tracer.span(
            "tenantshard.distribution.distribute",
            {ATTR_DB_TABLE: table, ATTR_PARTITION_COLUMN: column, ATTR_DB_OPERATION: "distribute"},
        ):
            try:
                await self._run(statement)
            except SQLAlchemyError as e:
                if await self.is_distributed(table):
                    log_error(
                        logger,
                        DistributionAmbiguityError(table, str(e)),
                        f"Distributing {table}",
                    )
                    return DistributionStatus.DISTRIBUTED
                raise TableOperationError(
                    table, "distribute", str(e), statement_shape=statement.shape
                ) from e

        logger.info("Distributed %s by %s", table, column)
        return DistributionStatus.DISTRIBUTED

    async def undistribute(self, table: str) -> DistributionStatus:
        """
        Convert a distributed table back to a local table.

        Returns:
            UNDISTRIBUTED, NOT_DISTRIBUTED or UNAVAILABLE.

        Raises:
            TableOperationError: If the conversion failed and the table is
                still distributed.
        """
        if not await self.is_available():
            return DistributionStatus.UNAVAILABLE
        if not await self.is_distributed(table):
            return DistributionStatus.NOT_DISTRIBUTED

        statement = self._builder.undistribute_table(table)
        with self._tracer.span(
            "tenantshard.distribution.undistribute",
            {ATTR_DB_TABLE: table, ATTR_DB_OPERATION: "undistribute"},
        ):
            try:
                await self._run(statement)
            except SQLAlchemyError as e:
                if not await self.is_distributed(table):
                    log_error(
                        logger,
                        DistributionAmbiguityError(table, str(e)),
                        f"Undistributing {table}",
                    )
                    return DistributionStatus.UNDISTRIBUTED
                raise TableOperationError(
                    table, "undistribute", str(e), statement_shape=statement.shape
                ) from e

        logger.info("Undistributed %s", table)
        return DistributionStatus.UNDISTRIBUTED

    @asynccontextmanager
    async def undistributed(self, table: str, column: str) -> AsyncIterator[bool]:
        """
        Keep a table local for the duration of a mutation.

        A distributed table is undistributed on entry and distributed again
        by ``column`` on exit, also when the body raises. Local tables and
        clusters without Citus pass straight through.

        Yields:
            True if the table was distributed on entry.
        """
        was_distributed = await self.is_distributed(table)
        if was_distributed:
            await self.undistribute(table)
        try:
            yield was_distributed
        finally:
            if was_distributed:
                # The table was distributed with its current constraints.
                await self.distribute(table, column, check=False)

    async def verify_distribution(self, expected: Iterable[str] = ()) -> DistributionReport:
        """
        List distributed and reference tables.

        Args:
            expected: Tables that should be distributed; the ones that are
                not are reported in ``missing``.
        """
        if not await self.is_available():
            return DistributionReport(available=False)

        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(_DISTRIBUTED_TABLES)
            rows = result.fetchall()

        distributed = tuple(row[0] for row in rows if row[1] != _REFERENCE_METHOD)
        reference = tuple(row[0] for row in rows if row[1] == _REFERENCE_METHOD)
        missing = tuple(t for t in expected if t not in distributed and t not in reference)
        for table in missing:
            logger.warning("%s should be distributed but is not", table)
        logger.info(
            "Distribution: %d distributed table(s), %d reference table(s)",
            len(distributed),
            len(reference),
        )
        return DistributionReport(True, distributed, reference, missing)


__all__ = [
    "DistributionController",
    "DistributionEligibility",
    "DistributionReport",
    "DistributionStatus",
]
