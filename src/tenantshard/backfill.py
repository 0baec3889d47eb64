"""
Tenant column backfill.

BackfillEngine writes ``tenant_code`` (and ``organization_code`` where the
table has it) on every row of a catalog table, resolving each row's
organization id through the mapping. Two strategies exist:

- BULK: one ``UPDATE ... FROM (VALUES ...)`` joining the table to the
  mapping rows, in a single transaction.
- PER_ORGANIZATION: one ``UPDATE ... WHERE <org> = :organization_id`` per
  organization, ``batch_size`` organizations per transaction, each update
  in its own savepoint so one failing organization does not roll back
  the others.

``select_strategy`` picks between them; a failed bulk statement degrades the
table to PER_ORGANIZATION, which produces the same final values.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from contextlib import nullcontext
from dataclasses import dataclass, field, replace
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from tenantshard._connection import DatabaseTarget, execute_with_connection
from tenantshard.catalog import ORGANIZATION_COLUMN, TENANT_COLUMN
from tenantshard.distribution import DistributionController
from tenantshard.exceptions import (
    DegradedStrategyError,
    RetryConfig,
    TableOperationError,
    log_error,
)
from tenantshard.inspector import SchemaInspector
from tenantshard.mapping import OrganizationMapping
from tenantshard.models import LookupStrategy, MigrationPhase, StatsDelta, TableFailure, TableSpec
from tenantshard.observability import (
    ATTR_BATCH_SIZE,
    ATTR_DB_TABLE,
    ATTR_ORGANIZATION_COUNT,
    ATTR_ROWS_UPDATED,
    ATTR_STRATEGY,
    Tracer,
    create_tracer,
)
from tenantshard.sql import SESSIONS, USER_EXTENSIONS, SqlBuilder, Statement, bind

logger = logging.getLogger(__name__)

# Three bound parameters per mapping row; asyncpg accepts at most 32767.
MAX_BULK_MAPPING_ROWS = 10_000


class BackfillStrategy(Enum):
    """How a table's tenant columns are written."""

    BULK = "bulk"
    """One set-based UPDATE joined to the mapping rows."""

    PER_ORGANIZATION = "per_organization"
    """One UPDATE per organization, chunked into transactions."""


def select_strategy(mapping_rows: int, *, bulk_failed: bool = False) -> BackfillStrategy:
    """
    Choose the backfill strategy for a table.

    Args:
        mapping_rows: Number of mapping rows the table needs.
        bulk_failed: Whether the bulk statement already failed for this table.

    Returns:
        BULK unless the payload is empty, too large for one statement, or
        the bulk statement already failed.
    """
    if bulk_failed or mapping_rows == 0 or mapping_rows > MAX_BULK_MAPPING_ROWS:
        return BackfillStrategy.PER_ORGANIZATION
    return BackfillStrategy.BULK


@dataclass(frozen=True)
class BackfillResult:
    """
    Outcome of backfilling one table.

    Attributes:
        table: Table backfilled.
        strategy: Strategy that produced the final values, None if skipped.
        rows_updated: Rows written.
        rows_failed: Organization updates that failed.
        unmapped_organizations: Ids found in the table but not in the mapping.
        degraded: True if the bulk statement failed and the table fell back.
        skipped_reason: Why the table was not touched, if it was not.
        failures: Recorded table-level failures.
    """

    table: str
    strategy: BackfillStrategy | None = None
    rows_updated: int = 0
    rows_failed: int = 0
    unmapped_organizations: tuple[str, ...] = ()
    degraded: bool = False
    skipped_reason: str | None = None
    failures: tuple[TableFailure, ...] = field(default_factory=tuple)

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None

    def to_delta(self) -> StatsDelta:
        return StatsDelta(
            rows_updated=self.rows_updated,
            rows_failed=self.rows_failed,
            failures=self.failures,
        )


class BackfillEngine:
    """
    Writes tenant columns from the organization mapping.

    Args:
        conn: Database engine. Per-organization chunks need their own
            transactions, so pass an engine rather than a connection.
        builder: SQL builder for the catalog.
        inspector: Schema inspector (created from conn if omitted).
        distribution: Controller used to keep distributed tables local
            while they are updated. None skips the bracket.
        batch_size: Organizations per per-organization transaction.
        retry: Attempts per organization update.
        partition_column: Column distributed tables are sharded by.
        tracer: Optional tracer.
        enable_tracing: Whether to create a tracer when none is given.
    """

    def __init__(
        self,
        conn: DatabaseTarget,
        builder: SqlBuilder,
        *,
        inspector: SchemaInspector | None = None,
        distribution: DistributionController | None = None,
        batch_size: int = 5000,
        retry: RetryConfig | None = None,
        partition_column: str = TENANT_COLUMN,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._conn = conn
        self._builder = builder
        self._inspector = inspector or SchemaInspector(conn)
        self._distribution = distribution
        self._batch_size = batch_size
        self._retry = retry or RetryConfig()
        self._partition_column = partition_column
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------

    async def _missing_prerequisite(self, spec: TableSpec) -> str | None:
        if not await self._inspector.table_exists(spec.table_name):
            return "table does not exist"
        if spec.lookup_strategy == LookupStrategy.STATIC_DEFAULT:
            return None
        if not await self._inspector.column_exists(spec.table_name, spec.identifier_column):
            return f"column {spec.identifier_column} does not exist"
        if spec.lookup_strategy.joins_user_extension and not await self._inspector.column_exists(
            USER_EXTENSIONS, "organization_id"
        ):
            return f"{USER_EXTENSIONS}.organization_id does not exist"
        if spec.lookup_strategy == LookupStrategy.VIA_SESSION_THEN_USER_EXTENSION:
            if not await self._inspector.table_exists(SESSIONS):
                return f"{SESSIONS} does not exist"
        return None

    async def _organization_ids(self, spec: TableSpec) -> list[str]:
        statement = self._builder.distinct_organizations(spec)
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(statement.clause(), statement.params)
            return sorted(str(row[0]) for row in result.fetchall())

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def backfill(
        self,
        spec: TableSpec,
        mapping: OrganizationMapping,
        *,
        phase: MigrationPhase | None = None,
    ) -> BackfillResult:
        """
        Backfill one table from the mapping.

        Args:
            spec: Table to backfill.
            mapping: Resolved organization mapping.
            phase: Phase recorded on failures.

        Returns:
            BackfillResult; failures are recorded in it, never raised.
        """
        phase_name = phase.value if phase else "backfill"
        table = spec.table_name

        reason = await self._missing_prerequisite(spec)
        if reason:
            logger.info("Skipping backfill of %s: %s", table, reason)
            return BackfillResult(table, skipped_reason=reason)

        columns = await self._inspector.existing_columns(table, spec.update_columns)
        if not columns:
            logger.info("Skipping backfill of %s: no tenant columns", table)
            return BackfillResult(table, skipped_reason="no tenant columns")
        refresh = await self._inspector.column_exists(table, "updated_at")

        present = await self._organization_ids(spec)
        unmapped = tuple(i for i in present if i not in mapping)
        for organization_id in unmapped:
            logger.warning(
                "%s: organization %s has no mapping, its rows are left unchanged",
                table,
                organization_id,
            )
        mapped = [i for i in present if i in mapping]

        with self._tracer.span(
            "tenantshard.backfill.table",
            {ATTR_DB_TABLE: table, ATTR_ORGANIZATION_COUNT: len(mapped)},
        ):
            try:
                result = await self._backfill_mapped(
                    spec, mapping, mapped, columns, refresh, phase_name
                )
            except TableOperationError as e:
                log_error(logger, e, f"Backfilling {table}")
                failure = TableFailure(
                    phase_name, table, e.operation, e.original_error, e.statement_shape
                )
                return BackfillResult(
                    table,
                    unmapped_organizations=unmapped,
                    failures=(failure,),
                )

        logger.info(
            "Backfilled %s: %d row(s) updated, %d failed organization update(s) [%s]",
            table,
            result.rows_updated,
            result.rows_failed,
            result.strategy.value if result.strategy else "none",
        )
        return BackfillResult(
            table,
            strategy=result.strategy,
            rows_updated=result.rows_updated,
            rows_failed=result.rows_failed,
            unmapped_organizations=unmapped,
            degraded=result.degraded,
            failures=result.failures,
        )

    async def backfill_static(
        self,
        spec: TableSpec,
        tenant_code: str,
        organization_code: str | None = None,
        *,
        phase: MigrationPhase | None = None,
    ) -> BackfillResult:
        """
        Fill still-null tenant columns of a platform-wide table.

        Args:
            spec: Table with a STATIC_DEFAULT lookup.
            tenant_code: Tenant assigned to every row.
            organization_code: Organization code, if the table has the column.
            phase: Phase recorded on failures.
        """
        phase_name = phase.value if phase else "backfill"
        table = spec.table_name
        if not await self._inspector.table_exists(table):
            return BackfillResult(table, skipped_reason="table does not exist")

        values = {TENANT_COLUMN: tenant_code, ORGANIZATION_COLUMN: organization_code}
        wanted = [c for c in spec.update_columns if values.get(c)]
        columns = await self._inspector.existing_columns(table, wanted)
        if not columns:
            return BackfillResult(table, skipped_reason="no tenant columns")
        refresh = await self._inspector.column_exists(table, "updated_at")
        statement = bind(
            self._builder.static_default_update(spec, columns, refresh_updated_at=refresh),
            {c: values[c] for c in columns},
        )

        updated = 0
        try:
            async with self._local(table):
                async with execute_with_connection(self._conn) as conn:
                    result = await conn.execute(statement.clause(), statement.params)
                    updated = max(result.rowcount, 0)
        except SQLAlchemyError as e:
            error = TableOperationError(
                table, "backfill_static", str(e), statement_shape=statement.shape
            )
            log_error(logger, error, f"Backfilling {table}")
            return BackfillResult(
                table,
                failures=(TableFailure(phase_name, table, "backfill_static", str(e), statement.shape),),
            )
        except TableOperationError as e:
            log_error(logger, e, f"Backfilling {table}")
            return BackfillResult(
                table,
                rows_updated=updated,
                failures=(TableFailure(phase_name, table, e.operation, e.original_error),),
            )

        logger.info("Backfilled %s with default tenant %s: %d row(s)", table, tenant_code, updated)
        return BackfillResult(table, strategy=None, rows_updated=updated)

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _local(self, table: str):
        """Bracket keeping a distributed table local, or a no-op bracket."""
        if self._distribution is None:
            return nullcontext(False)
        return self._distribution.undistributed(table, self._partition_column)

    async def _backfill_mapped(
        self,
        spec: TableSpec,
        mapping: OrganizationMapping,
        organization_ids: list[str],
        columns: Sequence[str],
        refresh: bool,
        phase_name: str,
    ) -> BackfillResult:
        result: BackfillResult | None = None
        try:
            async with self._local(spec.table_name):
                result = await self._write_mapped(
                    spec, mapping, organization_ids, columns, refresh, phase_name
                )
        except TableOperationError as e:
            # Redistribution failed after the updates committed.
            if result is None:
                raise
            log_error(logger, e, f"Redistributing {spec.table_name}")
            failure = TableFailure(
                phase_name, spec.table_name, e.operation, e.original_error, e.statement_shape
            )
            result = replace(result, failures=(*result.failures, failure))
        return result

    async def _write_mapped(
        self,
        spec: TableSpec,
        mapping: OrganizationMapping,
        organization_ids: list[str],
        columns: Sequence[str],
        refresh: bool,
        phase_name: str,
    ) -> BackfillResult:
        strategy = select_strategy(len(organization_ids))
        degraded = False
        if strategy == BackfillStrategy.BULK:
            try:
                rows = await self.bulk(spec, mapping, organization_ids, columns, refresh)
                return BackfillResult(spec.table_name, strategy=strategy, rows_updated=rows)
            except DegradedStrategyError as e:
                log_error(logger, e, f"Backfilling {spec.table_name}")
                degraded = True
                strategy = select_strategy(len(organization_ids), bulk_failed=True)

        result = await self.per_organization(
            spec, mapping, organization_ids, columns, refresh, phase_name
        )
        return BackfillResult(
            spec.table_name,
            strategy=strategy,
            rows_updated=result.rows_updated,
            rows_failed=result.rows_failed,
            degraded=degraded,
            failures=result.failures,
        )

    async def bulk(
        self,
        spec: TableSpec,
        mapping: OrganizationMapping,
        organization_ids: Sequence[str],
        columns: Sequence[str],
        refresh: bool = True,
    ) -> int:
        """
        Run the single set-based UPDATE.

        Only mapping rows of organizations present in the table are sent.

        Returns:
            Rows updated.

        Raises:
            DegradedStrategyError: If the statement cannot be built or fails.
        """
        rows = [
            (i, mapping[i].tenant_code, mapping[i].organization_code) for i in organization_ids
        ]
        try:
            statement = self._builder.bulk_update(spec, rows, columns, refresh_updated_at=refresh)
        except ValueError as e:
            raise DegradedStrategyError(spec.table_name, str(e)) from e

        with self._tracer.span(
            "tenantshard.backfill.bulk",
            {ATTR_DB_TABLE: spec.table_name, ATTR_STRATEGY: BackfillStrategy.BULK.value},
        ):
            try:
                async with execute_with_connection(self._conn) as conn:
                    result = await conn.execute(statement.clause(), statement.params)
                    updated = max(result.rowcount, 0)
            except SQLAlchemyError as e:
                raise DegradedStrategyError(spec.table_name, str(e)) from e
        return updated

    async def per_organization(
        self,
        spec: TableSpec,
        mapping: OrganizationMapping,
        organization_ids: Sequence[str],
        columns: Sequence[str],
        refresh: bool = True,
        phase_name: str = "backfill",
    ) -> BackfillResult:
        """
        Update one organization at a time, ``batch_size`` per transaction.

        A failing organization is rolled back to its savepoint and counted;
        the rest of its chunk still commits. A chunk whose transaction fails
        as a whole is rolled back and all of its organizations count as
        failed; earlier chunks stay committed.
        """
        template = self._builder.organization_update(spec, columns, refresh_updated_at=refresh)
        rows_updated = 0
        rows_failed = 0
        failures: list[TableFailure] = []

        for start in range(0, len(organization_ids), self._batch_size):
            chunk = organization_ids[start : start + self._batch_size]
            chunk_updated = 0
            chunk_failed = 0
            chunk_failures: list[TableFailure] = []
            with self._tracer.span(
                "tenantshard.backfill.chunk",
                {
                    ATTR_DB_TABLE: spec.table_name,
                    ATTR_STRATEGY: BackfillStrategy.PER_ORGANIZATION.value,
                    ATTR_BATCH_SIZE: len(chunk),
                },
            ):
                try:
                    async with execute_with_connection(self._conn) as conn:
                        for organization_id in chunk:
                            codes = mapping[organization_id]
                            values = {
                                TENANT_COLUMN: codes.tenant_code,
                                ORGANIZATION_COLUMN: codes.organization_code,
                            }
                            statement = bind(
                                template,
                                {
                                    "organization_id": organization_id,
                                    **{c: values[c] for c in columns},
                                },
                            )
                            try:
                                chunk_updated += await self._update_organization(conn, statement)
                            except SQLAlchemyError as e:
                                chunk_failed += 1
                                logger.warning(
                                    "%s: update for organization %s failed: %s",
                                    spec.table_name,
                                    organization_id,
                                    e,
                                )
                                chunk_failures.append(
                                    TableFailure(
                                        phase_name,
                                        spec.table_name,
                                        f"backfill organization {organization_id}",
                                        str(e),
                                        statement.shape,
                                    )
                                )
                except SQLAlchemyError as e:
                    logger.error(
                        "%s: chunk of %d organization(s) rolled back: %s",
                        spec.table_name,
                        len(chunk),
                        e,
                        exc_info=True,
                    )
                    rows_failed += len(chunk)
                    failures.append(
                        TableFailure(
                            phase_name,
                            spec.table_name,
                            f"backfill chunk of {len(chunk)} organization(s)",
                            str(e),
                            template.shape,
                        )
                    )
                    continue

            rows_updated += chunk_updated
            rows_failed += chunk_failed
            failures.extend(chunk_failures)
            logger.debug(
                "%s: chunk committed, %d row(s) updated, %d organization(s) failed",
                spec.table_name,
                chunk_updated,
                chunk_failed,
            )

        return BackfillResult(
            spec.table_name,
            strategy=BackfillStrategy.PER_ORGANIZATION,
            rows_updated=rows_updated,
            rows_failed=rows_failed,
            failures=tuple(failures),
        )

    async def _update_organization(self, conn: AsyncConnection, statement: Statement) -> int:
        """Run one organization's UPDATE in a savepoint, retrying per RetryConfig."""
        attempt = 0
        while True:
            try:
                with self._tracer.span("tenantshard.backfill.organization") as span:
                    async with conn.begin_nested():
                        result = await conn.execute(statement.clause(), statement.params)
                    updated = max(result.rowcount, 0)
                    if span is not None:
                        span.set_attribute(ATTR_ROWS_UPDATED, updated)
                    return updated
            except SQLAlchemyError:
                attempt += 1
                if attempt >= self._retry.max_attempts:
                    raise
                await asyncio.sleep(self._retry.get_delay_ms(attempt - 1) / 1000.0)


__all__ = [
    "MAX_BULK_MAPPING_ROWS",
    "BackfillEngine",
    "BackfillResult",
    "BackfillStrategy",
    "select_strategy",
]
