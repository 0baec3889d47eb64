"""
Coverage validation and post-run verification.

CoverageValidator answers two questions about the live database:

- before any mutation: is every organization id the backfill will meet
  present in the mapping? (``validate``; a gap aborts the run)
- after the run: are any tenant columns still null? (``verify_no_null_tenants``)

It also reports rows whose foreign key points at a missing parent, which
would block the tenant-qualified foreign keys from being recreated.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from tenantshard._connection import DatabaseTarget, execute_with_connection
from tenantshard.catalog import TableCatalog
from tenantshard.exceptions import MissingOrganizationsError
from tenantshard.inspector import SchemaInspector
from tenantshard.mapping import OrganizationMapping
from tenantshard.models import LookupStrategy, TableSpec
from tenantshard.observability import ATTR_DB_TABLE, Tracer, create_tracer
from tenantshard.sql import SESSIONS, USER_EXTENSIONS, SqlBuilder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CoverageReport:
    """
    Result of a successful coverage check.

    Attributes:
        tables_checked: Tables whose organization ids were collected.
        tables_skipped: Tables skipped because they or a join table is missing.
        organization_ids: Distinct organization ids found in the database.
    """

    tables_checked: tuple[str, ...]
    tables_skipped: tuple[str, ...]
    organization_ids: frozenset[str]


@dataclass(frozen=True)
class VerificationReport:
    """Null tenant counts per table after the run."""

    null_counts: dict[str, int] = field(default_factory=dict)

    @property
    def clean(self) -> bool:
        return not any(self.null_counts.values())

    @property
    def tables_with_nulls(self) -> dict[str, int]:
        return {table: count for table, count in self.null_counts.items() if count}


@dataclass(frozen=True)
class OrphanReport:
    """Rows whose reference has no parent row."""

    constraint_name: str
    table: str
    referenced_table: str
    orphaned_rows: int


class CoverageValidator:
    """
    Cross-checks the database's organization ids against the mapping.

    Args:
        conn: Database engine or connection.
        catalog: Table catalog.
        builder: SQL builder for the catalog.
        inspector: Schema inspector (created from conn if omitted).
        tracer: Optional tracer.
        enable_tracing: Whether to create a tracer when none is given.
    """

    def __init__(
        self,
        conn: DatabaseTarget,
        catalog: TableCatalog,
        builder: SqlBuilder,
        *,
        inspector: SchemaInspector | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._conn = conn
        self._catalog = catalog
        self._builder = builder
        self._inspector = inspector or SchemaInspector(conn)
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def _reachable(self, spec: TableSpec) -> bool:
        """True if the table and every table its lookup joins exist."""
        if not await self._inspector.table_exists(spec.table_name):
            return False
        if not await self._inspector.column_exists(spec.table_name, spec.identifier_column):
            return False
        if spec.lookup_strategy.joins_user_extension:
            if not await self._inspector.column_exists(USER_EXTENSIONS, "organization_id"):
                return False
        if spec.lookup_strategy == LookupStrategy.VIA_SESSION_THEN_USER_EXTENSION:
            if not await self._inspector.table_exists(SESSIONS):
                return False
        return True

    async def organization_ids(self, spec: TableSpec) -> set[str]:
        """Distinct non-null organization ids a table reaches."""
        statement = self._builder.distinct_organizations(spec)
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(statement.clause(), statement.params)
            return {str(row[0]) for row in result.fetchall()}

    async def validate(self, mapping: OrganizationMapping) -> CoverageReport:
        """
        Confirm every organization id in the database is mapped.

        Args:
            mapping: The resolved organization mapping.

        Returns:
            CoverageReport describing what was checked.

        Raises:
            MissingOrganizationsError: If any id has no mapping.
        """
        found: set[str] = set()
        checked: list[str] = []
        skipped: list[str] = []

        with self._tracer.span("tenantshard.coverage.validate"):
            for spec in self._catalog.coverage_specs:
                if not await self._reachable(spec):
                    logger.info("Coverage: skipping %s (table or join missing)", spec.table_name)
                    skipped.append(spec.table_name)
                    continue
                with self._tracer.span(
                    "tenantshard.coverage.table", {ATTR_DB_TABLE: spec.table_name}
                ):
                    ids = await self.organization_ids(spec)
                logger.debug("Coverage: %s reaches %d organization(s)", spec.table_name, len(ids))
                found |= ids
                checked.append(spec.table_name)

        missing = mapping.unmapped(found)
        if missing:
            raise MissingOrganizationsError(missing)

        logger.info(
            "Coverage: all %d organization id(s) across %d table(s) are mapped",
            len(found),
            len(checked),
        )
        return CoverageReport(tuple(checked), tuple(skipped), frozenset(found))

    async def verify_no_null_tenants(
        self,
        tables: Iterable[str] | None = None,
    ) -> VerificationReport:
        """
        Count rows whose tenant column is still null.

        Args:
            tables: Tables to check; defaults to the catalog's reshaped tables.

        Returns:
            VerificationReport with a count per checked table.
        """
        column = self._catalog.tenant_column
        counts: dict[str, int] = {}
        for table in tables if tables is not None else self._catalog.reshaped_tables:
            if not await self._inspector.column_exists(table, column):
                continue
            counts[table] = await self._inspector.count(self._builder.count_nulls(table, column))
            if counts[table]:
                logger.warning("%s still has %d row(s) with null %s", table, counts[table], column)
        return VerificationReport(counts)

    async def find_orphaned_references(self) -> list[OrphanReport]:
        """
        Count orphaned references for every foreign key the rebuild creates.

        Returns:
            One report per relation with at least one orphaned row.
        """
        reports = []
        for fk in (*self._catalog.tenant_foreign_keys, *self._catalog.local_foreign_keys):
            present = await self._inspector.existing_columns(fk.table_name, fk.columns)
            parent = await self._inspector.existing_columns(
                fk.referenced_table, fk.referenced_columns
            )
            if len(present) != len(fk.columns) or len(parent) != len(fk.referenced_columns):
                continue
            statement = self._builder.count_orphans(
                fk.table_name, fk.columns, fk.referenced_table, fk.referenced_columns
            )
            try:
                orphaned = await self._inspector.count(statement)
            except SQLAlchemyError as e:
                logger.warning("Could not count orphaned rows for %s: %s", fk.name, e)
                continue
            if orphaned:
                logger.warning(
                    "%d row(s) in %s reference missing %s rows (%s)",
                    orphaned,
                    fk.table_name,
                    fk.referenced_table,
                    fk.name,
                )
                reports.append(
                    OrphanReport(fk.name, fk.table_name, fk.referenced_table, orphaned)
                )
        return reports


__all__ = [
    "CoverageReport",
    "CoverageValidator",
    "OrphanReport",
    "VerificationReport",
]
