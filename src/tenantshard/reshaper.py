"""
Constraint and index reshaping.

SchemaReshaper makes every catalog table's keys tenant-aware. Its
operations bracket the distribution step and each one is a separate
phase of the run:

    teardown:  drop indexes -> drop and record foreign keys ->
               drop problem unique constraints -> rewrite primary keys
    rebuild:   unique indexes -> foreign keys -> performance indexes

Every drop checks that the object exists and every add checks that it does
not, so any operation can be re-run after a crash. A failing statement is
logged and recorded; the next object is still attempted.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from tenantshard._connection import DatabaseTarget, execute_with_connection
from tenantshard.catalog import TableCatalog
from tenantshard.distribution import DistributionController
from tenantshard.exceptions import TableOperationError, log_error
from tenantshard.inspector import SchemaInspector
from tenantshard.models import (
    ConstraintRecord,
    ConstraintType,
    IndexSpec,
    MigrationPhase,
    StatsDelta,
    TableFailure,
    TableState,
)
from tenantshard.observability import (
    ATTR_CONSTRAINT_NAME,
    ATTR_DB_TABLE,
    ATTR_INDEX_NAME,
    Tracer,
    create_tracer,
)
from tenantshard.sql import SqlBuilder, Statement

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TeardownResult:
    """
    Outcome of one teardown step.

    Attributes:
        delta: Counter increments and failures.
        recorded: Constraints dropped that the rebuild recreates.
    """

    delta: StatsDelta = field(default_factory=StatsDelta)
    recorded: tuple[ConstraintRecord, ...] = ()


class SchemaReshaper:
    """
    Tears down and rebuilds constraints and indexes of catalog tables.

    Args:
        conn: Database engine or connection.
        catalog: Table catalog.
        builder: SQL builder for the catalog.
        inspector: Schema inspector (created from conn if omitted).
        distribution: Controller used to keep distributed tables local
            during primary key rewrites, and to tell distributed tables
            apart during the rebuild. None treats every table as local.
        tracer: Optional tracer.
        enable_tracing: Whether to create a tracer when none is given.

    Example:
        >>> reshaper = SchemaReshaper(engine, catalog, builder)
        >>> result = await reshaper.drop_foreign_keys(MigrationPhase.TEARDOWN)
        >>> ...
        >>> await reshaper.recreate_foreign_keys(MigrationPhase.REBUILD_FOREIGN_KEYS, result.recorded)
    """

    def __init__(
        self,
        conn: DatabaseTarget,
        catalog: TableCatalog,
        builder: SqlBuilder,
        *,
        inspector: SchemaInspector | None = None,
        distribution: DistributionController | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._conn = conn
        self._catalog = catalog
        self._builder = builder
        self._inspector = inspector or SchemaInspector(conn)
        self._distribution = distribution
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._states: dict[str, TableState] = {}

    # ------------------------------------------------------------------
    # State tracking
    # ------------------------------------------------------------------

    def state(self, table: str) -> TableState:
        """Reshaping progress of a table in this run."""
        return self._states.get(table, TableState.ORIGINAL_CONSTRAINTS)

    def _advance(
        self,
        tables: Iterable[str],
        state: TableState,
        delta: StatsDelta | None = None,
    ) -> None:
        """Advance tables to state, except those with a failure in delta."""
        failed = {f.table for f in delta.failures} if delta is not None else set()
        for table in tables:
            if table not in failed and state.order > self.state(table).order:
                self._states[table] = state

    def _advance_rewritten(self, state: TableState, delta: StatsDelta) -> None:
        """Advance tables whose primary key has been rewritten."""
        rewritten = TableState.PRIMARY_KEY_REWRITTEN.order
        self._advance([t for t, s in self._states.items() if s.order >= rewritten], state, delta)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _existing_tables(self, tables: Iterable[str]) -> list[str]:
        return [t for t in tables if await self._inspector.table_exists(t)]

    async def _is_distributed(self, table: str) -> bool:
        if self._distribution is None:
            return False
        return await self._distribution.is_distributed(table)

    async def _apply(
        self,
        statements: Sequence[Statement],
        table: str,
        operation: str,
        phase: MigrationPhase,
    ) -> TableFailure | None:
        """
        Run statements in one transaction.

        Returns:
            None on success, the recorded TableFailure otherwise.
        """
        try:
            async with execute_with_connection(self._conn) as conn:
                for statement in statements:
                    await conn.execute(statement.clause(), statement.params)
        except SQLAlchemyError as e:
            shape = "; ".join(s.shape for s in statements)
            log_error(
                logger,
                TableOperationError(table, operation, str(e), statement_shape=shape),
                f"{operation} on {table}",
            )
            return TableFailure(phase.value, table, operation, str(e), shape)
        return None

    def _admit(self, record: ConstraintRecord) -> None:
        """Admit the identifiers of a constraint read from the database."""
        self._builder.allow(record.table, record.name, *record.columns)
        if record.referenced_table:
            self._builder.allow(record.referenced_table, *record.referenced_columns)

    # ------------------------------------------------------------------
    # Column preparation
    # ------------------------------------------------------------------

    async def provision_tenant_columns(self, phase: MigrationPhase) -> StatsDelta:
        """Add nullable tenant and organization code columns where missing."""
        delta = StatsDelta()
        tenant = self._catalog.tenant_column
        organization = self._catalog.organization_column
        with self._tracer.span("tenantshard.reshaper.provision_columns"):
            for table in await self._existing_tables(self._catalog.reshaped_tables):
                wanted = [tenant]
                if table in self._catalog.tables_with_organization_code:
                    wanted.append(organization)
                present = await self._inspector.existing_columns(table, wanted)
                for column in wanted:
                    if column in present:
                        continue
                    failure = await self._apply(
                        [self._builder.add_column(table, column)],
                        table,
                        f"add column {column}",
                        phase,
                    )
                    if failure:
                        delta = delta + StatsDelta(failures=(failure,))
                    else:
                        logger.info("Added %s.%s", table, column)
        return delta

    async def enforce_not_null(self, phase: MigrationPhase) -> StatsDelta:
        """
        Set tenant columns NOT NULL on tables where no nulls remain.

        Tables still holding nulls are left nullable and logged; the final
        verification reports them.
        """
        delta = StatsDelta()
        tenant = self._catalog.tenant_column
        organization = self._catalog.organization_column
        with self._tracer.span("tenantshard.reshaper.enforce_not_null"):
            for table in await self._existing_tables(self._catalog.reshaped_tables):
                columns = [tenant]
                if table in self._catalog.tables_with_organization_code:
                    columns.append(organization)
                for column in await self._inspector.existing_columns(table, columns):
                    nulls = await self._inspector.count(self._builder.count_nulls(table, column))
                    if nulls:
                        logger.warning(
                            "Leaving %s.%s nullable: %d row(s) are still null",
                            table,
                            column,
                            nulls,
                        )
                        continue
                    failure = await self._apply(
                        [self._builder.set_not_null(table, column)],
                        table,
                        f"set {column} not null",
                        phase,
                    )
                    if failure:
                        delta = delta + StatsDelta(failures=(failure,))
        return delta

    async def drop_obsolete_tables(self, phase: MigrationPhase) -> StatsDelta:
        delta = StatsDelta()
        for table in await self._existing_tables(self._catalog.obsolete_tables):
            failure = await self._apply([self._builder.drop_table(table)], table, "drop table", phase)
            if failure:
                delta = delta + StatsDelta(failures=(failure,))
            else:
                logger.info("Dropped obsolete table %s", table)
        return delta

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def drop_indexes(self, phase: MigrationPhase) -> StatsDelta:
        """Drop every non-constraint index on the reshaped tables."""
        delta = StatsDelta()
        tables = await self._existing_tables(self._catalog.reshaped_tables)
        with self._tracer.span("tenantshard.reshaper.drop_indexes"):
            for table, index in await self._inspector.droppable_indexes(tables):
                self._builder.allow(index)
                failure = await self._apply(
                    [self._builder.drop_index(index)], table, f"drop index {index}", phase
                )
                if failure:
                    delta = delta + StatsDelta(failures=(failure,))
                else:
                    delta = delta + StatsDelta(indexes_dropped=1)
        self._advance(tables, TableState.INDEXES_DROPPED, delta)
        logger.info("Dropped %d index(es)", delta.indexes_dropped)
        return delta

    async def drop_foreign_keys(self, phase: MigrationPhase) -> TeardownResult:
        """
        Drop and record foreign keys on, or pointing at, the reshaped tables.

        Returns:
            TeardownResult whose ``recorded`` holds the dropped keys.
        """
        delta = StatsDelta()
        recorded: list[ConstraintRecord] = []
        tables = await self._existing_tables(self._catalog.reshaped_tables)
        with self._tracer.span("tenantshard.reshaper.drop_foreign_keys"):
            records = await self._inspector.foreign_keys(tables, include_referencing=True)
            for record in records:
                self._admit(record)
                failure = await self._apply(
                    [self._builder.drop_constraint(record.table, record.name, cascade=False)],
                    record.table,
                    f"drop foreign key {record.name}",
                    phase,
                )
                if failure:
                    delta = delta + StatsDelta(failures=(failure,))
                    continue
                recorded.append(record)
                delta = delta + StatsDelta(constraints_dropped=1)
        self._advance(tables, TableState.FOREIGN_KEYS_DROPPED, delta)
        logger.info("Dropped and recorded %d foreign key(s)", len(recorded))
        return TeardownResult(delta, tuple(recorded))

    async def drop_problem_unique_constraints(self, phase: MigrationPhase) -> TeardownResult:
        """
        Drop unique constraints that do not include the tenant column.

        The catalog's named problem constraints are replaced by the catalog's
        tenant-qualified unique indexes and are not recorded. Any other
        tenant-less unique constraint on a reshaped table is recorded so the
        rebuild recreates it with the tenant column.
        """
        delta = StatsDelta()
        recorded: list[ConstraintRecord] = []
        tenant = self._catalog.tenant_column
        tables = await self._existing_tables(self._catalog.reshaped_tables)

        with self._tracer.span("tenantshard.reshaper.drop_problem_unique_constraints"):
            for name in self._catalog.problem_unique_constraints:
                owner = await self._inspector.constraint_owner(name)
                if owner is not None:
                    self._builder.allow(owner)
                    statement = self._builder.drop_constraint(owner, name)
                    table = owner
                else:
                    table = await self._inspector.index_owner(name)
                    if table is None:
                        continue
                    self._builder.allow(table)
                    statement = self._builder.drop_index(name)
                failure = await self._apply([statement], table, f"drop unique {name}", phase)
                if failure:
                    delta = delta + StatsDelta(failures=(failure,))
                else:
                    delta = delta + StatsDelta(constraints_dropped=1)

            others = await self._inspector.constraints(tables, (ConstraintType.UNIQUE,))
            for record in others:
                if record.includes(tenant) or record.name in self._catalog.problem_unique_constraints:
                    continue
                self._admit(record)
                failure = await self._apply(
                    [self._builder.drop_constraint(record.table, record.name)],
                    record.table,
                    f"drop unique {record.name}",
                    phase,
                )
                if failure:
                    delta = delta + StatsDelta(failures=(failure,))
                    continue
                recorded.append(record)
                delta = delta + StatsDelta(constraints_dropped=1)

        self._advance(tables, TableState.PROBLEM_UNIQUE_CONSTRAINTS_DROPPED, delta)
        logger.info("Dropped %d unique constraint(s)", delta.constraints_dropped)
        return TeardownResult(delta, tuple(recorded))

    async def rewrite_primary_keys(
        self,
        phase: MigrationPhase,
        tables: Iterable[str] | None = None,
    ) -> StatsDelta:
        """
        Install the tenant-first composite primary key of each table.

        Tables whose current key already matches are skipped. The old key
        (and any legacy key) is dropped in the same transaction the new one
        is added in, so a failed rewrite leaves the old key in place.
        """
        delta = StatsDelta()
        names = tuple(tables) if tables is not None else self._catalog.reshaped_tables
        legacy: dict[str, list[str]] = {}
        for table, constraint in self._catalog.legacy_constraints:
            legacy.setdefault(table, []).append(constraint)

        for table in await self._existing_tables(names):
            target = self._catalog.primary_key_for(table)
            with self._tracer.span("tenantshard.reshaper.rewrite_primary_key", {ATTR_DB_TABLE: table}):
                present = await self._inspector.existing_columns(table, target.columns)
                if len(present) != len(target.columns):
                    missing = [c for c in target.columns if c not in present]
                    failure = TableFailure(
                        phase.value,
                        table,
                        "rewrite primary key",
                        f"missing column(s) {', '.join(missing)}",
                    )
                    logger.error("Cannot rewrite primary key of %s: %s", table, failure.error)
                    delta = delta + StatsDelta(failures=(failure,))
                    continue

                current = await self._inspector.primary_key(table)
                if current is not None and current.columns == target.columns:
                    logger.debug("%s already has primary key %s", table, target.columns)
                    self._advance((table,), TableState.PRIMARY_KEY_REWRITTEN)
                    continue

                statements = []
                dropped = set()
                if current is not None:
                    self._builder.allow(current.name)
                    statements.append(self._builder.drop_constraint(table, current.name))
                    dropped.add(current.name)
                for name in legacy.get(table, ()):
                    if name not in dropped:
                        statements.append(self._builder.drop_constraint(table, name))
                statements.append(self._builder.add_primary_key(table, target.columns))

                try:
                    failure = await self._rewrite(table, statements, phase)
                except TableOperationError as e:
                    log_error(logger, e, f"Rewriting primary key of {table}")
                    failure = TableFailure(phase.value, table, e.operation, e.original_error)
                if failure:
                    delta = delta + StatsDelta(failures=(failure,))
                    continue

            logger.info("Primary key of %s is now (%s)", table, ", ".join(target.columns))
            self._advance((table,), TableState.PRIMARY_KEY_REWRITTEN)
            delta = delta + StatsDelta(primary_keys_updated=1, constraints_added=1)
        return delta

    async def _rewrite(
        self,
        table: str,
        statements: Sequence[Statement],
        phase: MigrationPhase,
    ) -> TableFailure | None:
        if self._distribution is None:
            return await self._apply(statements, table, "rewrite primary key", phase)
        async with self._distribution.undistributed(table, self._catalog.tenant_column):
            return await self._apply(statements, table, "rewrite primary key", phase)

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------

    async def _index_ready(self, index: IndexSpec) -> tuple[bool, bool]:
        """
        Check an index can be created.

        Returns:
            (create, with_predicate). ``create`` is False when the table or an
            indexed column is missing, or the index already exists.
        """
        if not await self._inspector.table_exists(index.table_name):
            return False, False
        present = await self._inspector.existing_columns(index.table_name, index.columns)
        if len(present) != len(index.columns):
            logger.info("Skipping index %s: %s lacks indexed columns", index.name, index.table_name)
            return False, False
        if await self._inspector.index_exists(index.name):
            return False, False
        predicate = await self._inspector.existing_columns(
            index.table_name, index.predicate_columns
        )
        return True, len(predicate) == len(index.predicate_columns)

    async def recreate_unique_indexes(
        self,
        phase: MigrationPhase,
        recorded: Iterable[ConstraintRecord] = (),
    ) -> StatsDelta:
        """
        Create the catalog's tenant-qualified unique indexes, then recreate
        recorded unique constraints with the tenant column added.
        """
        delta = StatsDelta()
        tenant = self._catalog.tenant_column
        for index in self._catalog.unique_indexes:
            create, with_predicate = await self._index_ready(index)
            if not create:
                continue
            if tenant not in index.columns and await self._is_distributed(index.table_name):
                logger.warning(
                    "Skipping %s: unique index on distributed %s must include %s",
                    index.name,
                    index.table_name,
                    tenant,
                )
                continue
            with self._tracer.span(
                "tenantshard.reshaper.create_unique_index",
                {ATTR_DB_TABLE: index.table_name, ATTR_INDEX_NAME: index.name},
            ):
                failure = await self._apply(
                    [self._builder.create_index(index, with_predicate=with_predicate)],
                    index.table_name,
                    f"create unique index {index.name}",
                    phase,
                )
            if failure:
                delta = delta + StatsDelta(failures=(failure,))
            else:
                delta = delta + StatsDelta(indexes_created=1)

        for record in recorded:
            if record.constraint_type != ConstraintType.UNIQUE:
                continue
            self._admit(record)
            qualified = record.tenant_qualified(tenant)
            if not await self._inspector.table_exists(record.table):
                continue
            if await self._inspector.constraint_exists(record.table, record.name):
                continue
            failure = await self._apply(
                [self._builder.add_unique_constraint(qualified)],
                record.table,
                f"recreate unique {record.name}",
                phase,
            )
            if failure:
                delta = delta + StatsDelta(failures=(failure,))
            else:
                delta = delta + StatsDelta(constraints_added=1)

        self._advance_rewritten(TableState.UNIQUE_INDEXES_RECREATED, delta)
        logger.info(
            "Created %d unique index(es), recreated %d unique constraint(s)",
            delta.indexes_created,
            delta.constraints_added,
        )
        return delta

    async def _add_foreign_key(
        self,
        record: ConstraintRecord,
        phase: MigrationPhase,
    ) -> StatsDelta:
        if await self._inspector.constraint_exists(record.table, record.name):
            logger.debug("Foreign key %s already exists", record.name)
            return StatsDelta()
        with self._tracer.span(
            "tenantshard.reshaper.add_foreign_key",
            {ATTR_DB_TABLE: record.table, ATTR_CONSTRAINT_NAME: record.name},
        ):
            failure = await self._apply(
                [self._builder.add_foreign_key(record)],
                record.table,
                f"add foreign key {record.name}",
                phase,
            )
        if failure:
            return StatsDelta(failures=(failure,))
        return StatsDelta(foreign_keys_added=1, constraints_added=1)

    async def recreate_foreign_keys(
        self,
        phase: MigrationPhase,
        recorded: Iterable[ConstraintRecord] = (),
    ) -> StatsDelta:
        """
        Recreate foreign keys in two passes.

        The first pass covers the reshaped tables: keys recorded at teardown,
        then the catalog's tenant foreign keys. A key whose referenced table
        now has a tenant-first primary key is qualified with the tenant
        column on both sides; a key between one distributed and one local
        table is skipped. CASCADE actions become RESTRICT.

        The second pass adds the catalog's ordinary foreign keys between
        tables that stay local.
        """
        delta = StatsDelta()
        tenant = self._catalog.tenant_column
        reshaped = set(self._catalog.reshaped_tables)
        catalog_names = {
            fk.name for fk in (*self._catalog.tenant_foreign_keys, *self._catalog.local_foreign_keys)
        }

        for record in recorded:
            if not record.is_foreign_key or record.name in catalog_names:
                continue
            if record.referenced_table is None:
                continue
            self._admit(record)
            if not (
                await self._inspector.table_exists(record.table)
                and await self._inspector.table_exists(record.referenced_table)
            ):
                continue
            source = await self._is_distributed(record.table)
            target = await self._is_distributed(record.referenced_table)
            if source != target:
                logger.warning(
                    "Not recreating %s: %s and %s are not both distributed",
                    record.name,
                    record.table,
                    record.referenced_table,
                )
                continue
            qualify = record.referenced_table in reshaped and await self._inspector.column_exists(
                record.table, tenant
            )
            rebuilt = record.tenant_qualified(tenant) if qualify else record
            delta = delta + await self._add_foreign_key(rebuilt.cluster_compatible(), phase)

        for fk in self._catalog.tenant_foreign_keys:
            if not (
                await self._inspector.table_exists(fk.table_name)
                and await self._inspector.table_exists(fk.referenced_table)
            ):
                continue
            delta = delta + await self._add_foreign_key(fk.to_record(tenant, qualify=True), phase)

        self._advance_rewritten(TableState.FOREIGN_KEYS_RECREATED, delta)

        for fk in self._catalog.local_foreign_keys:
            if not (
                await self._inspector.table_exists(fk.table_name)
                and await self._inspector.table_exists(fk.referenced_table)
            ):
                continue
            if await self._is_distributed(fk.table_name) or await self._is_distributed(
                fk.referenced_table
            ):
                logger.warning("Not adding %s: a table in it is distributed", fk.name)
                continue
            delta = delta + await self._add_foreign_key(fk.to_record(tenant, qualify=False), phase)

        logger.info("Added %d foreign key(s)", delta.foreign_keys_added)
        return delta

    async def create_performance_indexes(self, phase: MigrationPhase) -> StatsDelta:
        delta = StatsDelta()
        for index in self._catalog.performance_indexes:
            create, with_predicate = await self._index_ready(index)
            if not create:
                continue
            if index.predicate_columns and not with_predicate:
                logger.info("Skipping index %s: predicate columns missing", index.name)
                continue
            failure = await self._apply(
                [self._builder.create_index(index)],
                index.table_name,
                f"create index {index.name}",
                phase,
            )
            if failure:
                delta = delta + StatsDelta(failures=(failure,))
            else:
                delta = delta + StatsDelta(indexes_created=1)
        self._advance_rewritten(TableState.PERFORMANCE_INDEXES_CREATED, delta)
        logger.info("Created %d performance index(es)", delta.indexes_created)
        return delta

    def states(self) -> dict[str, str]:
        """Current state of every table touched in this run."""
        return {table: state.value for table, state in sorted(self._states.items())}


__all__ = ["SchemaReshaper", "TeardownResult"]
