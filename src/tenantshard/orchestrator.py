"""
Migration orchestration.

MigrationOrchestrator runs the fixed, ordered list of phases that turns the
single-tenant schema into a tenant-partitioned one. Each phase is a
function of the MigrationContext returning a PhaseResult; a single driver
loop runs them in order, applies their statistics and stops only when a
result is fatal.

Only the first two phases (resolve the mapping, validate coverage) can
abort the run. Every later phase is best effort per table: failures are
recorded in the statistics and the run continues.

Example:
    >>> orchestrator = MigrationOrchestrator(engine, config)
    >>> report = await orchestrator.run()
    >>> for line in report.summary_lines():
    ...     print(line)
    >>> raise SystemExit(report.exit_code)
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from contextlib import AbstractAsyncContextManager, nullcontext
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from tenantshard._connection import DatabaseTarget
from tenantshard.backfill import BackfillEngine
from tenantshard.catalog import TableCatalog, default_catalog
from tenantshard.config import MigrationConfig
from tenantshard.context import MigrationContext
from tenantshard.coverage import CoverageValidator
from tenantshard.distribution import DistributionController, DistributionStatus
from tenantshard.exceptions import (
    FatalPreconditionError,
    MigrationLockError,
    TableOperationError,
    log_error,
)
from tenantshard.inspector import SchemaInspector
from tenantshard.locks import AdvisoryLock
from tenantshard.mapping import MappingResolver
from tenantshard.metrics import PartitionMetrics
from tenantshard.models import (
    ConstraintType,
    MigrationPhase,
    MigrationStats,
    PhaseResult,
    StatsDelta,
    TableFailure,
    TableState,
)
from tenantshard.observability import ATTR_PHASE, Tracer, create_tracer
from tenantshard.reshaper import SchemaReshaper
from tenantshard.sql import SqlBuilder

logger = logging.getLogger(__name__)

PhaseFunction = Callable[[MigrationContext], Awaitable[PhaseResult]]


@dataclass(frozen=True)
class Phase:
    """
    One step of the run.

    Attributes:
        name: Phase identifier.
        run: Coroutine function executing the phase.
        fatal_on_error: Treat any exception raised by the phase as fatal.
    """

    name: MigrationPhase
    run: PhaseFunction
    fatal_on_error: bool = False


@dataclass(frozen=True)
class MigrationReport:
    """
    Final outcome of a run.

    Attributes:
        stats: Run statistics.
        phase_results: Result of every phase that ran, in order.
        fatal_error: Description of the fatal condition that stopped the run.
        table_states: Reshaping state reached by each table touched.
    """

    stats: MigrationStats
    phase_results: tuple[PhaseResult, ...] = ()
    fatal_error: str | None = None
    table_states: dict[str, str] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        """1 if a fatal precondition stopped the run, else 0."""
        return 1 if self.fatal_error else 0

    @property
    def failed_phases(self) -> tuple[MigrationPhase, ...]:
        return tuple(r.phase for r in self.phase_results if not r.ok)

    @property
    def incomplete_tables(self) -> tuple[str, ...]:
        """Tables that stopped short of the last reshaping state."""
        done = TableState.PERFORMANCE_INDEXES_CREATED.value
        return tuple(t for t, s in self.table_states.items() if s != done)

    def summary_lines(self) -> list[str]:
        lines = ["Migration summary", *self.stats.summary_lines()]
        if self.failed_phases:
            lines.append(
                "Phases with failures: " + ", ".join(p.value for p in self.failed_phases)
            )
        if self.table_states:
            complete = len(self.table_states) - len(self.incomplete_tables)
            lines.append(f"Tables fully reshaped: {complete}/{len(self.table_states)}")
            if self.incomplete_tables:
                lines.append(
                    "Tables not fully reshaped: "
                    + ", ".join(f"{t} ({self.table_states[t]})" for t in self.incomplete_tables)
                )
        if self.fatal_error:
            lines.append(f"Aborted: {self.fatal_error}")
        return lines

    def to_dict(self) -> dict[str, Any]:
        return {
            "stats": self.stats.to_dict(),
            "phases": [r.to_dict() for r in self.phase_results],
            "fatal_error": self.fatal_error,
            "exit_code": self.exit_code,
            "table_states": dict(self.table_states),
        }


class MigrationOrchestrator:
    """
    Sequences the migration components into the fixed phase order.

    Args:
        conn: Database engine. An AsyncEngine is required for the run lock
            and for per-chunk transactions.
        config: Run configuration.
        catalog: Table catalog (default: the mentoring schema).
        inspector: Schema inspector shared by all components.
        resolver: Mapping resolver.
        validator: Coverage validator.
        distribution: Distribution controller.
        backfill: Backfill engine.
        reshaper: Schema reshaper.
        lock: Run lock. Created from the config when conn is an engine.
        metrics: Metric instruments.
        tracer: Optional tracer.
    """

    def __init__(
        self,
        conn: DatabaseTarget,
        config: MigrationConfig,
        *,
        catalog: TableCatalog | None = None,
        inspector: SchemaInspector | None = None,
        resolver: MappingResolver | None = None,
        validator: CoverageValidator | None = None,
        distribution: DistributionController | None = None,
        backfill: BackfillEngine | None = None,
        reshaper: SchemaReshaper | None = None,
        lock: AdvisoryLock | None = None,
        metrics: PartitionMetrics | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        self._conn = conn
        self._config = config
        self._catalog = catalog or default_catalog()
        self._builder = SqlBuilder(self._catalog.identifiers())
        self._tracer = tracer or create_tracer(__name__, config.enable_tracing)
        tracing = config.enable_tracing

        self._inspector = inspector or SchemaInspector(conn)
        self._resolver = resolver or MappingResolver(conn)
        self._validator = validator or CoverageValidator(
            conn,
            self._catalog,
            self._builder,
            inspector=self._inspector,
            enable_tracing=tracing,
        )
        self._distribution = distribution or DistributionController(
            conn, self._builder, inspector=self._inspector, enable_tracing=tracing
        )
        self._backfill = backfill or BackfillEngine(
            conn,
            self._builder,
            inspector=self._inspector,
            distribution=self._distribution,
            batch_size=config.batch_size,
            retry=config.update_retry,
            partition_column=self._catalog.tenant_column,
            enable_tracing=tracing,
        )
        self._reshaper = reshaper or SchemaReshaper(
            conn,
            self._catalog,
            self._builder,
            inspector=self._inspector,
            distribution=self._distribution,
            enable_tracing=tracing,
        )
        if lock is None and isinstance(conn, AsyncEngine):
            lock = AdvisoryLock(
                conn, config.lock_key, timeout=config.lock_timeout, enable_tracing=tracing
            )
        self._lock = lock
        self._metrics = metrics or PartitionMetrics(
            run_id=str(uuid4()), enable_metrics=config.enable_metrics
        )

    @property
    def metrics(self) -> PartitionMetrics:
        return self._metrics

    def new_context(self) -> MigrationContext:
        return MigrationContext.create(self._config, self._catalog, self._builder)

    def phases(self) -> list[Phase]:
        """The phases in execution order."""
        return [
            Phase(MigrationPhase.RESOLVE_MAPPING, self.resolve_mapping, fatal_on_error=True),
            Phase(MigrationPhase.VALIDATE_COVERAGE, self.validate_coverage, fatal_on_error=True),
            Phase(MigrationPhase.PROVISION_COLUMNS, self.provision_columns),
            Phase(MigrationPhase.BACKFILL_ORGANIZATION_TABLES, self.backfill_organization_tables),
            Phase(MigrationPhase.BACKFILL_USER_TABLES, self.backfill_user_tables),
            Phase(MigrationPhase.ENFORCE_NOT_NULL, self.enforce_not_null),
            Phase(MigrationPhase.DROP_OBSOLETE_TABLES, self.drop_obsolete_tables),
            Phase(MigrationPhase.TEARDOWN, self.teardown),
            Phase(MigrationPhase.REWRITE_PRIMARY_KEYS, self.rewrite_primary_keys),
            Phase(MigrationPhase.DISTRIBUTE, self.distribute),
            Phase(MigrationPhase.UNDISTRIBUTE_EXCLUDED, self.undistribute_excluded),
            Phase(MigrationPhase.REBUILD_UNIQUE_INDEXES, self.rebuild_unique_indexes),
            Phase(MigrationPhase.REBUILD_FOREIGN_KEYS, self.rebuild_foreign_keys),
            Phase(MigrationPhase.REBUILD_PERFORMANCE_INDEXES, self.rebuild_performance_indexes),
            Phase(MigrationPhase.FINAL_VERIFICATION, self.final_verification),
        ]

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def run(self) -> MigrationReport:
        """
        Run every phase under the run lock.

        Returns:
            MigrationReport; its exit_code is non-zero only when a fatal
            precondition (or the run lock) stopped the run.
        """
        ctx = self.new_context()
        logger.info("Starting tenant partitioning migration")
        guard: AbstractAsyncContextManager[Any] = (
            self._lock.hold() if self._lock is not None else nullcontext()
        )
        try:
            async with guard:
                report = await self.run_phases(ctx, self.phases())
        except MigrationLockError as e:
            log_error(logger, e, "Acquiring run lock")
            ctx.stats.finish()
            return MigrationReport(ctx.stats, fatal_error=str(e))
        return report

    async def run_phases(self, ctx: MigrationContext, phases: Sequence[Phase]) -> MigrationReport:
        """Run phases in order, stopping at the first fatal result."""
        results: list[PhaseResult] = []
        fatal_error: str | None = None

        for phase in phases:
            result = await self._run_phase(ctx, phase)
            ctx.stats.apply(result.stats_delta)
            self._metrics.record_delta(result.stats_delta)
            results.append(result)

            if result.fatal:
                fatal_error = result.error or phase.name.value
                logger.critical("Migration aborted in %s: %s", phase.name.value, fatal_error)
                break
            if not result.ok:
                logger.warning(
                    "Phase %s finished with %d failure(s)",
                    phase.name.value,
                    len(result.stats_delta.failures),
                )

        ctx.stats.finish()
        report = MigrationReport(ctx.stats, tuple(results), fatal_error, self._reshaper.states())
        for table in report.incomplete_tables:
            logger.warning("%s stopped at %s", table, report.table_states[table])
        logger.info("Migration finished in %s", ctx.stats.formatted_duration)
        return report

    async def _run_phase(self, ctx: MigrationContext, phase: Phase) -> PhaseResult:
        name = phase.name.value
        logger.info("Phase %s started", name)
        with self._tracer.span("tenantshard.orchestrator.phase", {ATTR_PHASE: name}):
            with self._metrics.time_phase(name):
                try:
                    return await phase.run(ctx)
                except FatalPreconditionError as e:
                    log_error(logger, e, f"Phase {name}")
                    return PhaseResult.aborted(phase.name, e)
                except Exception as e:
                    if phase.fatal_on_error:
                        logger.critical("Phase %s failed: %s", name, e, exc_info=True)
                        return PhaseResult.aborted(phase.name, e)
                    logger.error("Phase %s failed: %s", name, e, exc_info=True)
                    failure = TableFailure(name, "*", name, str(e))
                    return PhaseResult(
                        phase.name,
                        ok=False,
                        stats_delta=StatsDelta(failures=(failure,)),
                        error=str(e),
                    )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def resolve_mapping(self, ctx: MigrationContext) -> PhaseResult:
        registry = None
        if ctx.config.restrict_to_registry:
            registry = await self._resolver.load_registry()
        ctx.mapping = self._resolver.load(ctx.config.mapping_path, registry=registry)
        if not ctx.mapping:
            logger.warning("The organization mapping is empty")
        return PhaseResult(MigrationPhase.RESOLVE_MAPPING, ok=True)

    async def validate_coverage(self, ctx: MigrationContext) -> PhaseResult:
        await self._validator.validate(ctx.require_mapping())
        try:
            orphans = await self._validator.find_orphaned_references()
        except SQLAlchemyError as e:
            logger.warning("Orphaned reference report failed: %s", e)
            orphans = []
        if orphans:
            logger.warning(
                "%d relation(s) have orphaned references; their foreign keys may not be recreated",
                len(orphans),
            )
        return PhaseResult(MigrationPhase.VALIDATE_COVERAGE, ok=True)

    async def provision_columns(self, ctx: MigrationContext) -> PhaseResult:
        phase = MigrationPhase.PROVISION_COLUMNS
        return PhaseResult.from_delta(phase, await self._reshaper.provision_tenant_columns(phase))

    async def backfill_organization_tables(self, ctx: MigrationContext) -> PhaseResult:
        """Backfill tables keyed by organization id, then platform-wide tables."""
        phase = MigrationPhase.BACKFILL_ORGANIZATION_TABLES
        mapping = ctx.require_mapping()
        delta = StatsDelta()
        for spec in ctx.catalog.organization_tables:
            result = await self._backfill.backfill(spec, mapping, phase=phase)
            delta = delta + result.to_delta()

        if ctx.config.default_tenant_code:
            for spec in ctx.catalog.static_tables:
                result = await self._backfill.backfill_static(
                    spec,
                    ctx.config.default_tenant_code,
                    ctx.config.default_organization_code,
                    phase=phase,
                )
                delta = delta + result.to_delta()
        elif ctx.catalog.static_tables:
            logger.info(
                "No default tenant configured; skipping %s",
                ", ".join(s.table_name for s in ctx.catalog.static_tables),
            )
        return PhaseResult.from_delta(phase, delta)

    async def backfill_user_tables(self, ctx: MigrationContext) -> PhaseResult:
        phase = MigrationPhase.BACKFILL_USER_TABLES
        mapping = ctx.require_mapping()
        delta = StatsDelta()
        for spec in ctx.catalog.user_tables:
            result = await self._backfill.backfill(spec, mapping, phase=phase)
            delta = delta + result.to_delta()
        return PhaseResult.from_delta(phase, delta)

    async def enforce_not_null(self, ctx: MigrationContext) -> PhaseResult:
        phase = MigrationPhase.ENFORCE_NOT_NULL
        if not ctx.config.enforce_not_null:
            logger.info("NOT NULL enforcement disabled")
            return PhaseResult(phase, ok=True)
        return PhaseResult.from_delta(phase, await self._reshaper.enforce_not_null(phase))

    async def drop_obsolete_tables(self, ctx: MigrationContext) -> PhaseResult:
        phase = MigrationPhase.DROP_OBSOLETE_TABLES
        if not ctx.config.drop_obsolete_tables:
            return PhaseResult(phase, ok=True)
        return PhaseResult.from_delta(phase, await self._reshaper.drop_obsolete_tables(phase))

    async def teardown(self, ctx: MigrationContext) -> PhaseResult:
        phase = MigrationPhase.TEARDOWN
        delta = await self._reshaper.drop_indexes(phase)
        foreign_keys = await self._reshaper.drop_foreign_keys(phase)
        unique = await self._reshaper.drop_problem_unique_constraints(phase)
        ctx.dropped_constraints.extend(foreign_keys.recorded)
        ctx.dropped_constraints.extend(unique.recorded)
        return PhaseResult.from_delta(phase, delta + foreign_keys.delta + unique.delta)

    async def rewrite_primary_keys(self, ctx: MigrationContext) -> PhaseResult:
        phase = MigrationPhase.REWRITE_PRIMARY_KEYS
        return PhaseResult.from_delta(phase, await self._reshaper.rewrite_primary_keys(phase))

    async def distribute(self, ctx: MigrationContext) -> PhaseResult:
        phase = MigrationPhase.DISTRIBUTE
        ctx.citus_available = await self._distribution.is_available()
        if not ctx.citus_available:
            logger.info("Citus not installed; all tables stay local")
            return PhaseResult(phase, ok=True)

        delta = StatsDelta()
        for table in ctx.catalog.reshaped_tables:
            if not await self._inspector.table_exists(table):
                continue
            try:
                status = await self._distribution.distribute(table, ctx.catalog.tenant_column)
            except TableOperationError as e:
                log_error(logger, e, f"Distributing {table}")
                failure = TableFailure(
                    phase.value, table, e.operation, e.original_error, e.statement_shape
                )
                delta = delta + StatsDelta(failures=(failure,))
                continue
            if status.is_distributed:
                delta = delta + StatsDelta(tables_sharded=1)
        return PhaseResult.from_delta(phase, delta)

    async def undistribute_excluded(self, ctx: MigrationContext) -> PhaseResult:
        phase = MigrationPhase.UNDISTRIBUTE_EXCLUDED
        if not ctx.citus_available:
            return PhaseResult(phase, ok=True)

        delta = StatsDelta()
        for table in ctx.catalog.excluded_tables:
            if not await self._inspector.table_exists(table):
                continue
            try:
                status = await self._distribution.undistribute(table)
            except TableOperationError as e:
                log_error(logger, e, f"Undistributing {table}")
                failure = TableFailure(
                    phase.value, table, e.operation, e.original_error, e.statement_shape
                )
                delta = delta + StatsDelta(failures=(failure,))
                continue
            if status == DistributionStatus.UNDISTRIBUTED:
                delta = delta + StatsDelta(tables_unsharded=1)
        return PhaseResult.from_delta(phase, delta)

    async def rebuild_unique_indexes(self, ctx: MigrationContext) -> PhaseResult:
        phase = MigrationPhase.REBUILD_UNIQUE_INDEXES
        delta = await self._reshaper.recreate_unique_indexes(phase, ctx.dropped_constraints)
        return PhaseResult.from_delta(phase, delta)

    async def rebuild_foreign_keys(self, ctx: MigrationContext) -> PhaseResult:
        phase = MigrationPhase.REBUILD_FOREIGN_KEYS
        delta = await self._reshaper.recreate_foreign_keys(phase, ctx.dropped_constraints)
        return PhaseResult.from_delta(phase, delta)

    async def rebuild_performance_indexes(self, ctx: MigrationContext) -> PhaseResult:
        phase = MigrationPhase.REBUILD_PERFORMANCE_INDEXES
        return PhaseResult.from_delta(phase, await self._reshaper.create_performance_indexes(phase))

    async def final_verification(self, ctx: MigrationContext) -> PhaseResult:
        """
        Confirm no null tenant values remain and report the final schema.

        Remaining nulls make the phase not ok but never fatal.
        """
        phase = MigrationPhase.FINAL_VERIFICATION
        verification = await self._validator.verify_no_null_tenants()
        primary_keys = await self._inspector.count_constraints(ConstraintType.PRIMARY_KEY)
        foreign_keys = await self._inspector.count_constraints(ConstraintType.FOREIGN_KEY)
        logger.info("Schema has %d primary key(s), %d foreign key(s)", primary_keys, foreign_keys)

        if ctx.citus_available:
            existing = [
                t for t in ctx.catalog.reshaped_tables if await self._inspector.table_exists(t)
            ]
            await self._distribution.verify_distribution(existing)

        if verification.clean:
            logger.info("Verification passed: no null %s values", ctx.catalog.tenant_column)
            return PhaseResult(phase, ok=True)
        remaining = verification.tables_with_nulls
        return PhaseResult(
            phase,
            ok=False,
            error=f"{len(remaining)} table(s) still have null {ctx.catalog.tenant_column}: "
            + ", ".join(f"{t} ({n})" for t, n in sorted(remaining.items())),
        )


__all__ = [
    "MigrationOrchestrator",
    "MigrationReport",
    "Phase",
    "PhaseFunction",
]
