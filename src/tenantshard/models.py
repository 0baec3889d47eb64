"""
Data models for the tenant partitioning migration engine.

This module defines the catalog entries, constraint snapshots, run
statistics and phase results shared by every component.

Key Models:
    - TableSpec: How one table's tenant columns are backfilled
    - PrimaryKeySpec / IndexSpec / ForeignKeySpec: Target schema objects
    - ConstraintRecord: Snapshot of a dropped constraint
    - MigrationStats / StatsDelta: Run counters and per-phase increments
    - PhaseResult: Outcome of one orchestrator phase
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, fields, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class LookupStrategy(Enum):
    """
    How a table's rows are linked to an organization id.

    The backfill engine builds its join from this value.
    """

    DIRECT_ORG_ID = "direct_org_id"
    """The table stores organization_id itself."""

    VIA_USER_EXTENSION = "via_user_extension"
    """The table stores a user id resolved through user_extensions."""

    VIA_SESSION_THEN_USER_EXTENSION = "via_session_then_user_extension"
    """The table stores a session id resolved through sessions.created_by."""

    STATIC_DEFAULT = "static_default"
    """The table has no organization link and receives the default tenant."""

    @property
    def joins_user_extension(self) -> bool:
        """True if organization ids are reached through user_extensions."""
        return self in (
            LookupStrategy.VIA_USER_EXTENSION,
            LookupStrategy.VIA_SESSION_THEN_USER_EXTENSION,
        )


class ConstraintType(Enum):
    """Constraint kinds as reported by pg_constraint.contype."""

    PRIMARY_KEY = "PRIMARY KEY"
    FOREIGN_KEY = "FOREIGN KEY"
    UNIQUE = "UNIQUE"
    CHECK = "CHECK"

    @classmethod
    def from_code(cls, code: str) -> ConstraintType:
        """Map a pg_constraint.contype code to a ConstraintType."""
        codes = {
            "p": cls.PRIMARY_KEY,
            "f": cls.FOREIGN_KEY,
            "u": cls.UNIQUE,
            "c": cls.CHECK,
        }
        return codes[code]


class ReferentialAction(Enum):
    """ON UPDATE / ON DELETE actions of a foreign key."""

    NO_ACTION = "NO ACTION"
    RESTRICT = "RESTRICT"
    CASCADE = "CASCADE"
    SET_NULL = "SET NULL"
    SET_DEFAULT = "SET DEFAULT"

    @classmethod
    def from_code(cls, code: str) -> ReferentialAction:
        """Map a pg_constraint.confupdtype/confdeltype code to an action."""
        codes = {
            "a": cls.NO_ACTION,
            "r": cls.RESTRICT,
            "c": cls.CASCADE,
            "n": cls.SET_NULL,
            "d": cls.SET_DEFAULT,
        }
        return codes[code]

    @property
    def cluster_compatible(self) -> ReferentialAction:
        """Citus rejects cascading actions between shards; use RESTRICT."""
        if self == ReferentialAction.CASCADE:
            return ReferentialAction.RESTRICT
        return self


class TableState(Enum):
    """
    Reshaping progress of a single table.

    States advance in declaration order; ``TableState.order`` exposes the
    position so callers can compare progress.
    """

    ORIGINAL_CONSTRAINTS = "original_constraints"
    INDEXES_DROPPED = "indexes_dropped"
    FOREIGN_KEYS_DROPPED = "foreign_keys_dropped"
    PROBLEM_UNIQUE_CONSTRAINTS_DROPPED = "problem_unique_constraints_dropped"
    PRIMARY_KEY_REWRITTEN = "primary_key_rewritten"
    UNIQUE_INDEXES_RECREATED = "unique_indexes_recreated"
    FOREIGN_KEYS_RECREATED = "foreign_keys_recreated"
    PERFORMANCE_INDEXES_CREATED = "performance_indexes_created"

    @property
    def order(self) -> int:
        return list(TableState).index(self)


class MigrationPhase(Enum):
    """
    Phases of a migration run, in execution order.

    The order is fixed; the orchestrator never reorders or skips ahead.
    """

    RESOLVE_MAPPING = "resolve_mapping"
    """Load the organization mapping source."""

    VALIDATE_COVERAGE = "validate_coverage"
    """Confirm every organization id in the database is mapped."""

    PROVISION_COLUMNS = "provision_columns"
    """Add missing tenant columns to catalog tables."""

    BACKFILL_ORGANIZATION_TABLES = "backfill_organization_tables"
    """Backfill tables keyed by organization id."""

    BACKFILL_USER_TABLES = "backfill_user_tables"
    """Backfill tables keyed by user id, directly or through sessions."""

    ENFORCE_NOT_NULL = "enforce_not_null"
    """Set tenant columns NOT NULL where no nulls remain."""

    DROP_OBSOLETE_TABLES = "drop_obsolete_tables"
    """Remove tables the partitioned schema no longer has."""

    TEARDOWN = "teardown"
    """Drop indexes, foreign keys and problem unique constraints."""

    REWRITE_PRIMARY_KEYS = "rewrite_primary_keys"
    """Install tenant-first composite primary keys."""

    DISTRIBUTE = "distribute"
    """Convert eligible tables to distributed form."""

    UNDISTRIBUTE_EXCLUDED = "undistribute_excluded"
    """Keep excluded tables as local tables."""

    REBUILD_UNIQUE_INDEXES = "rebuild_unique_indexes"
    """Create tenant-qualified unique indexes."""

    REBUILD_FOREIGN_KEYS = "rebuild_foreign_keys"
    """Recreate foreign keys for sharded, then non-sharded tables."""

    REBUILD_PERFORMANCE_INDEXES = "rebuild_performance_indexes"
    """Create lookup indexes."""

    FINAL_VERIFICATION = "final_verification"
    """Confirm no null tenant values remain and report distribution."""


@dataclass(frozen=True)
class TableSpec:
    """
    Backfill behavior of one table.

    Attributes:
        table_name: Table to update.
        identifier_column: Column holding the organization, user or session id.
        lookup_strategy: How identifier_column resolves to an organization id.
        update_columns: Tenant columns written by the backfill.
        has_partition_key: Whether the table is distributed by the tenant column.
    """

    table_name: str
    identifier_column: str
    lookup_strategy: LookupStrategy
    update_columns: tuple[str, ...] = ("tenant_code",)
    has_partition_key: bool = True

    def __post_init__(self) -> None:
        if not self.update_columns:
            raise ValueError(f"{self.table_name}: update_columns must not be empty")

    @property
    def identifiers(self) -> tuple[str, ...]:
        """All SQL identifiers this table contributes to the allow-list."""
        return (self.table_name, self.identifier_column, *self.update_columns)


@dataclass(frozen=True)
class PrimaryKeySpec:
    """
    Target composite primary key of a table.

    Attributes:
        table_name: Table owning the key.
        columns: Ordered key columns.
    """

    table_name: str
    columns: tuple[str, ...]

    def includes(self, column: str) -> bool:
        return column in self.columns

    @property
    def constraint_name(self) -> str:
        """Name PostgreSQL assigns to an unnamed ADD PRIMARY KEY."""
        return f"{self.table_name}_pkey"


@dataclass(frozen=True)
class IndexSpec:
    """
    An index the rebuild phases create.

    The partial-index predicate is expressed as columns so every name in it
    passes the identifier allow-list.

    Attributes:
        name: Index name.
        table_name: Indexed table.
        columns: Indexed columns, in order.
        unique: Create a UNIQUE index.
        where_null: Columns that must be NULL for a row to be indexed.
        where_not_null: Columns that must be NOT NULL for a row to be indexed.
    """

    name: str
    table_name: str
    columns: tuple[str, ...]
    unique: bool = False
    where_null: tuple[str, ...] = ()
    where_not_null: tuple[str, ...] = ()

    @property
    def predicate_columns(self) -> tuple[str, ...]:
        return (*self.where_null, *self.where_not_null)

    @property
    def identifiers(self) -> tuple[str, ...]:
        return (self.name, self.table_name, *self.columns, *self.predicate_columns)


@dataclass(frozen=True)
class ConstraintRecord:
    """
    Snapshot of a constraint as it existed when it was dropped.

    Created when the reshaper drops a constraint, consumed when it is
    recreated in tenant-aware form, discarded at the end of the run.

    Attributes:
        table: Owning table.
        name: Constraint name.
        constraint_type: Kind of constraint.
        columns: Constrained columns, in key order.
        referenced_table: Referenced table (foreign keys only).
        referenced_columns: Referenced columns (foreign keys only).
        on_update: ON UPDATE action (foreign keys only).
        on_delete: ON DELETE action (foreign keys only).
    """

    table: str
    name: str
    constraint_type: ConstraintType
    columns: tuple[str, ...]
    referenced_table: str | None = None
    referenced_columns: tuple[str, ...] = ()
    on_update: ReferentialAction = ReferentialAction.NO_ACTION
    on_delete: ReferentialAction = ReferentialAction.NO_ACTION

    @property
    def is_foreign_key(self) -> bool:
        return self.constraint_type == ConstraintType.FOREIGN_KEY

    def includes(self, column: str) -> bool:
        return column in self.columns

    def tenant_qualified(self, tenant_column: str) -> ConstraintRecord:
        """
        Return a copy whose key columns start with the tenant column.

        For foreign keys the referenced side is qualified the same way so
        the key still spans matching column lists.
        """
        columns = self.columns
        referenced = self.referenced_columns
        if tenant_column not in columns:
            columns = (tenant_column, *columns)
            if self.is_foreign_key:
                referenced = (tenant_column, *referenced)
        return replace(self, columns=columns, referenced_columns=referenced)

    def cluster_compatible(self) -> ConstraintRecord:
        """Return a copy with CASCADE actions downgraded to RESTRICT."""
        return replace(
            self,
            on_update=self.on_update.cluster_compatible,
            on_delete=self.on_delete.cluster_compatible,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "table": self.table,
            "name": self.name,
            "constraint_type": self.constraint_type.value,
            "columns": list(self.columns),
            "referenced_table": self.referenced_table,
            "referenced_columns": list(self.referenced_columns),
            "on_update": self.on_update.value,
            "on_delete": self.on_delete.value,
        }


@dataclass(frozen=True)
class ForeignKeySpec:
    """
    A foreign key the rebuild phase installs regardless of what was dropped.

    Attributes:
        name: Constraint name.
        table_name: Referencing table.
        columns: Referencing columns, without the tenant column.
        referenced_table: Referenced table.
        referenced_columns: Referenced columns, without the tenant column.
        tenant_qualified: Prefix both sides with the tenant column when
            the tables are distributed.
    """

    name: str
    table_name: str
    columns: tuple[str, ...]
    referenced_table: str
    referenced_columns: tuple[str, ...]
    tenant_qualified: bool = True

    def to_record(self, tenant_column: str, qualify: bool) -> ConstraintRecord:
        """
        Build the ConstraintRecord to install.

        Args:
            tenant_column: Partition column name.
            qualify: Whether to prefix both sides with the tenant column.

        Returns:
            A RESTRICT/RESTRICT foreign key record.
        """
        record = ConstraintRecord(
            table=self.table_name,
            name=self.name,
            constraint_type=ConstraintType.FOREIGN_KEY,
            columns=self.columns,
            referenced_table=self.referenced_table,
            referenced_columns=self.referenced_columns,
            on_update=ReferentialAction.RESTRICT,
            on_delete=ReferentialAction.RESTRICT,
        )
        if qualify and self.tenant_qualified:
            return record.tenant_qualified(tenant_column)
        return record

    @property
    def identifiers(self) -> tuple[str, ...]:
        return (
            self.name,
            self.table_name,
            *self.columns,
            self.referenced_table,
            *self.referenced_columns,
        )


@dataclass(frozen=True)
class TableFailure:
    """
    A table-level failure recorded in the run statistics.

    Attributes:
        phase: Phase in which the failure happened.
        table: Table involved.
        operation: Operation that failed.
        error: Error message.
        statement_shape: The attempted SQL, if any.
    """

    phase: str
    table: str
    operation: str
    error: str
    statement_shape: str | None = None

    def __str__(self) -> str:
        return f"[{self.phase}] {self.table}: {self.operation} failed: {self.error}"


@dataclass(frozen=True)
class StatsDelta:
    """
    Increments a phase contributes to MigrationStats.

    Deltas are added together with ``+`` and applied once per phase by the
    orchestrator.
    """

    rows_updated: int = 0
    rows_failed: int = 0
    tables_sharded: int = 0
    tables_unsharded: int = 0
    constraints_added: int = 0
    constraints_dropped: int = 0
    primary_keys_updated: int = 0
    foreign_keys_added: int = 0
    indexes_created: int = 0
    indexes_dropped: int = 0
    failures: tuple[TableFailure, ...] = ()

    def __add__(self, other: StatsDelta) -> StatsDelta:
        if not isinstance(other, StatsDelta):
            return NotImplemented
        values: dict[str, Any] = {}
        for f in fields(self):
            values[f.name] = getattr(self, f.name) + getattr(other, f.name)
        return StatsDelta(**values)

    @property
    def is_empty(self) -> bool:
        return self == StatsDelta()


@dataclass
class MigrationStats:
    """
    Mutable counters for one migration run.

    Owned by the orchestrator and written only through ``apply``; phases run
    sequentially so no locking is needed.
    """

    rows_updated: int = 0
    rows_failed: int = 0
    tables_sharded: int = 0
    tables_unsharded: int = 0
    constraints_added: int = 0
    constraints_dropped: int = 0
    primary_keys_updated: int = 0
    foreign_keys_added: int = 0
    indexes_created: int = 0
    indexes_dropped: int = 0
    failures: list[TableFailure] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    _started_monotonic: float = field(default_factory=time.monotonic, init=False, repr=False)
    _finished_monotonic: float | None = field(default=None, init=False, repr=False)

    def apply(self, delta: StatsDelta) -> None:
        """Add a phase's increments to the counters."""
        for f in fields(delta):
            if f.name == "failures":
                self.failures.extend(delta.failures)
            else:
                setattr(self, f.name, getattr(self, f.name) + getattr(delta, f.name))

    def finish(self) -> None:
        """Freeze the run duration."""
        if self._finished_monotonic is None:
            self._finished_monotonic = time.monotonic()

    @property
    def duration_seconds(self) -> float:
        end = self._finished_monotonic if self._finished_monotonic is not None else time.monotonic()
        return max(0.0, end - self._started_monotonic)

    @property
    def formatted_duration(self) -> str:
        """Duration as ``Xm Ys``."""
        total = int(self.duration_seconds)
        minutes, seconds = divmod(total, 60)
        return f"{minutes}m {seconds}s"

    def summary_lines(self) -> list[str]:
        """Lines of the end-of-run statistics summary."""
        lines = [
            f"Duration: {self.formatted_duration}",
            f"Rows updated: {self.rows_updated}",
            f"Rows failed: {self.rows_failed}",
            f"Tables sharded: {self.tables_sharded}",
            f"Tables unsharded: {self.tables_unsharded}",
            f"Primary keys updated: {self.primary_keys_updated}",
            f"Constraints added: {self.constraints_added}",
            f"Foreign keys added: {self.foreign_keys_added}",
            f"Indexes created: {self.indexes_created}",
            f"Table failures: {len(self.failures)}",
        ]
        lines.extend(f"  {failure}" for failure in self.failures)
        return lines

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "rows_updated": self.rows_updated,
            "rows_failed": self.rows_failed,
            "tables_sharded": self.tables_sharded,
            "tables_unsharded": self.tables_unsharded,
            "constraints_added": self.constraints_added,
            "constraints_dropped": self.constraints_dropped,
            "primary_keys_updated": self.primary_keys_updated,
            "foreign_keys_added": self.foreign_keys_added,
            "indexes_created": self.indexes_created,
            "indexes_dropped": self.indexes_dropped,
            "failures": [str(failure) for failure in self.failures],
            "started_at": self.started_at.isoformat(),
            "duration_seconds": self.duration_seconds,
        }


@dataclass(frozen=True)
class PhaseResult:
    """
    Outcome of one orchestrator phase.

    Attributes:
        phase: The phase that produced this result.
        ok: False if anything in the phase failed.
        stats_delta: Counter increments to apply.
        fatal: True if the run must stop after this phase.
        error: Description of a phase-level error, if any.
    """

    phase: MigrationPhase
    ok: bool
    stats_delta: StatsDelta = field(default_factory=StatsDelta)
    fatal: bool = False
    error: str | None = None

    @classmethod
    def from_delta(cls, phase: MigrationPhase, delta: StatsDelta) -> PhaseResult:
        """A non-fatal result whose ``ok`` reflects recorded failures."""
        return cls(phase=phase, ok=not delta.failures, stats_delta=delta)

    @classmethod
    def aborted(cls, phase: MigrationPhase, error: Exception) -> PhaseResult:
        """A fatal result that stops the run."""
        return cls(phase=phase, ok=False, fatal=True, error=str(error))

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "ok": self.ok,
            "fatal": self.fatal,
            "error": self.error,
            "failures": [str(f) for f in self.stats_delta.failures],
        }
