"""
Parameterized SQL statement builder.

Identifiers (tables, columns, constraints, indexes) and values never mix:

- identifiers are checked against an allow-list derived from the table
  catalog, then quoted with PostgreSQL's identifier rules;
- values are always bound parameters.

Every builder method returns a ``Statement`` carrying the SQL text and its
parameters, ready for ``conn.execute(statement.clause(), statement.params)``.

Usage:
    >>> builder = SqlBuilder(catalog.identifiers())
    >>> stmt = builder.drop_index("idx_issues_tenant_code")
    >>> stmt.sql
    'DROP INDEX IF EXISTS idx_issues_tenant_code'
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import TextClause, text
from sqlalchemy.dialects import postgresql

from tenantshard.exceptions import IdentifierNotAllowedError
from tenantshard.models import ConstraintRecord, IndexSpec, LookupStrategy, TableSpec

_PREPARER = postgresql.dialect().identifier_preparer

# Shape of a plain, unquoted PostgreSQL identifier.
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]{0,62}$")

_WHITESPACE_RE = re.compile(r"\s+")

USER_EXTENSIONS = "user_extensions"
SESSIONS = "sessions"


@dataclass(frozen=True)
class Statement:
    """
    A SQL statement with its bound parameters.

    Attributes:
        sql: Statement text using ``:name`` placeholders.
        params: Values for the placeholders.
    """

    sql: str
    params: dict[str, Any] = field(default_factory=dict)

    def clause(self) -> TextClause:
        return text(self.sql)

    @property
    def shape(self) -> str:
        """The statement with whitespace collapsed, for log messages."""
        return _WHITESPACE_RE.sub(" ", self.sql).strip()


class SqlBuilder:
    """
    Builds the statements issued by the migration engine.

    Args:
        allowed: Identifiers the builder accepts.

    Example:
        >>> builder = SqlBuilder({"sessions", "tenant_code", "id"})
        >>> builder.add_primary_key("sessions", ("tenant_code", "id")).sql
        'ALTER TABLE sessions ADD PRIMARY KEY (tenant_code, id)'
    """

    def __init__(self, allowed: Iterable[str]) -> None:
        self._allowed: set[str] = set()
        self.allow(*allowed)

    def allow(self, *names: str) -> None:
        """
        Admit identifiers to the allow-list.

        Used for names read back from the database's catalog (existing
        indexes and foreign keys of catalog tables). Names that are not
        plain identifiers are still rejected.
        """
        for name in names:
            if not _IDENTIFIER_RE.match(name):
                raise IdentifierNotAllowedError(name)
            self._allowed.add(name)

    def is_allowed(self, name: str) -> bool:
        return name in self._allowed

    def ident(self, name: str) -> str:
        """Validate and quote one identifier."""
        if name not in self._allowed:
            raise IdentifierNotAllowedError(name)
        return _PREPARER.quote(name)

    def column_list(self, columns: Sequence[str]) -> str:
        return ", ".join(self.ident(c) for c in columns)

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    def _join_clause(self, spec: TableSpec, target: str) -> tuple[str, str]:
        """
        FROM items and WHERE condition that expose ``ue.organization_id``.

        Returns:
            (from_items, join_condition); both empty for direct lookups.
        """
        column = f"{target}.{self.ident(spec.identifier_column)}"
        ue = self.ident(USER_EXTENSIONS)
        if spec.lookup_strategy == LookupStrategy.VIA_USER_EXTENSION:
            return f"{ue} AS ue", f"{column} = ue.user_id"
        if spec.lookup_strategy == LookupStrategy.VIA_SESSION_THEN_USER_EXTENSION:
            sessions = self.ident(SESSIONS)
            return (
                f"{sessions} AS s, {ue} AS ue",
                f"{column} = s.id AND ue.user_id = s.created_by",
            )
        return "", ""

    def _organization_expression(self, spec: TableSpec, target: str) -> str:
        if spec.lookup_strategy.joins_user_extension:
            return "ue.organization_id::text"
        return f"{target}.{self.ident(spec.identifier_column)}::text"

    def _set_clause(
        self,
        spec: TableSpec,
        columns: Sequence[str],
        source: str,
        refresh_updated_at: bool,
    ) -> str:
        assignments = [f"{self.ident(c)} = {source}.{self.ident(c)}" for c in columns]
        if refresh_updated_at:
            assignments.append(f"{self.ident('updated_at')} = NOW()")
        return ", ".join(assignments)

    def bulk_update(
        self,
        spec: TableSpec,
        rows: Sequence[tuple[str, str, str]],
        columns: Sequence[str],
        *,
        refresh_updated_at: bool = True,
    ) -> Statement:
        """
        Single set-based UPDATE joining the table to the mapping rows.

        Args:
            spec: Table being backfilled.
            rows: (organization_id, tenant_code, organization_code) tuples.
            columns: Tenant columns to write (existing subset of the table's).
            refresh_updated_at: Also set updated_at = NOW().

        Returns:
            UPDATE ... FROM (VALUES ...) AS source statement.

        Raises:
            ValueError: If rows is empty (VALUES needs at least one row).
        """
        if not rows:
            raise ValueError("bulk update needs at least one mapping row")

        params: dict[str, Any] = {}
        values = []
        for i, (organization_id, tenant_code, organization_code) in enumerate(rows):
            params[f"org_{i}"] = organization_id
            params[f"tenant_{i}"] = tenant_code
            params[f"code_{i}"] = organization_code
            values.append(
                f"(CAST(:org_{i} AS text), CAST(:tenant_{i} AS text), CAST(:code_{i} AS text))"
            )

        table = self.ident(spec.table_name)
        join_from, join_condition = self._join_clause(spec, "target")
        from_items = ", ".join(
            item
            for item in (
                join_from,
                f"(VALUES {', '.join(values)}) AS source(organization_id, "
                f"{self.ident('tenant_code')}, {self.ident('organization_code')})",
            )
            if item
        )
        conditions = [
            c
            for c in (
                join_condition,
                f"{self._organization_expression(spec, 'target')} = source.organization_id",
            )
            if c
        ]
        sql = (
            f"UPDATE {table} AS target "  # nosec B608 - identifiers validated against allow-list
            f"SET {self._set_clause(spec, columns, 'source', refresh_updated_at)} "
            f"FROM {from_items} "
            f"WHERE {' AND '.join(conditions)}"
        )
        return Statement(sql, params)

    def organization_update(
        self,
        spec: TableSpec,
        columns: Sequence[str],
        *,
        refresh_updated_at: bool = True,
    ) -> Statement:
        """
        UPDATE of one organization's rows.

        The returned statement takes ``organization_id``, ``tenant_code`` and
        ``organization_code`` parameters; the caller binds them per id.
        """
        table = self.ident(spec.table_name)
        assignments = [f"{self.ident(c)} = :{c}" for c in columns]
        if refresh_updated_at:
            assignments.append(f"{self.ident('updated_at')} = NOW()")
        join_from, join_condition = self._join_clause(spec, "target")
        conditions = [
            c
            for c in (
                join_condition,
                f"{self._organization_expression(spec, 'target')} = :organization_id",
            )
            if c
        ]
        sql = f"UPDATE {table} AS target SET {', '.join(assignments)}"  # nosec B608
        if join_from:
            sql += f" FROM {join_from}"
        sql += f" WHERE {' AND '.join(conditions)}"
        return Statement(sql)

    def static_default_update(
        self,
        spec: TableSpec,
        columns: Sequence[str],
        *,
        refresh_updated_at: bool = True,
    ) -> Statement:
        """UPDATE filling still-null tenant columns with fixed values."""
        table = self.ident(spec.table_name)
        assignments = [f"{self.ident(c)} = :{c}" for c in columns]
        if refresh_updated_at:
            assignments.append(f"{self.ident('updated_at')} = NOW()")
        nulls = " OR ".join(f"{self.ident(c)} IS NULL" for c in columns)
        return Statement(
            f"UPDATE {table} SET {', '.join(assignments)} WHERE {nulls}"  # nosec B608
        )

    def distinct_organizations(self, spec: TableSpec) -> Statement:
        """SELECT of the distinct, non-null organization ids a table reaches."""
        table = self.ident(spec.table_name)
        expression = self._organization_expression(spec, "target")
        join_from, join_condition = self._join_clause(spec, "target")
        if spec.lookup_strategy.joins_user_extension:
            conditions = [join_condition, "ue.organization_id IS NOT NULL"]
        else:
            conditions = [f"target.{self.ident(spec.identifier_column)} IS NOT NULL"]
        sql = f"SELECT DISTINCT {expression} AS organization_id FROM {table} AS target"  # nosec B608
        if join_from:
            sql += f", {join_from}"
        sql += f" WHERE {' AND '.join(conditions)}"
        return Statement(sql)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def count_nulls(self, table: str, column: str) -> Statement:
        return Statement(
            f"SELECT COUNT(*) FROM {self.ident(table)} WHERE {self.ident(column)} IS NULL"  # nosec B608
        )

    def count_orphans(
        self,
        table: str,
        columns: Sequence[str],
        referenced_table: str,
        referenced_columns: Sequence[str],
    ) -> Statement:
        """Count rows whose non-null reference has no parent row."""
        if len(columns) != len(referenced_columns):
            raise ValueError("column lists must have the same length")
        not_null = " AND ".join(f"child.{self.ident(c)} IS NOT NULL" for c in columns)
        matches = " AND ".join(
            f"parent.{self.ident(r)}::text = child.{self.ident(c)}::text"
            for c, r in zip(columns, referenced_columns, strict=True)
        )
        return Statement(
            f"SELECT COUNT(*) FROM {self.ident(table)} AS child "  # nosec B608
            f"WHERE {not_null} AND NOT EXISTS ("
            f"SELECT 1 FROM {self.ident(referenced_table)} AS parent WHERE {matches})"
        )

    # ------------------------------------------------------------------
    # DDL
    # ------------------------------------------------------------------

    def add_column(self, table: str, column: str, column_type: str = "VARCHAR(255)") -> Statement:
        if column_type not in ("VARCHAR(255)", "TEXT"):
            raise ValueError(f"unsupported column type {column_type!r}")
        return Statement(
            f"ALTER TABLE {self.ident(table)} ADD COLUMN IF NOT EXISTS {self.ident(column)} {column_type}"
        )

    def set_not_null(self, table: str, column: str) -> Statement:
        return Statement(
            f"ALTER TABLE {self.ident(table)} ALTER COLUMN {self.ident(column)} SET NOT NULL"
        )

    def drop_table(self, table: str) -> Statement:
        return Statement(f"DROP TABLE IF EXISTS {self.ident(table)} CASCADE")

    def drop_index(self, name: str) -> Statement:
        return Statement(f"DROP INDEX IF EXISTS {self.ident(name)}")

    def drop_constraint(self, table: str, name: str, *, cascade: bool = True) -> Statement:
        sql = f"ALTER TABLE {self.ident(table)} DROP CONSTRAINT IF EXISTS {self.ident(name)}"
        if cascade:
            sql += " CASCADE"
        return Statement(sql)

    def add_primary_key(self, table: str, columns: Sequence[str]) -> Statement:
        return Statement(
            f"ALTER TABLE {self.ident(table)} ADD PRIMARY KEY ({self.column_list(columns)})"
        )

    def add_unique_constraint(self, record: ConstraintRecord) -> Statement:
        return Statement(
            f"ALTER TABLE {self.ident(record.table)} ADD CONSTRAINT {self.ident(record.name)} "
            f"UNIQUE ({self.column_list(record.columns)})"
        )

    def add_foreign_key(self, record: ConstraintRecord) -> Statement:
        """ALTER TABLE ... ADD CONSTRAINT ... FOREIGN KEY from a record."""
        if not record.is_foreign_key or record.referenced_table is None:
            raise ValueError(f"{record.name} is not a foreign key")
        return Statement(
            f"ALTER TABLE {self.ident(record.table)} "
            f"ADD CONSTRAINT {self.ident(record.name)} "
            f"FOREIGN KEY ({self.column_list(record.columns)}) "
            f"REFERENCES {self.ident(record.referenced_table)} "
            f"({self.column_list(record.referenced_columns)}) "
            f"ON DELETE {record.on_delete.value} "
            f"ON UPDATE {record.on_update.value}"
        )

    def create_index(self, index: IndexSpec, *, with_predicate: bool = True) -> Statement:
        """CREATE [UNIQUE] INDEX, partial when the index has a predicate."""
        unique = "UNIQUE " if index.unique else ""
        sql = (
            f"CREATE {unique}INDEX {self.ident(index.name)} "
            f"ON {self.ident(index.table_name)} ({self.column_list(index.columns)})"
        )
        if with_predicate and index.predicate_columns:
            terms = [f"{self.ident(c)} IS NULL" for c in index.where_null]
            terms += [f"{self.ident(c)} IS NOT NULL" for c in index.where_not_null]
            sql += f" WHERE {' AND '.join(terms)}"
        return Statement(sql)

    # ------------------------------------------------------------------
    # Distribution
    # ------------------------------------------------------------------

    def create_distributed_table(self, table: str, column: str) -> Statement:
        self.ident(table)
        self.ident(column)
        return Statement(
            "SELECT create_distributed_table(to_regclass(:table_name), :column_name)",
            {"table_name": table, "column_name": column},
        )

    def undistribute_table(self, table: str) -> Statement:
        self.ident(table)
        return Statement(
            "SELECT undistribute_table(to_regclass(:table_name))",
            {"table_name": table},
        )


def bind(statement: Statement, values: Mapping[str, Any]) -> Statement:
    """Return a copy of a statement with extra parameters bound."""
    return Statement(statement.sql, {**statement.params, **values})


__all__ = [
    "Statement",
    "SqlBuilder",
    "bind",
]
