"""
Read-only inspection of the database catalog.

SchemaInspector answers the existence questions every reshaping and
backfill step asks before acting: does the table exist, does it have the
column, is the constraint or index already there, which foreign keys and
indexes does it currently carry. All queries read ``pg_catalog`` or
``information_schema`` of the current schema and bind every value.

Usage:
    >>> inspector = SchemaInspector(engine)
    >>> if await inspector.column_exists("sessions", "tenant_code"):
    ...     ...
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from sqlalchemy import text

from tenantshard._connection import DatabaseTarget, execute_with_connection
from tenantshard.models import ConstraintRecord, ConstraintType, ReferentialAction
from tenantshard.sql import Statement

logger = logging.getLogger(__name__)

_TABLE_EXISTS = text(
    """
    SELECT EXISTS(
        SELECT 1 FROM information_schema.tables
        WHERE table_schema = current_schema() AND table_name = :table_name
    )
    """
)

_EXISTING_COLUMNS = text(
    """
    SELECT column_name FROM information_schema.columns
    WHERE table_schema = current_schema()
      AND table_name = :table_name
      AND column_name::text = ANY(CAST(:columns AS text[]))
    """
)

_CONSTRAINT_EXISTS = text(
    """
    SELECT EXISTS(
        SELECT 1 FROM pg_constraint con
        JOIN pg_class rel ON rel.oid = con.conrelid
        JOIN pg_namespace n ON n.oid = rel.relnamespace
        WHERE n.nspname = current_schema()
          AND rel.relname = :table_name
          AND con.conname = :constraint_name
    )
    """
)

_CONSTRAINT_OWNER = text(
    """
    SELECT rel.relname FROM pg_constraint con
    JOIN pg_class rel ON rel.oid = con.conrelid
    JOIN pg_namespace n ON n.oid = rel.relnamespace
    WHERE n.nspname = current_schema() AND con.conname = :constraint_name
    LIMIT 1
    """
)

_INDEX_EXISTS = text(
    """
    SELECT EXISTS(
        SELECT 1 FROM pg_indexes
        WHERE schemaname = current_schema() AND indexname = :index_name
    )
    """
)

_INDEX_OWNER = text(
    """
    SELECT tablename FROM pg_indexes
    WHERE schemaname = current_schema() AND indexname = :index_name
    LIMIT 1
    """
)

# Indexes backing constraints are removed with their constraint, not here.
_DROPPABLE_INDEXES = text(
    """
    SELECT i.tablename, i.indexname FROM pg_indexes i
    WHERE i.schemaname = current_schema()
      AND i.tablename::text = ANY(CAST(:tables AS text[]))
      AND i.indexname NOT LIKE '%\\_pkey'
      AND i.indexname NOT LIKE 'pg\\_%'
      AND NOT EXISTS (
          SELECT 1 FROM pg_constraint con WHERE con.conname = i.indexname
      )
    ORDER BY i.tablename, i.indexname
    """
)

_CONSTRAINTS = text(
    """
    SELECT
        rel.relname,
        con.conname,
        con.contype::text,
        ARRAY(
            SELECT a.attname
            FROM unnest(con.conkey) WITH ORDINALITY AS k(attnum, ord)
            JOIN pg_attribute a ON a.attrelid = con.conrelid AND a.attnum = k.attnum
            ORDER BY k.ord
        ) AS columns,
        ref.relname AS referenced_table,
        ARRAY(
            SELECT a.attname
            FROM unnest(con.confkey) WITH ORDINALITY AS k(attnum, ord)
            JOIN pg_attribute a ON a.attrelid = con.confrelid AND a.attnum = k.attnum
            ORDER BY k.ord
        ) AS referenced_columns,
        con.confupdtype::text,
        con.confdeltype::text
    FROM pg_constraint con
    JOIN pg_class rel ON rel.oid = con.conrelid
    JOIN pg_namespace n ON n.oid = rel.relnamespace
    LEFT JOIN pg_class ref ON ref.oid = con.confrelid
    WHERE n.nspname = current_schema()
      AND (
          rel.relname::text = ANY(CAST(:tables AS text[]))
          OR (
              CAST(:include_referencing AS boolean)
              AND ref.relname::text = ANY(CAST(:tables AS text[]))
          )
      )
      AND con.contype::text = ANY(CAST(:types AS text[]))
    ORDER BY rel.relname, con.conname
    """
)

_CONSTRAINT_COUNT = text(
    """
    SELECT COUNT(*) FROM pg_constraint con
    JOIN pg_class rel ON rel.oid = con.conrelid
    JOIN pg_namespace n ON n.oid = rel.relnamespace
    WHERE n.nspname = current_schema() AND con.contype::text = :contype
    """
)

_CONSTRAINT_CODES = {
    ConstraintType.PRIMARY_KEY: "p",
    ConstraintType.FOREIGN_KEY: "f",
    ConstraintType.UNIQUE: "u",
    ConstraintType.CHECK: "c",
}


class SchemaInspector:
    """
    Catalog queries used by the migration components.

    Args:
        conn: Database engine or connection.

    Note:
        Every method opens its own non-transactional connection when given
        an engine, so inspection never holds locks across statements.
    """

    def __init__(self, conn: DatabaseTarget) -> None:
        self._conn = conn

    async def table_exists(self, table: str) -> bool:
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(_TABLE_EXISTS, {"table_name": table})
            return bool(result.scalar())

    async def existing_columns(self, table: str, columns: Sequence[str]) -> tuple[str, ...]:
        """
        Return the subset of ``columns`` present on ``table``, in input order.

        Args:
            table: Table name.
            columns: Candidate column names.

        Returns:
            Tuple of the columns that exist.
        """
        if not columns:
            return ()
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(
                _EXISTING_COLUMNS,
                {"table_name": table, "columns": list(columns)},
            )
            present = {row[0] for row in result.fetchall()}
        return tuple(c for c in columns if c in present)

    async def column_exists(self, table: str, column: str) -> bool:
        return bool(await self.existing_columns(table, (column,)))

    async def constraint_exists(self, table: str, name: str) -> bool:
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(
                _CONSTRAINT_EXISTS,
                {"table_name": table, "constraint_name": name},
            )
            return bool(result.scalar())

    async def constraint_owner(self, name: str) -> str | None:
        """Return the table owning a constraint of that name, if any."""
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(_CONSTRAINT_OWNER, {"constraint_name": name})
            return result.scalar()

    async def index_exists(self, name: str) -> bool:
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(_INDEX_EXISTS, {"index_name": name})
            return bool(result.scalar())

    async def index_owner(self, name: str) -> str | None:
        """Return the table an index of that name is on, if any."""
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(_INDEX_OWNER, {"index_name": name})
            return result.scalar()

    async def droppable_indexes(self, tables: Iterable[str]) -> list[tuple[str, str]]:
        """
        List (table, index) pairs of non-constraint, non-system indexes.

        Args:
            tables: Tables to inspect.

        Returns:
            Pairs ordered by table then index name.
        """
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(_DROPPABLE_INDEXES, {"tables": list(tables)})
            return [(row[0], row[1]) for row in result.fetchall()]

    async def constraints(
        self,
        tables: Iterable[str],
        types: Iterable[ConstraintType],
        *,
        include_referencing: bool = False,
    ) -> list[ConstraintRecord]:
        """
        Snapshot constraints of the given types on the given tables.

        Args:
            tables: Tables to inspect.
            types: Constraint types to include.
            include_referencing: Also return constraints of other tables
                whose foreign key references one of ``tables``.

        Returns:
            ConstraintRecord per constraint, columns in key order.
        """
        params = {
            "tables": list(tables),
            "types": [_CONSTRAINT_CODES[t] for t in types],
            "include_referencing": include_referencing,
        }
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(_CONSTRAINTS, params)
            rows = result.fetchall()

        records = []
        for row in rows:
            constraint_type = ConstraintType.from_code(row[2])
            is_fk = constraint_type == ConstraintType.FOREIGN_KEY
            records.append(
                ConstraintRecord(
                    table=row[0],
                    name=row[1],
                    constraint_type=constraint_type,
                    columns=tuple(row[3] or ()),
                    referenced_table=row[4] if is_fk else None,
                    referenced_columns=tuple(row[5] or ()) if is_fk else (),
                    on_update=ReferentialAction.from_code(row[6])
                    if is_fk
                    else ReferentialAction.NO_ACTION,
                    on_delete=ReferentialAction.from_code(row[7])
                    if is_fk
                    else ReferentialAction.NO_ACTION,
                )
            )
        logger.debug("Found %d constraint(s) of types %s", len(records), params["types"])
        return records

    async def foreign_keys(
        self,
        tables: Iterable[str],
        *,
        include_referencing: bool = False,
    ) -> list[ConstraintRecord]:
        return await self.constraints(
            tables,
            (ConstraintType.FOREIGN_KEY,),
            include_referencing=include_referencing,
        )

    async def primary_key(self, table: str) -> ConstraintRecord | None:
        records = await self.constraints((table,), (ConstraintType.PRIMARY_KEY,))
        return records[0] if records else None

    async def count(self, statement: Statement) -> int:
        """
        Run a ``SELECT COUNT(*)`` statement built by the SqlBuilder.

        Args:
            statement: Counting statement.

        Returns:
            The count, 0 if the query returned NULL.
        """
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(statement.clause(), statement.params)
            return int(result.scalar() or 0)

    async def count_constraints(self, constraint_type: ConstraintType) -> int:
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(
                _CONSTRAINT_COUNT,
                {"contype": _CONSTRAINT_CODES[constraint_type]},
            )
            return int(result.scalar() or 0)


__all__ = ["SchemaInspector"]
