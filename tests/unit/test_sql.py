"""
Unit tests for the parameterized SQL statement builder.

Tests cover:
- Identifier allow-list and quoting
- Bulk and per-organization backfill statements for every lookup strategy
- DDL statements for keys, constraints and indexes
- Distribution calls with bound table names
"""

import pytest

from tenantshard.catalog import TableCatalog
from tenantshard.exceptions import IdentifierNotAllowedError
from tenantshard.models import (
    ConstraintRecord,
    ConstraintType,
    IndexSpec,
    LookupStrategy,
    ReferentialAction,
    TableSpec,
)
from tenantshard.sql import SqlBuilder, Statement, bind


def _spec(catalog: TableCatalog, table: str) -> TableSpec:
    return next(s for s in catalog.backfill_specs if s.table_name == table)


class TestIdentifiers:
    """Tests for the identifier allow-list."""

    def test_catalog_identifier_is_accepted(self, builder: SqlBuilder) -> None:
        """Catalog names pass and plain names stay unquoted."""
        assert builder.ident("sessions") == "sessions"

    def test_unknown_identifier_is_rejected(self, builder: SqlBuilder) -> None:
        """Names outside the catalog never reach SQL text."""
        with pytest.raises(IdentifierNotAllowedError) as exc_info:
            builder.drop_table("users")
        assert exc_info.value.identifier == "users"

    def test_injection_attempt_is_rejected_by_allow(self, builder: SqlBuilder) -> None:
        """allow() refuses anything that is not a plain identifier."""
        with pytest.raises(IdentifierNotAllowedError):
            builder.allow("sessions; DROP TABLE sessions")

    def test_allow_admits_database_names(self, builder: SqlBuilder) -> None:
        """Names read back from the database can be admitted."""
        assert not builder.is_allowed("sessions_created_by_idx")
        builder.allow("sessions_created_by_idx")
        assert builder.drop_index("sessions_created_by_idx").sql == (
            "DROP INDEX IF EXISTS sessions_created_by_idx"
        )

    def test_reserved_word_is_quoted(self) -> None:
        """Reserved words are quoted with PostgreSQL rules."""
        builder = SqlBuilder({"order", "user"})
        assert builder.ident("order") == '"order"'
        assert builder.column_list(("order", "user")) == '"order", "user"'


class TestBackfillStatements:
    """Tests for backfill UPDATE and SELECT statements."""

    def test_bulk_update_direct_lookup(self, catalog: TableCatalog, builder: SqlBuilder) -> None:
        """Direct lookups join the VALUES rows on the table's organization_id."""
        statement = builder.bulk_update(
            _spec(catalog, "availabilities"),
            [("1", "acme", "acme_main"), ("3", "globex", "globex_hq")],
            ("tenant_code", "organization_code"),
        )

        assert statement.sql.startswith(
            "UPDATE availabilities AS target SET tenant_code = source.tenant_code, "
            "organization_code = source.organization_code, updated_at = NOW() FROM (VALUES "
        )
        assert "AS source(organization_id, tenant_code, organization_code)" in statement.sql
        assert statement.sql.endswith(
            "WHERE target.organization_id::text = source.organization_id"
        )
        assert statement.params == {
            "org_0": "1",
            "tenant_0": "acme",
            "code_0": "acme_main",
            "org_1": "3",
            "tenant_1": "globex",
            "code_1": "globex_hq",
        }

    def test_bulk_update_values_are_bound_not_inlined(
        self, catalog: TableCatalog, builder: SqlBuilder
    ) -> None:
        """Mapping values never appear in the SQL text."""
        statement = builder.bulk_update(
            _spec(catalog, "availabilities"),
            [("1", "x'); DROP TABLE sessions; --", "acme_main")],
            ("tenant_code",),
        )
        assert "DROP TABLE" not in statement.sql
        assert "CAST(:tenant_0 AS text)" in statement.sql

    def test_bulk_update_via_user_extension(
        self, catalog: TableCatalog, builder: SqlBuilder
    ) -> None:
        """User-owned tables resolve the organization through user_extensions."""
        statement = builder.bulk_update(
            _spec(catalog, "sessions"),
            [("1", "acme", "acme_main")],
            ("tenant_code",),
            refresh_updated_at=False,
        )
        assert "FROM user_extensions AS ue, (VALUES" in statement.sql
        assert statement.sql.endswith(
            "WHERE target.created_by = ue.user_id "
            "AND ue.organization_id::text = source.organization_id"
        )
        assert "updated_at" not in statement.sql

    def test_bulk_update_via_session(self, catalog: TableCatalog, builder: SqlBuilder) -> None:
        """post_session_details resolves through sessions, then user_extensions."""
        statement = builder.bulk_update(
            _spec(catalog, "post_session_details"),
            [("1", "acme", "acme_main")],
            ("tenant_code",),
        )
        assert "FROM sessions AS s, user_extensions AS ue, (VALUES" in statement.sql
        assert "target.session_id = s.id AND ue.user_id = s.created_by" in statement.sql

    def test_bulk_update_requires_rows(self, catalog: TableCatalog, builder: SqlBuilder) -> None:
        """An empty VALUES list cannot be expressed."""
        with pytest.raises(ValueError):
            builder.bulk_update(_spec(catalog, "availabilities"), [], ("tenant_code",))

    def test_organization_update(self, catalog: TableCatalog, builder: SqlBuilder) -> None:
        """Per-organization updates take the organization id as a parameter."""
        statement = builder.organization_update(
            _spec(catalog, "sessions"), ("tenant_code",), refresh_updated_at=False
        )
        assert statement.sql == (
            "UPDATE sessions AS target SET tenant_code = :tenant_code "
            "FROM user_extensions AS ue "
            "WHERE target.created_by = ue.user_id AND ue.organization_id::text = :organization_id"
        )
        assert statement.params == {}

    def test_organization_update_direct(self, catalog: TableCatalog, builder: SqlBuilder) -> None:
        """Direct lookups need no FROM clause."""
        statement = builder.organization_update(
            _spec(catalog, "forms"), ("tenant_code", "organization_code")
        )
        assert statement.sql == (
            "UPDATE forms AS target SET tenant_code = :tenant_code, "
            "organization_code = :organization_code, updated_at = NOW() "
            "WHERE target.organization_id::text = :organization_id"
        )

    def test_static_default_update(self, catalog: TableCatalog, builder: SqlBuilder) -> None:
        """Platform-wide tables only fill rows that are still null."""
        statement = builder.static_default_update(
            _spec(catalog, "modules"), ("tenant_code",), refresh_updated_at=False
        )
        assert statement.sql == (
            "UPDATE modules SET tenant_code = :tenant_code WHERE tenant_code IS NULL"
        )

    def test_distinct_organizations_direct(
        self, catalog: TableCatalog, builder: SqlBuilder
    ) -> None:
        statement = builder.distinct_organizations(_spec(catalog, "availabilities"))
        assert statement.sql == (
            "SELECT DISTINCT target.organization_id::text AS organization_id "
            "FROM availabilities AS target WHERE target.organization_id IS NOT NULL"
        )

    def test_distinct_organizations_via_user_extension(
        self, catalog: TableCatalog, builder: SqlBuilder
    ) -> None:
        statement = builder.distinct_organizations(_spec(catalog, "feedbacks"))
        assert statement.sql == (
            "SELECT DISTINCT ue.organization_id::text AS organization_id "
            "FROM feedbacks AS target, user_extensions AS ue "
            "WHERE target.user_id = ue.user_id AND ue.organization_id IS NOT NULL"
        )


class TestVerificationStatements:
    """Tests for counting statements."""

    def test_count_nulls(self, builder: SqlBuilder) -> None:
        assert builder.count_nulls("issues", "tenant_code").sql == (
            "SELECT COUNT(*) FROM issues WHERE tenant_code IS NULL"
        )

    def test_count_orphans(self, builder: SqlBuilder) -> None:
        """Orphans are non-null references without a parent row."""
        sql = builder.count_orphans("resources", ("session_id",), "sessions", ("id",)).sql
        assert "FROM resources AS child WHERE child.session_id IS NOT NULL" in sql
        assert "NOT EXISTS (SELECT 1 FROM sessions AS parent" in sql
        assert "parent.id::text = child.session_id::text" in sql

    def test_count_orphans_rejects_uneven_columns(self, builder: SqlBuilder) -> None:
        with pytest.raises(ValueError):
            builder.count_orphans("resources", ("session_id",), "sessions", ("tenant_code", "id"))


class TestDdlStatements:
    """Tests for DDL statements."""

    def test_add_column(self, builder: SqlBuilder) -> None:
        assert builder.add_column("issues", "tenant_code").sql == (
            "ALTER TABLE issues ADD COLUMN IF NOT EXISTS tenant_code VARCHAR(255)"
        )

    def test_add_column_rejects_arbitrary_type(self, builder: SqlBuilder) -> None:
        with pytest.raises(ValueError):
            builder.add_column("issues", "tenant_code", "TEXT; DROP TABLE issues")

    def test_drop_constraint_cascade_flag(self, builder: SqlBuilder) -> None:
        """CASCADE is optional so dependent foreign keys can be kept."""
        with_cascade = builder.drop_constraint("sessions", "sessions_pkey")
        without = builder.drop_constraint("sessions", "sessions_pkey", cascade=False)
        assert with_cascade.sql.endswith("DROP CONSTRAINT IF EXISTS sessions_pkey CASCADE")
        assert without.sql.endswith("DROP CONSTRAINT IF EXISTS sessions_pkey")

    def test_add_primary_key(self, builder: SqlBuilder) -> None:
        assert builder.add_primary_key("sessions", ("tenant_code", "id")).sql == (
            "ALTER TABLE sessions ADD PRIMARY KEY (tenant_code, id)"
        )

    def test_add_foreign_key(self, builder: SqlBuilder) -> None:
        record = ConstraintRecord(
            table="resources",
            name="fk_resources_session_id",
            constraint_type=ConstraintType.FOREIGN_KEY,
            columns=("tenant_code", "session_id"),
            referenced_table="sessions",
            referenced_columns=("tenant_code", "id"),
            on_delete=ReferentialAction.RESTRICT,
        )
        assert builder.add_foreign_key(record).sql == (
            "ALTER TABLE resources ADD CONSTRAINT fk_resources_session_id "
            "FOREIGN KEY (tenant_code, session_id) REFERENCES sessions (tenant_code, id) "
            "ON DELETE RESTRICT ON UPDATE NO ACTION"
        )

    def test_add_foreign_key_requires_foreign_key_record(self, builder: SqlBuilder) -> None:
        record = ConstraintRecord("sessions", "sessions_pkey", ConstraintType.PRIMARY_KEY, ("id",))
        with pytest.raises(ValueError):
            builder.add_foreign_key(record)

    def test_create_partial_unique_index(self, builder: SqlBuilder) -> None:
        index = IndexSpec(
            "unique_availabilities_event_name_tenant",
            "availabilities",
            ("tenant_code", "event_name"),
            unique=True,
            where_null=("deleted_at",),
        )
        assert builder.create_index(index).sql == (
            "CREATE UNIQUE INDEX unique_availabilities_event_name_tenant "
            "ON availabilities (tenant_code, event_name) WHERE deleted_at IS NULL"
        )
        assert "WHERE" not in builder.create_index(index, with_predicate=False).sql


class TestDistributionStatements:
    """Tests for Citus calls."""

    def test_create_distributed_table_binds_names(self, builder: SqlBuilder) -> None:
        statement = builder.create_distributed_table("sessions", "tenant_code")
        assert "to_regclass(:table_name)" in statement.sql
        assert statement.params == {"table_name": "sessions", "column_name": "tenant_code"}

    def test_undistribute_requires_catalog_table(self, builder: SqlBuilder) -> None:
        with pytest.raises(IdentifierNotAllowedError):
            builder.undistribute_table("pg_authid")


class TestStatement:
    """Tests for the Statement value object."""

    def test_shape_collapses_whitespace(self) -> None:
        statement = Statement("SELECT 1\n   FROM   sessions\n")
        assert statement.shape == "SELECT 1 FROM sessions"

    def test_bind_merges_parameters(self) -> None:
        statement = Statement("SELECT :a, :b", {"a": 1})
        bound = bind(statement, {"b": 2})
        assert bound.params == {"a": 1, "b": 2}
        assert statement.params == {"a": 1}

    def test_lookup_strategy_join_flag(self) -> None:
        assert LookupStrategy.VIA_USER_EXTENSION.joins_user_extension
        assert not LookupStrategy.DIRECT_ORG_ID.joins_user_extension
