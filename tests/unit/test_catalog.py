"""
Unit tests for the table catalog.
"""

import pytest

from tenantshard.catalog import TENANT_COLUMN, TableCatalog, default_catalog
from tenantshard.models import LookupStrategy, PrimaryKeySpec


class TestDefaultCatalog:
    """Tests for the mentoring schema catalog."""

    def test_user_extensions_backfilled_first(self, catalog: TableCatalog) -> None:
        """Every user-owned table resolves through user_extensions, so it goes first."""
        assert catalog.user_tables[0].table_name == "user_extensions"
        assert catalog.user_tables[0].lookup_strategy == LookupStrategy.DIRECT_ORG_ID

    def test_post_session_details_resolves_through_sessions(self, catalog: TableCatalog) -> None:
        spec = next(s for s in catalog.user_tables if s.table_name == "post_session_details")
        assert spec.lookup_strategy == LookupStrategy.VIA_SESSION_THEN_USER_EXTENSION
        assert spec.identifier_column == "session_id"

    def test_static_tables_not_in_coverage(self, catalog: TableCatalog) -> None:
        """Platform-wide tables carry no organization id to validate."""
        coverage = {s.table_name for s in catalog.coverage_specs}
        assert "modules" not in coverage
        assert "user_extensions" in coverage
        assert "availabilities" in coverage

    def test_reshaped_and_excluded_are_disjoint(self, catalog: TableCatalog) -> None:
        assert not set(catalog.reshaped_tables) & set(catalog.excluded_tables)

    def test_excluded_tables(self, catalog: TableCatalog) -> None:
        assert catalog.is_excluded("permissions")
        assert catalog.is_excluded("role_permission_mapping")
        assert not catalog.is_excluded("sessions")

    def test_every_primary_key_starts_with_tenant(self, catalog: TableCatalog) -> None:
        for pk in catalog.primary_keys:
            assert pk.columns[0] == TENANT_COLUMN, pk.table_name

    def test_default_primary_key(self, catalog: TableCatalog) -> None:
        assert catalog.primary_key_for("sessions").columns == ("tenant_code", "id")

    def test_primary_key_overrides(self, catalog: TableCatalog) -> None:
        assert catalog.primary_key_for("user_extensions").columns == ("tenant_code", "user_id")
        assert catalog.primary_key_for("organization_extension").columns == (
            "tenant_code",
            "organization_code",
            "organization_id",
        )
        assert catalog.primary_key_for("question_sets").columns == ("tenant_code", "id")

    def test_every_unique_index_includes_tenant(self, catalog: TableCatalog) -> None:
        for index in catalog.unique_indexes:
            assert TENANT_COLUMN in index.columns, index.name
            assert index.where_null == ("deleted_at",)

    def test_identifiers_cover_catalog_objects(self, catalog: TableCatalog) -> None:
        identifiers = catalog.identifiers()
        assert "sessions" in identifiers
        assert "sessions_pkey" in identifiers
        assert "organisation_extension_pkey" in identifiers
        assert "fk_resources_session_id" in identifiers
        assert "idx_user_extensions_phone" in identifiers
        assert "updated_at" in identifiers
        assert "pg_authid" not in identifiers

    def test_default_catalog_returns_fresh_equal_catalogs(self) -> None:
        assert default_catalog() == default_catalog()


class TestCatalogValidation:
    """Tests for catalog invariants checked at construction."""

    def test_overlapping_reshaped_and_excluded_rejected(self) -> None:
        with pytest.raises(ValueError, match="both reshaped and excluded"):
            TableCatalog(reshaped_tables=("sessions",), excluded_tables=("sessions",))

    def test_primary_key_override_must_start_with_tenant(self) -> None:
        with pytest.raises(ValueError, match="must start with tenant_code"):
            TableCatalog(primary_key_overrides=(PrimaryKeySpec("sessions", ("id", "tenant_code")),))
