"""
Unit tests for the migration data models.

Tests cover:
- Constraint records and their tenant-aware rewrites
- Statistics deltas and their application
- Phase results
- Enum helpers
"""

import pytest

from tenantshard.models import (
    ConstraintRecord,
    ConstraintType,
    ForeignKeySpec,
    IndexSpec,
    LookupStrategy,
    MigrationPhase,
    MigrationStats,
    PhaseResult,
    ReferentialAction,
    StatsDelta,
    TableFailure,
    TableSpec,
    TableState,
)


def _foreign_key(**overrides) -> ConstraintRecord:
    values = {
        "table": "session_attendees",
        "name": "session_attendees_session_id_fkey",
        "constraint_type": ConstraintType.FOREIGN_KEY,
        "columns": ("session_id",),
        "referenced_table": "sessions",
        "referenced_columns": ("id",),
        "on_update": ReferentialAction.NO_ACTION,
        "on_delete": ReferentialAction.CASCADE,
    }
    values.update(overrides)
    return ConstraintRecord(**values)


class TestConstraintRecord:
    """Tests for ConstraintRecord."""

    def test_tenant_qualified_foreign_key_prefixes_both_sides(self) -> None:
        qualified = _foreign_key().tenant_qualified("tenant_code")
        assert qualified.columns == ("tenant_code", "session_id")
        assert qualified.referenced_columns == ("tenant_code", "id")

    def test_tenant_qualified_is_idempotent(self) -> None:
        once = _foreign_key().tenant_qualified("tenant_code")
        assert once.tenant_qualified("tenant_code") == once

    def test_tenant_qualified_unique_constraint(self) -> None:
        record = ConstraintRecord("modules", "modules_code_key", ConstraintType.UNIQUE, ("code",))
        qualified = record.tenant_qualified("tenant_code")
        assert qualified.columns == ("tenant_code", "code")
        assert qualified.referenced_columns == ()

    def test_cluster_compatible_downgrades_cascade(self) -> None:
        record = _foreign_key(on_update=ReferentialAction.CASCADE).cluster_compatible()
        assert record.on_delete == ReferentialAction.RESTRICT
        assert record.on_update == ReferentialAction.RESTRICT

    def test_cluster_compatible_keeps_other_actions(self) -> None:
        record = _foreign_key(on_delete=ReferentialAction.SET_NULL).cluster_compatible()
        assert record.on_delete == ReferentialAction.SET_NULL
        assert record.on_update == ReferentialAction.NO_ACTION

    def test_to_dict(self) -> None:
        data = _foreign_key().to_dict()
        assert data["constraint_type"] == "FOREIGN KEY"
        assert data["on_delete"] == "CASCADE"
        assert data["columns"] == ["session_id"]


class TestForeignKeySpec:
    """Tests for catalog foreign keys."""

    def test_to_record_qualified(self) -> None:
        spec = ForeignKeySpec("fk_resources_session_id", "resources", ("session_id",), "sessions", ("id",))
        record = spec.to_record("tenant_code", qualify=True)
        assert record.columns == ("tenant_code", "session_id")
        assert record.referenced_columns == ("tenant_code", "id")
        assert record.on_delete == ReferentialAction.RESTRICT
        assert record.on_update == ReferentialAction.RESTRICT

    def test_to_record_local_key_never_qualified(self) -> None:
        spec = ForeignKeySpec(
            "fk_role_permission_mapping_permission_id",
            "role_permission_mapping",
            ("permission_id",),
            "permissions",
            ("id",),
            tenant_qualified=False,
        )
        assert spec.to_record("tenant_code", qualify=True).columns == ("permission_id",)


class TestEnums:
    """Tests for enum helpers."""

    def test_constraint_type_from_code(self) -> None:
        assert ConstraintType.from_code("p") == ConstraintType.PRIMARY_KEY
        assert ConstraintType.from_code("f") == ConstraintType.FOREIGN_KEY
        with pytest.raises(KeyError):
            ConstraintType.from_code("x")

    def test_referential_action_from_code(self) -> None:
        assert ReferentialAction.from_code("a") == ReferentialAction.NO_ACTION
        assert ReferentialAction.from_code("c") == ReferentialAction.CASCADE

    def test_table_state_order(self) -> None:
        assert TableState.ORIGINAL_CONSTRAINTS.order == 0
        assert TableState.PRIMARY_KEY_REWRITTEN.order > TableState.FOREIGN_KEYS_DROPPED.order

    def test_phase_order_starts_with_mapping(self) -> None:
        phases = list(MigrationPhase)
        assert phases[0] == MigrationPhase.RESOLVE_MAPPING
        assert phases[1] == MigrationPhase.VALIDATE_COVERAGE
        assert phases[-1] == MigrationPhase.FINAL_VERIFICATION


class TestSpecs:
    """Tests for table and index specs."""

    def test_table_spec_requires_update_columns(self) -> None:
        with pytest.raises(ValueError):
            TableSpec("sessions", "created_by", LookupStrategy.VIA_USER_EXTENSION, ())

    def test_index_predicate_columns(self) -> None:
        index = IndexSpec(
            "idx_user_extensions_email",
            "user_extensions",
            ("email",),
            where_null=("deleted_at",),
            where_not_null=("email",),
        )
        assert index.predicate_columns == ("deleted_at", "email")
        assert "deleted_at" in index.identifiers


class TestStats:
    """Tests for StatsDelta and MigrationStats."""

    def test_delta_addition(self) -> None:
        failure = TableFailure("teardown", "sessions", "drop index", "boom")
        total = StatsDelta(rows_updated=2) + StatsDelta(rows_updated=3, failures=(failure,))
        assert total.rows_updated == 5
        assert total.failures == (failure,)
        assert not total.is_empty
        assert StatsDelta().is_empty

    def test_apply_accumulates(self) -> None:
        stats = MigrationStats()
        failure = TableFailure("distribute", "sessions", "distribute", "boom")
        stats.apply(StatsDelta(rows_updated=10, tables_sharded=1))
        stats.apply(StatsDelta(rows_updated=5, failures=(failure,)))
        assert stats.rows_updated == 15
        assert stats.tables_sharded == 1
        assert stats.failures == [failure]

    def test_finish_freezes_duration(self) -> None:
        stats = MigrationStats()
        stats.finish()
        duration = stats.duration_seconds
        assert stats.duration_seconds == duration
        assert stats.formatted_duration == "0m 0s"

    def test_summary_lists_failures(self) -> None:
        stats = MigrationStats()
        stats.apply(
            StatsDelta(failures=(TableFailure("teardown", "issues", "drop index", "locked"),))
        )
        lines = stats.summary_lines()
        assert "Table failures: 1" in lines
        assert "  [teardown] issues: drop index failed: locked" in lines

    def test_to_dict(self) -> None:
        stats = MigrationStats()
        stats.apply(StatsDelta(primary_keys_updated=3))
        data = stats.to_dict()
        assert data["primary_keys_updated"] == 3
        assert data["failures"] == []


class TestPhaseResult:
    """Tests for PhaseResult."""

    def test_from_delta_ok_without_failures(self) -> None:
        result = PhaseResult.from_delta(MigrationPhase.TEARDOWN, StatsDelta(indexes_dropped=2))
        assert result.ok
        assert not result.fatal

    def test_from_delta_not_ok_with_failures(self) -> None:
        failure = TableFailure("teardown", "issues", "drop index", "locked")
        result = PhaseResult.from_delta(MigrationPhase.TEARDOWN, StatsDelta(failures=(failure,)))
        assert not result.ok
        assert not result.fatal

    def test_aborted_is_fatal(self) -> None:
        result = PhaseResult.aborted(MigrationPhase.RESOLVE_MAPPING, RuntimeError("no file"))
        assert result.fatal
        assert not result.ok
        assert result.to_dict()["error"] == "no file"
