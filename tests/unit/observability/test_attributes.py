"""Tests for tenantshard.observability.attributes module."""

from tenantshard import observability
from tenantshard.observability import attributes
from tenantshard.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_CONSTRAINT_NAME,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DB_TABLE,
    ATTR_ERROR_TYPE,
    ATTR_INDEX_NAME,
    ATTR_LOCK_ID,
    ATTR_LOCK_KEY,
    ATTR_LOCK_TIMEOUT,
    ATTR_ORGANIZATION_COUNT,
    ATTR_PARTITION_COLUMN,
    ATTR_PHASE,
    ATTR_ROWS_UPDATED,
    ATTR_STRATEGY,
)


class TestAttributeConstants:
    """Tests for attribute constant definitions."""

    def test_migration_attributes_have_tenantshard_prefix(self):
        for name in (
            ATTR_PHASE,
            ATTR_STRATEGY,
            ATTR_ROWS_UPDATED,
            ATTR_ORGANIZATION_COUNT,
            ATTR_BATCH_SIZE,
            ATTR_CONSTRAINT_NAME,
            ATTR_INDEX_NAME,
            ATTR_PARTITION_COLUMN,
        ):
            assert name.startswith("tenantshard.")

    def test_database_attributes_follow_otel_conventions(self):
        assert ATTR_DB_SYSTEM == "db.system"
        assert ATTR_DB_OPERATION == "db.operation"
        assert ATTR_DB_TABLE == "db.sql.table"

    def test_lock_and_error_attributes(self):
        assert ATTR_LOCK_KEY == "lock.key"
        assert ATTR_LOCK_ID == "lock.id"
        assert ATTR_LOCK_TIMEOUT == "lock.timeout"
        assert ATTR_ERROR_TYPE == "error.type"

    def test_values_are_unique(self):
        values = [getattr(attributes, name) for name in attributes.__all__]
        assert len(values) == len(set(values))


class TestExports:
    """Tests for the module exports."""

    def test_all_names_defined(self):
        for name in attributes.__all__:
            assert isinstance(getattr(attributes, name), str)

    def test_reexported_from_package(self):
        for name in attributes.__all__:
            assert getattr(observability, name) == getattr(attributes, name)
