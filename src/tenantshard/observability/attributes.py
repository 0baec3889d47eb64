"""
Standard span attribute names for tenantshard.

Database attributes follow the OpenTelemetry semantic conventions; the
``tenantshard.*`` attributes are specific to the partitioning migration.

Example:
    >>> from tenantshard.observability.attributes import ATTR_DB_TABLE, ATTR_PHASE
    >>> with tracer.span("tenantshard.backfill.table", {ATTR_DB_TABLE: "sessions"}):
    ...     pass
"""

# Database (OTEL semantic)
ATTR_DB_SYSTEM = "db.system"
ATTR_DB_OPERATION = "db.operation"
ATTR_DB_TABLE = "db.sql.table"

# Migration
ATTR_PHASE = "tenantshard.phase"
ATTR_STRATEGY = "tenantshard.backfill.strategy"
ATTR_ROWS_UPDATED = "tenantshard.rows.updated"
ATTR_ORGANIZATION_COUNT = "tenantshard.organization.count"
ATTR_BATCH_SIZE = "tenantshard.batch.size"
ATTR_CONSTRAINT_NAME = "tenantshard.constraint.name"
ATTR_INDEX_NAME = "tenantshard.index.name"
ATTR_PARTITION_COLUMN = "tenantshard.partition.column"

# Lock
ATTR_LOCK_KEY = "lock.key"
ATTR_LOCK_ID = "lock.id"
ATTR_LOCK_TIMEOUT = "lock.timeout"

# Error
ATTR_ERROR_TYPE = "error.type"

__all__ = [
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_DB_TABLE",
    "ATTR_PHASE",
    "ATTR_STRATEGY",
    "ATTR_ROWS_UPDATED",
    "ATTR_ORGANIZATION_COUNT",
    "ATTR_BATCH_SIZE",
    "ATTR_CONSTRAINT_NAME",
    "ATTR_INDEX_NAME",
    "ATTR_PARTITION_COLUMN",
    "ATTR_LOCK_KEY",
    "ATTR_LOCK_ID",
    "ATTR_LOCK_TIMEOUT",
    "ATTR_ERROR_TYPE",
]
