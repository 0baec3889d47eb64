"""
Observability utilities for tenantshard.

This module provides tracing and standard attribute definitions used by
every migration component.

Note:
    OpenTelemetry is an optional dependency (``pip install tenantshard[telemetry]``).
    All utilities in this module gracefully handle the case where it is not
    installed.
"""

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
from tenantshard.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)
from tenantshard.observability.tracing import OTEL_AVAILABLE

__all__ = [
    # Tracing
    "OTEL_AVAILABLE",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    # Attributes
    "ATTR_BATCH_SIZE",
    "ATTR_CONSTRAINT_NAME",
    "ATTR_DB_OPERATION",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_TABLE",
    "ATTR_ERROR_TYPE",
    "ATTR_INDEX_NAME",
    "ATTR_LOCK_ID",
    "ATTR_LOCK_KEY",
    "ATTR_LOCK_TIMEOUT",
    "ATTR_ORGANIZATION_COUNT",
    "ATTR_PARTITION_COLUMN",
    "ATTR_PHASE",
    "ATTR_ROWS_UPDATED",
    "ATTR_STRATEGY",
]
