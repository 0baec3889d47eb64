"""
OpenTelemetry metrics for migration runs.

The metrics gracefully degrade when OpenTelemetry is not installed:
all operations become no-ops without raising errors.

Example:
    >>> from tenantshard.metrics import PartitionMetrics
    >>>
    >>> metrics = PartitionMetrics("run-2024-06-01")
    >>> with metrics.time_phase("backfill_user_tables"):
    ...     ...
    >>> metrics.record_rows_updated(1200, table="sessions")

Metrics Exposed:
    - tenantshard.rows.updated (Counter): Rows whose tenant columns were written
    - tenantshard.rows.failed (Counter): Failed per-organization updates
    - tenantshard.tables.sharded (Counter): Tables converted to distributed form
    - tenantshard.table.failures (Counter): Recorded table-level failures
    - tenantshard.phase.duration (Histogram): Time spent in each phase

All metrics carry the ``run_id`` attribute.
"""

from __future__ import annotations

import time
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from tenantshard.models import StatsDelta

# Optional OpenTelemetry import - single source of truth
try:
    from opentelemetry import metrics

    OTEL_METRICS_AVAILABLE = True
except ImportError:
    OTEL_METRICS_AVAILABLE = False
    metrics = None  # type: ignore[assignment]


class NoOpCounter:
    """
    No-op counter when OpenTelemetry is not available.

    Provides the same interface as an OpenTelemetry Counter
    but does nothing, allowing code to work without OTel.
    """

    def add(
        self,
        amount: int | float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        """No-op add operation."""


class NoOpHistogram:
    """No-op histogram when OpenTelemetry is not available."""

    def record(
        self,
        value: float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        """No-op record operation."""


@dataclass(frozen=True)
class PartitionMetricSnapshot:
    """
    Snapshot of the values a run has recorded.

    Attributes:
        rows_updated: Rows written
        rows_failed: Failed per-organization updates
        tables_sharded: Tables distributed
        table_failures: Table-level failures
        phase_durations: Phase name to total seconds
    """

    rows_updated: int = 0
    rows_failed: int = 0
    tables_sharded: int = 0
    table_failures: int = 0
    phase_durations: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "rows_updated": self.rows_updated,
            "rows_failed": self.rows_failed,
            "tables_sharded": self.tables_sharded,
            "table_failures": self.table_failures,
            "phase_durations": dict(self.phase_durations),
        }


@dataclass
class PartitionMetrics:
    """
    Metric instruments of one migration run.

    Attributes:
        run_id: Identifier attached to every measurement
        enable_metrics: Whether metrics are enabled (default True)
    """

    run_id: str
    enable_metrics: bool = True

    _rows_updated_counter: Any = field(default=None, init=False, repr=False)
    _rows_failed_counter: Any = field(default=None, init=False, repr=False)
    _tables_sharded_counter: Any = field(default=None, init=False, repr=False)
    _table_failures_counter: Any = field(default=None, init=False, repr=False)
    _phase_duration_histogram: Any = field(default=None, init=False, repr=False)

    # Internal counters for snapshot
    _rows_updated: int = field(default=0, init=False, repr=False)
    _rows_failed: int = field(default=0, init=False, repr=False)
    _tables_sharded: int = field(default=0, init=False, repr=False)
    _table_failures: int = field(default=0, init=False, repr=False)
    _phase_durations: dict[str, float] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.metrics_enabled:
            self._setup_metrics()
        else:
            self._setup_noop()

    def _setup_metrics(self) -> None:
        """Set up OpenTelemetry metric instruments."""
        meter = metrics.get_meter("tenantshard", version="0.3.0")
        self._rows_updated_counter = meter.create_counter(
            name="tenantshard.rows.updated",
            unit="rows",
            description="Rows whose tenant columns were written",
        )
        self._rows_failed_counter = meter.create_counter(
            name="tenantshard.rows.failed",
            unit="updates",
            description="Per-organization updates that failed",
        )
        self._tables_sharded_counter = meter.create_counter(
            name="tenantshard.tables.sharded",
            unit="tables",
            description="Tables converted to distributed form",
        )
        self._table_failures_counter = meter.create_counter(
            name="tenantshard.table.failures",
            unit="failures",
            description="Table-level failures recorded during the run",
        )
        self._phase_duration_histogram = meter.create_histogram(
            name="tenantshard.phase.duration",
            unit="s",
            description="Time spent in each migration phase in seconds",
        )

    def _setup_noop(self) -> None:
        self._rows_updated_counter = NoOpCounter()
        self._rows_failed_counter = NoOpCounter()
        self._tables_sharded_counter = NoOpCounter()
        self._table_failures_counter = NoOpCounter()
        self._phase_duration_histogram = NoOpHistogram()

    def _attributes(self, **extra: str) -> dict[str, str]:
        return {"run_id": self.run_id, **extra}

    def record_rows_updated(self, count: int, table: str | None = None) -> None:
        attrs = self._attributes(table=table) if table else self._attributes()
        self._rows_updated_counter.add(count, attrs)
        self._rows_updated += count

    def record_rows_failed(self, count: int, table: str | None = None) -> None:
        attrs = self._attributes(table=table) if table else self._attributes()
        self._rows_failed_counter.add(count, attrs)
        self._rows_failed += count

    def record_tables_sharded(self, count: int = 1) -> None:
        self._tables_sharded_counter.add(count, self._attributes())
        self._tables_sharded += count

    def record_table_failure(self, phase: str, operation: str) -> None:
        self._table_failures_counter.add(1, self._attributes(phase=phase, operation=operation))
        self._table_failures += 1

    def record_delta(self, delta: StatsDelta) -> None:
        """Record the counters a phase contributed."""
        if delta.rows_updated:
            self.record_rows_updated(delta.rows_updated)
        if delta.rows_failed:
            self.record_rows_failed(delta.rows_failed)
        if delta.tables_sharded:
            self.record_tables_sharded(delta.tables_sharded)
        for failure in delta.failures:
            self.record_table_failure(failure.phase, failure.operation)

    def record_phase_duration(self, phase: str, duration_seconds: float) -> None:
        """
        Record duration for a migration phase.

        Args:
            phase: Phase name (e.g., 'teardown')
            duration_seconds: Duration in seconds
        """
        self._phase_duration_histogram.record(duration_seconds, self._attributes(phase=phase))
        self._phase_durations[phase] = self._phase_durations.get(phase, 0.0) + duration_seconds

    @contextmanager
    def time_phase(self, phase: str) -> Generator[None, None, None]:
        """
        Time a phase and record its duration when the context exits.

        Example:
            >>> with metrics.time_phase("rewrite_primary_keys"):
            ...     await rewrite()
        """
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_phase_duration(phase, time.perf_counter() - start)

    def get_snapshot(self) -> PartitionMetricSnapshot:
        """Values accumulated so far."""
        return PartitionMetricSnapshot(
            rows_updated=self._rows_updated,
            rows_failed=self._rows_failed,
            tables_sharded=self._tables_sharded,
            table_failures=self._table_failures,
            phase_durations=dict(self._phase_durations),
        )

    @property
    def metrics_enabled(self) -> bool:
        """True if metrics are enabled and OpenTelemetry is available."""
        return self.enable_metrics and OTEL_METRICS_AVAILABLE


__all__ = [
    "OTEL_METRICS_AVAILABLE",
    "NoOpCounter",
    "NoOpHistogram",
    "PartitionMetricSnapshot",
    "PartitionMetrics",
]
