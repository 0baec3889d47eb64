"""
Configuration for a migration run.

This module provides:
- MigrationConfig: Settings for one run of the partitioning engine
- DEFAULT_BATCH_SIZE / MAX_POOL_CONNECTIONS: Shared defaults
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from tenantshard.exceptions import RetryConfig

DEFAULT_BATCH_SIZE = 5000
MIN_POOL_CONNECTIONS = 2
MAX_POOL_CONNECTIONS = 10
DEFAULT_LOCK_KEY = "tenantshard:migration"


@dataclass(frozen=True)
class MigrationConfig:
    """
    Configuration for a migration run.

    Attributes:
        database_url: SQLAlchemy async URL, e.g. ``postgresql+asyncpg://...``
        mapping_path: Path of the organization mapping CSV
        batch_size: Organization ids per transaction in the per-organization
            backfill strategy
        pool_size: Connections kept open in the pool
        max_overflow: Extra connections the pool may open under load
        restrict_to_registry: Only import mapping rows whose organization id
            exists in organization_extension
        max_update_attempts: Attempts per per-organization UPDATE before it is
            counted as failed (1 = no retry)
        enforce_not_null: Set tenant columns NOT NULL after the backfill
        drop_obsolete_tables: Drop tables the partitioned schema removes
        default_tenant_code: Tenant assigned to platform-wide tables
            (modules, report_types, report_role_mapping); None skips them
        default_organization_code: Organization code paired with
            default_tenant_code
        lock_key: Advisory lock key guarding against concurrent runs
        lock_timeout: Seconds to wait for the lock (None = fail immediately)
        enable_tracing: Emit OpenTelemetry spans when available
        enable_metrics: Emit OpenTelemetry metrics when available
    """

    database_url: str
    mapping_path: Path
    batch_size: int = DEFAULT_BATCH_SIZE
    pool_size: int = MIN_POOL_CONNECTIONS
    max_overflow: int = MAX_POOL_CONNECTIONS - MIN_POOL_CONNECTIONS
    restrict_to_registry: bool = True
    max_update_attempts: int = 1
    enforce_not_null: bool = True
    drop_obsolete_tables: bool = True
    default_tenant_code: str | None = None
    default_organization_code: str | None = None
    lock_key: str = DEFAULT_LOCK_KEY
    lock_timeout: float | None = None
    enable_tracing: bool = True
    enable_metrics: bool = True

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not self.database_url:
            raise ValueError("database_url is required (set DATABASE_URL or --database-url)")

        if self.batch_size < 1:
            raise ValueError(
                f"batch_size must be positive, got {self.batch_size}. "
                f"Use a value like {DEFAULT_BATCH_SIZE} (default)."
            )

        if self.pool_size < 1:
            raise ValueError(f"pool_size must be positive, got {self.pool_size}")

        if self.max_overflow < 0:
            raise ValueError(f"max_overflow must be >= 0, got {self.max_overflow}")

        if self.pool_size + self.max_overflow > MAX_POOL_CONNECTIONS:
            raise ValueError(
                f"pool_size + max_overflow must not exceed {MAX_POOL_CONNECTIONS}, "
                f"got {self.pool_size + self.max_overflow}. Phases run sequentially; "
                "a larger pool only adds lock contention."
            )

        if self.max_update_attempts < 1:
            raise ValueError(
                f"max_update_attempts must be >= 1, got {self.max_update_attempts}"
            )

        if self.lock_timeout is not None and self.lock_timeout < 0:
            raise ValueError(f"lock_timeout must be >= 0, got {self.lock_timeout}")

        if self.default_organization_code and not self.default_tenant_code:
            raise ValueError("default_organization_code requires default_tenant_code")

    @property
    def update_retry(self) -> RetryConfig:
        """Retry schedule for per-organization updates."""
        return RetryConfig(max_attempts=self.max_update_attempts)

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        **overrides: object,
    ) -> MigrationConfig:
        """
        Build a config from environment variables.

        Reads ``DATABASE_URL``, ``TENANT_MAPPING_CSV``, ``MIGRATION_BATCH_SIZE``,
        ``DEFAULT_TENANT_CODE`` and ``DEFAULT_ORGANISATION_CODE``. Keyword
        overrides whose value is not None take precedence.

        Args:
            environ: Mapping to read instead of ``os.environ``.
            **overrides: Explicit field values.

        Returns:
            Validated MigrationConfig.

        Raises:
            ValueError: If a value is missing or invalid.
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {
            "database_url": env.get("DATABASE_URL", ""),
            "mapping_path": Path(env.get("TENANT_MAPPING_CSV", "data_codes.csv")),
        }
        if env.get("MIGRATION_BATCH_SIZE"):
            try:
                values["batch_size"] = int(env["MIGRATION_BATCH_SIZE"])
            except ValueError as e:
                raise ValueError(
                    f"MIGRATION_BATCH_SIZE must be an integer, got {env['MIGRATION_BATCH_SIZE']!r}"
                ) from e
        if env.get("DEFAULT_TENANT_CODE"):
            values["default_tenant_code"] = env["DEFAULT_TENANT_CODE"]
        if env.get("DEFAULT_ORGANISATION_CODE"):
            values["default_organization_code"] = env["DEFAULT_ORGANISATION_CODE"]

        values.update({k: v for k, v in overrides.items() if v is not None})
        if isinstance(values["mapping_path"], str):
            values["mapping_path"] = Path(values["mapping_path"])
        return cls(**values)  # type: ignore[arg-type]


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_LOCK_KEY",
    "MAX_POOL_CONNECTIONS",
    "MIN_POOL_CONNECTIONS",
    "MigrationConfig",
]
