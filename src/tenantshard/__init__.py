"""
tenantshard - Tenant partitioning migration engine for PostgreSQL and Citus.

This library provides:
- Organization mapping resolution and coverage validation
- Tenant column backfill with bulk and per-organization strategies
- Primary key, unique index and foreign key reshaping around the tenant column
- Optional Citus distribution of tenant-scoped tables
- A phase orchestrator with run statistics and a single exit status
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("tenantshard")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from tenantshard.backfill import (
    BackfillEngine,
    BackfillResult,
    BackfillStrategy,
    select_strategy,
)
from tenantshard.catalog import TableCatalog, default_catalog
from tenantshard.config import MigrationConfig
from tenantshard.context import MigrationContext
from tenantshard.coverage import CoverageReport, CoverageValidator, VerificationReport
from tenantshard.distribution import (
    DistributionController,
    DistributionReport,
    DistributionStatus,
)
from tenantshard.exceptions import (
    DegradedStrategyError,
    DistributionAmbiguityError,
    FatalPreconditionError,
    IdentifierNotAllowedError,
    MalformedMappingSourceError,
    MigrationLockError,
    MissingOrganizationsError,
    PartitionMigrationError,
    TableOperationError,
)
from tenantshard.inspector import SchemaInspector
from tenantshard.locks import AdvisoryLock
from tenantshard.mapping import MappingResolver, OrganizationCodes, OrganizationMapping
from tenantshard.metrics import PartitionMetrics
from tenantshard.models import (
    ConstraintRecord,
    MigrationPhase,
    MigrationStats,
    PhaseResult,
    StatsDelta,
    TableFailure,
)
from tenantshard.orchestrator import MigrationOrchestrator, MigrationReport, Phase
from tenantshard.reshaper import SchemaReshaper
from tenantshard.sql import SqlBuilder, Statement

__all__ = [
    "__version__",
    # Mapping
    "MappingResolver",
    "OrganizationCodes",
    "OrganizationMapping",
    # Coverage
    "CoverageReport",
    "CoverageValidator",
    "VerificationReport",
    # Backfill
    "BackfillEngine",
    "BackfillResult",
    "BackfillStrategy",
    "select_strategy",
    # Schema
    "SchemaInspector",
    "SchemaReshaper",
    "SqlBuilder",
    "Statement",
    "TableCatalog",
    "default_catalog",
    # Distribution
    "DistributionController",
    "DistributionReport",
    "DistributionStatus",
    # Orchestration
    "AdvisoryLock",
    "MigrationConfig",
    "MigrationContext",
    "MigrationOrchestrator",
    "MigrationReport",
    "PartitionMetrics",
    "Phase",
    # Models
    "ConstraintRecord",
    "MigrationPhase",
    "MigrationStats",
    "PhaseResult",
    "StatsDelta",
    "TableFailure",
    # Exceptions
    "DegradedStrategyError",
    "DistributionAmbiguityError",
    "FatalPreconditionError",
    "IdentifierNotAllowedError",
    "MalformedMappingSourceError",
    "MigrationLockError",
    "MissingOrganizationsError",
    "PartitionMigrationError",
    "TableOperationError",
]
