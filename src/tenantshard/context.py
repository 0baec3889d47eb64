"""
Per-run migration state.

A MigrationContext is built once per run and handed to every phase. It
holds everything that changes while the run progresses: the resolved
mapping, the statistics and the constraints recorded at teardown.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from tenantshard.catalog import TableCatalog, default_catalog
from tenantshard.config import MigrationConfig
from tenantshard.mapping import OrganizationMapping
from tenantshard.models import ConstraintRecord, MigrationStats
from tenantshard.sql import SqlBuilder


@dataclass
class MigrationContext:
    """
    State shared by the phases of one run.

    Attributes:
        config: Run configuration.
        catalog: Table catalog.
        builder: SQL builder whose allow-list derives from the catalog.
        stats: Run statistics, written only by the orchestrator.
        mapping: Organization mapping, set by the first phase.
        dropped_constraints: Constraints dropped at teardown, recreated at rebuild.
        citus_available: Whether the cluster can distribute tables.
    """

    config: MigrationConfig
    catalog: TableCatalog
    builder: SqlBuilder
    stats: MigrationStats = field(default_factory=MigrationStats)
    mapping: OrganizationMapping | None = None
    dropped_constraints: list[ConstraintRecord] = field(default_factory=list)
    citus_available: bool = False

    @classmethod
    def create(
        cls,
        config: MigrationConfig,
        catalog: TableCatalog | None = None,
        builder: SqlBuilder | None = None,
    ) -> MigrationContext:
        catalog = catalog or default_catalog()
        return cls(
            config=config,
            catalog=catalog,
            builder=builder or SqlBuilder(catalog.identifiers()),
        )

    def require_mapping(self) -> OrganizationMapping:
        """The resolved mapping; raises if the mapping phase has not run."""
        if self.mapping is None:
            raise RuntimeError("organization mapping has not been resolved")
        return self.mapping


__all__ = ["MigrationContext"]
