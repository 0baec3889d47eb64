"""
Organization mapping resolution.

The mapping source is a delimited text file with one row per organization:

    tenant_code,organization_code,organization_id
    acme,acme_main,1
    acme,acme_east,2

MappingResolver loads it into an immutable OrganizationMapping, the single
source of truth every later phase uses to turn an organization id into its
tenant and organization codes.
"""

from __future__ import annotations

import csv
import logging
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from typing import TextIO

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import text

from tenantshard._connection import DatabaseTarget, execute_with_connection
from tenantshard.exceptions import MalformedMappingSourceError

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS: tuple[str, ...] = ("tenant_code", "organization_code", "organization_id")

_REGISTRY_TABLE_EXISTS = text("SELECT to_regclass('organization_extension') IS NOT NULL")

_REGISTRY_IDS = text(
    """
    SELECT DISTINCT organization_id::text
    FROM organization_extension
    WHERE organization_id IS NOT NULL
    """
)


class OrganizationCodes(BaseModel):
    """Tenant and organization codes of one organization."""

    model_config = ConfigDict(frozen=True)

    tenant_code: str = Field(..., min_length=1, description="Partition key value")
    organization_code: str = Field(
        ..., min_length=1, description="Human-readable organization alias"
    )

    @field_validator("tenant_code", "organization_code", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value


class OrganizationMapping(Mapping[str, OrganizationCodes]):
    """
    Read-only organization id -> codes lookup.

    Keys are organization ids in string form, so numeric and UUID ids
    compare the same way they do after ``::text`` in SQL.
    """

    def __init__(self, entries: Mapping[str, OrganizationCodes] | None = None) -> None:
        self._entries: dict[str, OrganizationCodes] = dict(entries or {})

    def __getitem__(self, organization_id: str) -> OrganizationCodes:
        return self._entries[organization_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"OrganizationMapping({len(self)} organizations)"

    @property
    def organization_ids(self) -> frozenset[str]:
        return frozenset(self._entries)

    @property
    def tenant_codes(self) -> frozenset[str]:
        return frozenset(codes.tenant_code for codes in self._entries.values())

    def rows(self) -> list[tuple[str, str, str]]:
        """(organization_id, tenant_code, organization_code) tuples, sorted by id."""
        return [
            (organization_id, codes.tenant_code, codes.organization_code)
            for organization_id, codes in sorted(self._entries.items())
        ]

    def unmapped(self, organization_ids: Iterable[str]) -> set[str]:
        """Return the ids with no entry."""
        return {i for i in organization_ids if i not in self._entries}


class MappingResolver:
    """
    Loads and validates the organization mapping source.

    Args:
        conn: Optional engine or connection, used only to read the
            organization registry when the mapping is restricted to it.

    Example:
        >>> resolver = MappingResolver(engine)
        >>> registry = await resolver.load_registry()
        >>> mapping = resolver.load(Path("data_codes.csv"), registry=registry)
        >>> mapping["1"].tenant_code
        'acme'
    """

    def __init__(self, conn: DatabaseTarget | None = None) -> None:
        self._conn = conn

    async def load_registry(self) -> frozenset[str] | None:
        """
        Read the organization ids present in ``organization_extension``.

        Returns:
            The ids as strings, or None if the registry table does not exist
            (the mapping is then not restricted).
        """
        if self._conn is None:
            raise RuntimeError("load_registry requires a database connection")
        async with execute_with_connection(self._conn, transactional=False) as conn:
            exists = await conn.execute(_REGISTRY_TABLE_EXISTS)
            if not exists.scalar():
                logger.warning("organization_extension not found, mapping is not restricted")
                return None
            result = await conn.execute(_REGISTRY_IDS)
            ids = frozenset(row[0] for row in result.fetchall())
        logger.info("Organization registry holds %d id(s)", len(ids))
        return ids

    def load(
        self,
        source: Path | str | TextIO,
        registry: Iterable[str] | None = None,
    ) -> OrganizationMapping:
        """
        Parse a mapping source.

        Args:
            source: File path or open text stream.
            registry: If given, only organization ids in it are kept.

        Returns:
            The immutable mapping.

        Raises:
            MalformedMappingSourceError: If the source cannot be read or a
                required header column is missing.
        """
        if isinstance(source, str | Path):
            path = Path(source)
            try:
                with path.open(newline="", encoding="utf-8-sig") as handle:
                    return self._parse(handle, str(path), registry)
            except OSError as e:
                raise MalformedMappingSourceError(
                    f"cannot read mapping source: {e.strerror or e}",
                    source=str(path),
                ) from e
        return self._parse(source, getattr(source, "name", "<stream>"), registry)

    def _parse(
        self,
        handle: TextIO,
        source_name: str,
        registry: Iterable[str] | None,
    ) -> OrganizationMapping:
        allowed = frozenset(registry) if registry is not None else None
        reader = csv.DictReader(handle)
        try:
            header = [name.strip() for name in (reader.fieldnames or [])]
        except csv.Error as e:
            raise MalformedMappingSourceError(
                f"mapping source is not valid delimited text: {e}", source=source_name
            ) from e
        except UnicodeDecodeError as e:
            raise MalformedMappingSourceError(
                f"mapping source is not valid UTF-8: {e.reason} at byte {e.start}",
                source=source_name,
            ) from e

        missing = [c for c in REQUIRED_COLUMNS if c not in header]
        if missing:
            raise MalformedMappingSourceError(
                "mapping source is missing required columns",
                missing_columns=missing,
                source=source_name,
            )
        reader.fieldnames = header

        entries: dict[str, OrganizationCodes] = {}
        skipped_incomplete = 0
        skipped_unregistered = 0
        try:
            for row in reader:
                line_number = reader.line_num
                values = {c: (row.get(c) or "").strip() for c in REQUIRED_COLUMNS}
                if not all(values.values()):
                    skipped_incomplete += 1
                    logger.warning(
                        "Skipping mapping row %d: missing %s",
                        line_number,
                        ", ".join(c for c, v in values.items() if not v),
                    )
                    continue

                organization_id = values["organization_id"]
                if allowed is not None and organization_id not in allowed:
                    skipped_unregistered += 1
                    logger.info(
                        "Skipping mapping row %d: organization %s is not registered",
                        line_number,
                        organization_id,
                    )
                    continue

                codes = OrganizationCodes(
                    tenant_code=values["tenant_code"],
                    organization_code=values["organization_code"],
                )
                previous = entries.get(organization_id)
                if previous is not None and previous != codes:
                    logger.warning(
                        "Organization %s mapped twice; row %d replaces %s/%s",
                        organization_id,
                        line_number,
                        previous.tenant_code,
                        previous.organization_code,
                    )
                entries[organization_id] = codes
        except csv.Error as e:
            raise MalformedMappingSourceError(
                f"mapping source is not valid delimited text: {e}", source=source_name
            ) from e
        except UnicodeDecodeError as e:
            raise MalformedMappingSourceError(
                f"mapping source is not valid UTF-8: {e.reason} at byte {e.start}",
                source=source_name,
            ) from e

        logger.info(
            "Loaded %d organization mapping(s) from %s (%d incomplete, %d unregistered skipped)",
            len(entries),
            source_name,
            skipped_incomplete,
            skipped_unregistered,
        )
        return OrganizationMapping(entries)


__all__ = [
    "REQUIRED_COLUMNS",
    "MappingResolver",
    "OrganizationCodes",
    "OrganizationMapping",
]
