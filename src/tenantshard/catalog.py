"""
Table catalog of the mentoring schema being partitioned by tenant.

The catalog is configuration: it names every table the engine touches and
the keys, indexes and foreign keys each one ends up with. Nothing outside a
catalog is ever migrated, and the SQL statement builder only accepts
identifiers that appear here (or that the database's own catalog reports for
a catalog table).

Usage:
    >>> from tenantshard.catalog import default_catalog
    >>>
    >>> catalog = default_catalog()
    >>> catalog.primary_key_for("sessions").columns
    ('tenant_code', 'id')
"""

from __future__ import annotations

from dataclasses import dataclass, field

from tenantshard.models import (
    ForeignKeySpec,
    IndexSpec,
    LookupStrategy,
    PrimaryKeySpec,
    TableSpec,
)

TENANT_COLUMN = "tenant_code"
ORGANIZATION_COLUMN = "organization_code"
ORGANIZATION_ID_COLUMN = "organization_id"

_BOTH = (TENANT_COLUMN, ORGANIZATION_COLUMN)
_TENANT = (TENANT_COLUMN,)


def _org(table: str) -> TableSpec:
    return TableSpec(table, ORGANIZATION_ID_COLUMN, LookupStrategy.DIRECT_ORG_ID, _BOTH)


def _user(table: str, column: str, update_columns: tuple[str, ...] = _TENANT) -> TableSpec:
    return TableSpec(table, column, LookupStrategy.VIA_USER_EXTENSION, update_columns)


ORGANIZATION_TABLES: tuple[TableSpec, ...] = (
    _org("availabilities"),
    _org("default_rules"),
    _org("entity_types"),
    _org("file_uploads"),
    _org("forms"),
    _org("notification_templates"),
    _org("organization_extension"),
    _org("report_queries"),
    _org("reports"),
    _org("role_extensions"),
)

# user_extensions is first: every other table here resolves through it.
USER_TABLES: tuple[TableSpec, ...] = (
    TableSpec("user_extensions", ORGANIZATION_ID_COLUMN, LookupStrategy.DIRECT_ORG_ID, _BOTH),
    _user("sessions", "created_by"),
    _user("session_attendees", "mentee_id"),
    _user("feedbacks", "user_id"),
    _user("connection_requests", "created_by"),
    _user("connections", "created_by"),
    _user("entities", "created_by"),
    _user("issues", "user_id", _BOTH),
    _user("resources", "created_by"),
    _user("session_request", "created_by"),
    _user("question_sets", "created_by", _BOTH),
    _user("questions", "created_by", _BOTH),
    TableSpec(
        "post_session_details",
        "session_id",
        LookupStrategy.VIA_SESSION_THEN_USER_EXTENSION,
        _TENANT,
    ),
)

# Platform-wide tables with no organization link.
STATIC_TABLES: tuple[TableSpec, ...] = (
    TableSpec("modules", "id", LookupStrategy.STATIC_DEFAULT, _TENANT),
    TableSpec("report_types", "id", LookupStrategy.STATIC_DEFAULT, _TENANT),
    TableSpec("report_role_mapping", "id", LookupStrategy.STATIC_DEFAULT, _TENANT),
)

RESHAPED_TABLES: tuple[str, ...] = (
    "availabilities",
    "connection_requests",
    "connections",
    "default_rules",
    "feedbacks",
    "file_uploads",
    "forms",
    "issues",
    "modules",
    "notification_templates",
    "organization_extension",
    "question_sets",
    "questions",
    "report_queries",
    "report_role_mapping",
    "report_types",
    "reports",
    "role_extensions",
    "session_request",
    "user_extensions",
    "entity_types",
    "sessions",
    "entities",
    "post_session_details",
    "resources",
    "session_attendees",
)

TABLES_WITH_ORGANIZATION_CODE: tuple[str, ...] = (
    "availabilities",
    "default_rules",
    "entity_types",
    "file_uploads",
    "forms",
    "issues",
    "notification_templates",
    "organization_extension",
    "question_sets",
    "questions",
    "report_queries",
    "reports",
    "role_extensions",
    "user_extensions",
)

EXCLUDED_TABLES: tuple[str, ...] = ("permissions", "role_permission_mapping")

OBSOLETE_TABLES: tuple[str, ...] = (
    "session_enrollments",
    "session_ownerships",
    "session_request_mapping",
)

PRIMARY_KEY_OVERRIDES: tuple[PrimaryKeySpec, ...] = (
    PrimaryKeySpec("entities", (TENANT_COLUMN, "id", "entity_type_id")),
    PrimaryKeySpec("forms", (TENANT_COLUMN, "id", ORGANIZATION_ID_COLUMN)),
    PrimaryKeySpec(
        "organization_extension",
        (TENANT_COLUMN, ORGANIZATION_COLUMN, ORGANIZATION_ID_COLUMN),
    ),
    PrimaryKeySpec("post_session_details", (TENANT_COLUMN, "session_id")),
    PrimaryKeySpec("user_extensions", (TENANT_COLUMN, "user_id")),
    PrimaryKeySpec("question_sets", (TENANT_COLUMN, "id")),
    PrimaryKeySpec("questions", (TENANT_COLUMN, "id")),
    PrimaryKeySpec("report_queries", (TENANT_COLUMN, "id", ORGANIZATION_COLUMN)),
    PrimaryKeySpec("role_extensions", (TENANT_COLUMN, "title")),
)

# Primary keys left over from the old British-spelled table name.
LEGACY_CONSTRAINTS: tuple[tuple[str, str], ...] = (
    ("organization_extension", "organisation_extension_pkey"),
)

PROBLEM_UNIQUE_CONSTRAINTS: tuple[str, ...] = (
    "availabilities_event_name_key",
    "connection_requests_friend_id_user_id_key",
    "connections_friend_id_user_id_key",
    "default_rules_type_organization_id_key",
    "entity_types_value_key",
    "forms_type_sub_type_organization_id_key",
    "unique_type_sub_type_org_id",
    "modules_code_key",
    "notification_templates_code_organization_id_key",
    "organization_extension_organization_code_key",
    "report_role_mapping_role_title_report_code_key",
    "report_types_title_key",
    "reports_code_organization_id_key",
    "report_queries_report_code_organization_id_key",
    "role_extensions_title_key",
    "user_extensions_user_id_key",
    "user_extensions_email_key",
    "user_extensions_phone_key",
    "session_request_session_id_mentee_id_key",
    "resources_session_id_key",
)


def _unique(name: str, table: str, *columns: str, not_null: tuple[str, ...] = ()) -> IndexSpec:
    return IndexSpec(
        name,
        table,
        columns,
        unique=True,
        where_null=("deleted_at",),
        where_not_null=not_null,
    )


UNIQUE_INDEXES: tuple[IndexSpec, ...] = (
    _unique("unique_availabilities_event_name_tenant", "availabilities", TENANT_COLUMN, "event_name"),
    _unique(
        "unique_default_rules_type_org_tenant",
        "default_rules",
        "type",
        ORGANIZATION_ID_COLUMN,
        TENANT_COLUMN,
    ),
    _unique(
        "unique_entity_types_value_organization_tenant",
        "entity_types",
        TENANT_COLUMN,
        "value",
        ORGANIZATION_ID_COLUMN,
    ),
    _unique(
        "unique_forms_id_organization_type_tenant",
        "forms",
        TENANT_COLUMN,
        "id",
        ORGANIZATION_ID_COLUMN,
        "type",
    ),
    _unique("unique_modules_code_tenant", "modules", TENANT_COLUMN, "code"),
    _unique(
        "unique_notification_templates_code_org_tenant",
        "notification_templates",
        TENANT_COLUMN,
        "code",
        ORGANIZATION_ID_COLUMN,
    ),
    _unique(
        "unique_organization_extension_org_code_tenant",
        "organization_extension",
        TENANT_COLUMN,
        ORGANIZATION_COLUMN,
    ),
    _unique(
        "unique_post_session_details_session_tenant",
        "post_session_details",
        TENANT_COLUMN,
        "session_id",
    ),
    _unique("unique_question_sets_code_tenant", "question_sets", "code", TENANT_COLUMN),
    _unique(
        "unique_report_queries_code_tenant_org",
        "report_queries",
        "report_code",
        TENANT_COLUMN,
        ORGANIZATION_COLUMN,
    ),
    _unique(
        "unique_report_role_mapping_role_code_tenant",
        "report_role_mapping",
        TENANT_COLUMN,
        "role_title",
        "report_code",
    ),
    _unique("unique_report_types_title_tenant", "report_types", TENANT_COLUMN, "title"),
    _unique(
        "unique_reports_code_organization_tenant",
        "reports",
        TENANT_COLUMN,
        "code",
        ORGANIZATION_ID_COLUMN,
    ),
    _unique(
        "unique_role_extensions_title_org_tenant",
        "role_extensions",
        TENANT_COLUMN,
        "title",
        ORGANIZATION_ID_COLUMN,
    ),
    _unique(
        "unique_session_attendees_session_mentee_tenant",
        "session_attendees",
        "session_id",
        "mentee_id",
        TENANT_COLUMN,
    ),
    _unique(
        "unique_session_request_requestor_requestee_tenant",
        "session_request",
        "requestor_id",
        "requestee_id",
        TENANT_COLUMN,
    ),
    _unique(
        "unique_sessions_id_title_mentor_creator_tenant",
        "sessions",
        TENANT_COLUMN,
        "id",
        "title",
        "mentor_name",
        "created_by",
    ),
    _unique(
        "unique_user_extensions_user_tenant_email_phone_username",
        "user_extensions",
        "user_id",
        TENANT_COLUMN,
        "email",
        "phone",
        "user_name",
        not_null=("email", "phone"),
    ),
)


def _index(name: str, table: str, *columns: str, not_null: tuple[str, ...] = ()) -> IndexSpec:
    return IndexSpec(name, table, columns, where_not_null=not_null)


PERFORMANCE_INDEXES: tuple[IndexSpec, ...] = (
    _index("idx_availabilities_tenant_code", "availabilities", TENANT_COLUMN),
    _index(
        "idx_connection_requests_friend_user_tenant",
        "connection_requests",
        "friend_id",
        "user_id",
        TENANT_COLUMN,
    ),
    _index("idx_connections_friend_user_tenant", "connections", "friend_id", "user_id", TENANT_COLUMN),
    _index("idx_entity_types_value_tenant", "entity_types", "value", TENANT_COLUMN),
    _index("idx_feedbacks_user_tenant", "feedbacks", "user_id", TENANT_COLUMN),
    _index(
        "idx_forms_type_subtype_organization",
        "forms",
        "type",
        "sub_type",
        ORGANIZATION_ID_COLUMN,
    ),
    _index("idx_issues_tenant_code", "issues", TENANT_COLUMN),
    _index(
        "idx_notification_templates_code_org",
        "notification_templates",
        "code",
        ORGANIZATION_ID_COLUMN,
    ),
    _index("idx_organization_extension_org_code", "organization_extension", ORGANIZATION_COLUMN),
    _index(
        "idx_organization_extension_org_tenant_code",
        "organization_extension",
        ORGANIZATION_COLUMN,
        TENANT_COLUMN,
    ),
    _index(
        "idx_post_session_details_tenant_session",
        "post_session_details",
        TENANT_COLUMN,
        "session_id",
    ),
    _index("idx_question_sets_code_tenant", "question_sets", "code", TENANT_COLUMN),
    _index(
        "idx_report_queries_code_tenant_org",
        "report_queries",
        "report_code",
        TENANT_COLUMN,
        ORGANIZATION_COLUMN,
    ),
    _index("idx_report_role_mapping_role_code", "report_role_mapping", "role_title", "report_code"),
    _index("idx_report_types_title_tenant", "report_types", "title", TENANT_COLUMN),
    _index(
        "idx_reports_org_tenant_code",
        "reports",
        ORGANIZATION_ID_COLUMN,
        TENANT_COLUMN,
        "code",
    ),
    _index("idx_resources_session_tenant", "resources", "session_id", TENANT_COLUMN),
    _index("idx_role_extensions_title", "role_extensions", "title"),
    _index("idx_session_attendees_tenant_code", "session_attendees", TENANT_COLUMN),
    _index("idx_session_request_tenant_code", "session_request", TENANT_COLUMN),
    _index("idx_user_extensions_user_tenant", "user_extensions", "user_id", TENANT_COLUMN),
    _index("idx_user_extensions_email", "user_extensions", "email", not_null=("email",)),
    _index("idx_user_extensions_phone", "user_extensions", "phone", not_null=("phone",)),
    _index("idx_user_extensions_user_name", "user_extensions", "user_name", not_null=("user_name",)),
)

TENANT_FOREIGN_KEYS: tuple[ForeignKeySpec, ...] = (
    ForeignKeySpec(
        "fk_entities_entity_type_id",
        "entities",
        ("entity_type_id",),
        "entity_types",
        ("id",),
    ),
    ForeignKeySpec(
        "fk_post_session_details_session_id",
        "post_session_details",
        ("session_id",),
        "sessions",
        ("id",),
    ),
    ForeignKeySpec(
        "fk_session_attendees_session_id",
        "session_attendees",
        ("session_id",),
        "sessions",
        ("id",),
    ),
    ForeignKeySpec(
        "fk_resources_session_id",
        "resources",
        ("session_id",),
        "sessions",
        ("id",),
    ),
)

LOCAL_FOREIGN_KEYS: tuple[ForeignKeySpec, ...] = (
    ForeignKeySpec(
        "fk_role_permission_mapping_permission_id",
        "role_permission_mapping",
        ("permission_id",),
        "permissions",
        ("id",),
        tenant_qualified=False,
    ),
)

# Columns referenced by generated statements but not named by any spec above.
_COMMON_COLUMNS: tuple[str, ...] = (
    "id",
    "user_id",
    "created_by",
    "session_id",
    "updated_at",
    "deleted_at",
    ORGANIZATION_ID_COLUMN,
)


@dataclass(frozen=True)
class TableCatalog:
    """
    Everything the engine knows about the target schema.

    Attributes:
        organization_tables: Backfilled by organization_id (phase 3).
        user_tables: Backfilled through user_extensions (phase 4).
        static_tables: Backfilled with the configured default tenant.
        reshaped_tables: Tables whose keys are rewritten and distributed.
        tables_with_organization_code: Tables carrying organization_code.
        excluded_tables: Tables that must stay local.
        obsolete_tables: Tables dropped outright.
        primary_key_overrides: Non-default composite primary keys.
        legacy_constraints: (table, name) constraints dropped with the old key.
        problem_unique_constraints: Tenant-less unique constraints to drop.
        unique_indexes: Tenant-qualified unique indexes to create.
        performance_indexes: Lookup indexes to create.
        tenant_foreign_keys: Foreign keys between distributed tables.
        local_foreign_keys: Foreign keys between excluded tables.
        tenant_column: Partition column.
        organization_column: Organization code column.
    """

    organization_tables: tuple[TableSpec, ...] = ORGANIZATION_TABLES
    user_tables: tuple[TableSpec, ...] = USER_TABLES
    static_tables: tuple[TableSpec, ...] = STATIC_TABLES
    reshaped_tables: tuple[str, ...] = RESHAPED_TABLES
    tables_with_organization_code: tuple[str, ...] = TABLES_WITH_ORGANIZATION_CODE
    excluded_tables: tuple[str, ...] = EXCLUDED_TABLES
    obsolete_tables: tuple[str, ...] = OBSOLETE_TABLES
    primary_key_overrides: tuple[PrimaryKeySpec, ...] = PRIMARY_KEY_OVERRIDES
    legacy_constraints: tuple[tuple[str, str], ...] = LEGACY_CONSTRAINTS
    problem_unique_constraints: tuple[str, ...] = PROBLEM_UNIQUE_CONSTRAINTS
    unique_indexes: tuple[IndexSpec, ...] = UNIQUE_INDEXES
    performance_indexes: tuple[IndexSpec, ...] = PERFORMANCE_INDEXES
    tenant_foreign_keys: tuple[ForeignKeySpec, ...] = TENANT_FOREIGN_KEYS
    local_foreign_keys: tuple[ForeignKeySpec, ...] = LOCAL_FOREIGN_KEYS
    tenant_column: str = TENANT_COLUMN
    organization_column: str = ORGANIZATION_COLUMN
    _primary_keys: dict[str, PrimaryKeySpec] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        overlap = set(self.reshaped_tables) & set(self.excluded_tables)
        if overlap:
            raise ValueError(f"tables both reshaped and excluded: {sorted(overlap)}")
        for spec in self.primary_key_overrides:
            if spec.columns[0] != self.tenant_column:
                raise ValueError(
                    f"{spec.table_name}: primary key must start with {self.tenant_column}"
                )
            self._primary_keys[spec.table_name] = spec

    @property
    def backfill_specs(self) -> tuple[TableSpec, ...]:
        return (*self.organization_tables, *self.user_tables, *self.static_tables)

    def primary_key_for(self, table: str) -> PrimaryKeySpec:
        """Target primary key of a table, ``(tenant, id)`` unless overridden."""
        spec = self._primary_keys.get(table)
        if spec is not None:
            return spec
        return PrimaryKeySpec(table, (self.tenant_column, "id"))

    @property
    def primary_keys(self) -> tuple[PrimaryKeySpec, ...]:
        return tuple(self.primary_key_for(table) for table in self.reshaped_tables)

    def is_excluded(self, table: str) -> bool:
        return table in self.excluded_tables

    @property
    def coverage_specs(self) -> tuple[TableSpec, ...]:
        """Specs whose organization ids must all be mapped before mutation."""
        return tuple(
            spec
            for spec in (*self.organization_tables, *self.user_tables)
            if spec.lookup_strategy != LookupStrategy.STATIC_DEFAULT
        )

    def identifiers(self) -> frozenset[str]:
        """The SQL identifier allow-list derived from the catalog."""
        names: set[str] = {
            self.tenant_column,
            self.organization_column,
            *_COMMON_COLUMNS,
            *self.reshaped_tables,
            *self.excluded_tables,
            *self.obsolete_tables,
            *self.problem_unique_constraints,
        }
        for spec in self.backfill_specs:
            names.update(spec.identifiers)
        for pk in self.primary_keys:
            names.add(pk.table_name)
            names.add(pk.constraint_name)
            names.update(pk.columns)
        for table, constraint in self.legacy_constraints:
            names.update((table, constraint))
        for index in (*self.unique_indexes, *self.performance_indexes):
            names.update(index.identifiers)
        for fk in (*self.tenant_foreign_keys, *self.local_foreign_keys):
            names.update(fk.identifiers)
        return frozenset(names)


def default_catalog() -> TableCatalog:
    """Return the catalog of the mentoring schema."""
    return TableCatalog()


__all__ = [
    "TENANT_COLUMN",
    "ORGANIZATION_COLUMN",
    "ORGANIZATION_ID_COLUMN",
    "TableCatalog",
    "default_catalog",
]
