"""
Unit tests for mapping resolution.

Tests cover:
- Header validation (missing columns are fatal)
- Row-level skipping of incomplete and unregistered rows
- Duplicate handling
- Registry lookup
"""

import io
import logging
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from tenantshard.exceptions import MalformedMappingSourceError
from tenantshard.mapping import MappingResolver, OrganizationCodes, OrganizationMapping


class TestLoad:
    """Tests for MappingResolver.load."""

    def test_load_from_path(self, mapping_csv: Path) -> None:
        mapping = MappingResolver().load(mapping_csv)
        assert len(mapping) == 3
        assert mapping["1"] == OrganizationCodes(tenant_code="acme", organization_code="acme_main")
        assert mapping.tenant_codes == {"acme", "globex"}

    def test_column_order_irrelevant(self) -> None:
        source = io.StringIO("organization_id,tenant_code,organization_code\n5,acme,acme_west\n")
        mapping = MappingResolver().load(source)
        assert mapping["5"].organization_code == "acme_west"

    def test_byte_order_mark_and_padded_header(self, tmp_path: Path) -> None:
        path = tmp_path / "bom.csv"
        path.write_text(
            "\ufefftenant_code , organization_code,organization_id\nacme,acme_main,1\n",
            encoding="utf-8",
        )
        assert "1" in MappingResolver().load(path)

    def test_missing_header_columns_are_fatal(self) -> None:
        source = io.StringIO("tenant_code,org_id\nacme,1\n")
        with pytest.raises(MalformedMappingSourceError) as exc_info:
            MappingResolver().load(source)
        assert exc_info.value.missing_columns == ("organization_code", "organization_id")

    def test_header_is_case_sensitive(self) -> None:
        source = io.StringIO("Tenant_Code,organization_code,organization_id\nacme,acme_main,1\n")
        with pytest.raises(MalformedMappingSourceError) as exc_info:
            MappingResolver().load(source)
        assert exc_info.value.missing_columns == ("tenant_code",)

    def test_empty_source_is_fatal(self) -> None:
        with pytest.raises(MalformedMappingSourceError):
            MappingResolver().load(io.StringIO(""))

    def test_unreadable_file_is_fatal(self, tmp_path: Path) -> None:
        with pytest.raises(MalformedMappingSourceError) as exc_info:
            MappingResolver().load(tmp_path / "missing.csv")
        assert exc_info.value.source == str(tmp_path / "missing.csv")

    def test_invalid_utf8_is_fatal(self, tmp_path: Path) -> None:
        path = tmp_path / "latin1.csv"
        path.write_bytes(b"tenant_code,organization_code,organization_id\nacme,\xff\xfe,1\n")
        with pytest.raises(MalformedMappingSourceError, match="not valid UTF-8") as exc_info:
            MappingResolver().load(path)
        assert exc_info.value.source == str(path)

    def test_invalid_utf8_after_first_buffer_is_fatal(self, tmp_path: Path) -> None:
        path = tmp_path / "late.csv"
        rows = b"".join(b"acme,acme_main,%d\n" % i for i in range(2000))
        path.write_bytes(b"tenant_code,organization_code,organization_id\n" + rows + b"acme,\xff,9999\n")
        with pytest.raises(MalformedMappingSourceError, match="not valid UTF-8"):
            MappingResolver().load(path)

    def test_skipped_row_reports_physical_line(self, caplog: pytest.LogCaptureFixture) -> None:
        source = io.StringIO(
            "tenant_code,organization_code,organization_id\n"
            ',"acme\neast",2\n'
            "acme,,3\n"
        )
        with caplog.at_level(logging.WARNING, logger="tenantshard.mapping"):
            MappingResolver().load(source)
        messages = [r.getMessage() for r in caplog.records]
        assert any(m.startswith("Skipping mapping row 3:") for m in messages)
        assert any(m.startswith("Skipping mapping row 4:") for m in messages)

    def test_incomplete_rows_skipped(self, caplog: pytest.LogCaptureFixture) -> None:
        source = io.StringIO(
            "tenant_code,organization_code,organization_id\n"
            "acme,acme_main,1\n"
            ",acme_east,2\n"
            "acme,,3\n"
            "acme,acme_west,\n"
            "globex,globex_hq,4\n"
        )
        with caplog.at_level(logging.WARNING, logger="tenantshard.mapping"):
            mapping = MappingResolver().load(source)
        assert mapping.organization_ids == {"1", "4"}
        assert sum("Skipping mapping row" in r.getMessage() for r in caplog.records) == 3

    def test_values_are_stripped(self) -> None:
        source = io.StringIO("tenant_code,organization_code,organization_id\n acme , main , 7 \n")
        mapping = MappingResolver().load(source)
        assert mapping["7"] == OrganizationCodes(tenant_code="acme", organization_code="main")

    def test_registry_restriction_skips_rows(self, mapping_csv: Path) -> None:
        mapping = MappingResolver().load(mapping_csv, registry={"1", "3"})
        assert mapping.organization_ids == {"1", "3"}

    def test_empty_registry_keeps_nothing(self, mapping_csv: Path) -> None:
        assert len(MappingResolver().load(mapping_csv, registry=set())) == 0

    def test_duplicate_rows_last_wins(self, caplog: pytest.LogCaptureFixture) -> None:
        source = io.StringIO(
            "tenant_code,organization_code,organization_id\nacme,acme_main,1\nglobex,globex_hq,1\n"
        )
        with caplog.at_level(logging.WARNING, logger="tenantshard.mapping"):
            mapping = MappingResolver().load(source)
        assert mapping["1"].tenant_code == "globex"
        assert any("mapped twice" in r.getMessage() for r in caplog.records)


class TestOrganizationMapping:
    """Tests for the OrganizationMapping lookup."""

    def test_rows_sorted_by_id(self, mapping: OrganizationMapping) -> None:
        assert mapping.rows() == [
            ("1", "acme", "acme_main"),
            ("2", "acme", "acme_east"),
            ("3", "globex", "globex_hq"),
        ]

    def test_unmapped(self, mapping: OrganizationMapping) -> None:
        assert mapping.unmapped(["1", "9", "3", "10"]) == {"9", "10"}

    def test_codes_are_immutable(self) -> None:
        codes = OrganizationCodes(tenant_code="acme", organization_code="main")
        with pytest.raises(ValidationError):
            codes.tenant_code = "other"

    def test_codes_reject_blank_values(self) -> None:
        with pytest.raises(ValidationError):
            OrganizationCodes(tenant_code="  ", organization_code="main")


class TestLoadRegistry:
    """Tests for MappingResolver.load_registry."""

    @pytest.mark.asyncio
    async def test_reads_registry_ids(self, db_conn: AsyncMock, make_result) -> None:
        db_conn.execute.side_effect = [
            make_result(scalar=True),
            make_result(rows=[("1",), ("3",)]),
        ]
        ids = await MappingResolver(db_conn).load_registry()
        assert ids == frozenset({"1", "3"})

    @pytest.mark.asyncio
    async def test_missing_registry_table(self, db_conn: AsyncMock, make_result) -> None:
        db_conn.execute.return_value = make_result(scalar=False)
        assert await MappingResolver(db_conn).load_registry() is None
        db_conn.execute.assert_called_once()

    @pytest.mark.asyncio
    async def test_requires_connection(self) -> None:
        with pytest.raises(RuntimeError):
            await MappingResolver().load_registry()

    def test_stream_name_used_as_source(self) -> None:
        stream = io.StringIO("tenant_code\n")
        stream.name = "upload.csv"
        with pytest.raises(MalformedMappingSourceError) as exc_info:
            MappingResolver().load(stream)
        assert exc_info.value.source == "upload.csv"
