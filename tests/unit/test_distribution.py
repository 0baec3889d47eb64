"""
Unit tests for DistributionController.

Statements are answered in order by ``db_conn.execute.side_effect``; the
citus check runs once per controller.
"""

from unittest.mock import AsyncMock

import pytest
from conftest import db_error

from tenantshard.distribution import DistributionController, DistributionStatus
from tenantshard.exceptions import TableOperationError
from tenantshard.models import ConstraintRecord, ConstraintType
from tenantshard.sql import SqlBuilder


@pytest.fixture
def controller(db_conn: AsyncMock, builder: SqlBuilder, inspector: AsyncMock) -> DistributionController:
    return DistributionController(db_conn, builder, inspector=inspector, enable_tracing=False)


def _scalars(make_result, *values):
    return [make_result(scalar=value) for value in values]


def _sql(call) -> str:
    return str(call.args[0])


class TestAvailability:
    """Tests for is_available and is_distributed."""

    @pytest.mark.asyncio
    async def test_availability_cached(
        self, controller: DistributionController, db_conn: AsyncMock, make_result
    ) -> None:
        db_conn.execute.return_value = make_result(scalar=True)

        assert await controller.is_available()
        assert await controller.is_available()

        db_conn.execute.assert_called_once()

    @pytest.mark.asyncio
    async def test_not_distributed_without_citus(
        self, controller: DistributionController, db_conn: AsyncMock, make_result
    ) -> None:
        db_conn.execute.return_value = make_result(scalar=False)

        assert not await controller.is_distributed("sessions")
        db_conn.execute.assert_called_once()


class TestDistribute:
    """Tests for DistributionController.distribute."""

    @pytest.mark.asyncio
    async def test_unavailable_is_noop(
        self, controller: DistributionController, db_conn: AsyncMock, make_result
    ) -> None:
        db_conn.execute.return_value = make_result(scalar=False)

        status = await controller.distribute("sessions", "tenant_code")

        assert status == DistributionStatus.UNAVAILABLE
        assert not status.is_distributed
        db_conn.execute.assert_called_once()

    @pytest.mark.asyncio
    async def test_already_distributed(
        self, controller: DistributionController, db_conn: AsyncMock, make_result
    ) -> None:
        db_conn.execute.side_effect = _scalars(make_result, True, True)

        status = await controller.distribute("sessions", "tenant_code")

        assert status == DistributionStatus.ALREADY_DISTRIBUTED
        assert status.is_distributed

    @pytest.mark.asyncio
    async def test_distributes_eligible_table(
        self, controller: DistributionController, db_conn: AsyncMock, make_result
    ) -> None:
        db_conn.execute.side_effect = _scalars(make_result, True, False, None)

        status = await controller.distribute("sessions", "tenant_code")

        assert status == DistributionStatus.DISTRIBUTED
        last = db_conn.execute.call_args_list[-1]
        assert "create_distributed_table" in _sql(last)
        assert last.args[1] == {"table_name": "sessions", "column_name": "tenant_code"}

    @pytest.mark.asyncio
    async def test_ineligible_table_rejected(
        self,
        controller: DistributionController,
        db_conn: AsyncMock,
        inspector: AsyncMock,
        make_result,
    ) -> None:
        inspector.constraints.return_value = [
            ConstraintRecord("sessions", "sessions_pkey", ConstraintType.PRIMARY_KEY, ("id",)),
        ]
        db_conn.execute.side_effect = _scalars(make_result, True, False)

        with pytest.raises(TableOperationError) as exc_info:
            await controller.distribute("sessions", "tenant_code")

        assert "primary key sessions_pkey omits tenant_code" in exc_info.value.original_error
        assert db_conn.execute.call_count == 2

    @pytest.mark.asyncio
    async def test_eligibility_reports_foreign_keys_and_missing_column(
        self, controller: DistributionController, inspector: AsyncMock
    ) -> None:
        inspector.column_exists.return_value = False
        inspector.constraints.return_value = [
            ConstraintRecord(
                "resources",
                "fk_resources_session_id",
                ConstraintType.FOREIGN_KEY,
                ("session_id",),
                "sessions",
                ("id",),
            ),
        ]

        eligibility = await controller.check_eligibility("resources", "tenant_code")

        assert not eligibility.eligible
        assert eligibility.reasons == (
            "missing partition column tenant_code",
            "foreign key fk_resources_session_id",
        )

    @pytest.mark.asyncio
    async def test_error_after_conversion_is_success(
        self, controller: DistributionController, db_conn: AsyncMock, make_result
    ) -> None:
        """An error reported after the table was converted still counts as distributed."""
        db_conn.execute.side_effect = [
            make_result(scalar=True),
            make_result(scalar=False),
            db_error("canceling statement due to statement timeout"),
            make_result(scalar=True),
        ]

        status = await controller.distribute("sessions", "tenant_code")

        assert status == DistributionStatus.DISTRIBUTED

    @pytest.mark.asyncio
    async def test_failure_raises(
        self, controller: DistributionController, db_conn: AsyncMock, make_result
    ) -> None:
        db_conn.execute.side_effect = [
            make_result(scalar=True),
            make_result(scalar=False),
            db_error("cannot distribute relation"),
            make_result(scalar=False),
        ]

        with pytest.raises(TableOperationError) as exc_info:
            await controller.distribute("sessions", "tenant_code")

        assert exc_info.value.operation == "distribute"
        assert exc_info.value.statement_shape is not None


class TestUndistribute:
    """Tests for DistributionController.undistribute and the undistributed bracket."""

    @pytest.mark.asyncio
    async def test_undistribute(
        self, controller: DistributionController, db_conn: AsyncMock, make_result
    ) -> None:
        db_conn.execute.side_effect = _scalars(make_result, True, True, None)

        status = await controller.undistribute("permissions")

        assert status == DistributionStatus.UNDISTRIBUTED
        assert "undistribute_table" in _sql(db_conn.execute.call_args_list[-1])

    @pytest.mark.asyncio
    async def test_local_table_untouched(
        self, controller: DistributionController, db_conn: AsyncMock, make_result
    ) -> None:
        db_conn.execute.side_effect = _scalars(make_result, True, False)

        assert await controller.undistribute("permissions") == DistributionStatus.NOT_DISTRIBUTED

    @pytest.mark.asyncio
    async def test_failure_while_still_distributed_raises(
        self, controller: DistributionController, db_conn: AsyncMock, make_result
    ) -> None:
        db_conn.execute.side_effect = [
            make_result(scalar=True),
            make_result(scalar=True),
            db_error(),
            make_result(scalar=True),
        ]

        with pytest.raises(TableOperationError):
            await controller.undistribute("permissions")

    @pytest.mark.asyncio
    async def test_bracket_passes_local_table_through(
        self, controller: DistributionController, db_conn: AsyncMock, make_result
    ) -> None:
        db_conn.execute.side_effect = _scalars(make_result, True, False)

        async with controller.undistributed("sessions", "tenant_code") as was_distributed:
            assert not was_distributed

        assert db_conn.execute.call_count == 2

    @pytest.mark.asyncio
    async def test_bracket_redistributes_after_error(
        self, controller: DistributionController, db_conn: AsyncMock, make_result
    ) -> None:
        # available, distributed?, [undistribute: distributed?, run], [distribute: distributed?, run]
        db_conn.execute.side_effect = _scalars(make_result, True, True, True, None, False, None)

        with pytest.raises(RuntimeError):
            async with controller.undistributed("sessions", "tenant_code") as was_distributed:
                assert was_distributed
                raise RuntimeError("update failed")

        statements = [_sql(call) for call in db_conn.execute.call_args_list]
        assert "undistribute_table" in statements[3]
        assert "create_distributed_table" in statements[5]


class TestVerifyDistribution:
    """Tests for DistributionController.verify_distribution."""

    @pytest.mark.asyncio
    async def test_reports_missing_tables(
        self, controller: DistributionController, db_conn: AsyncMock, make_result
    ) -> None:
        db_conn.execute.side_effect = [
            make_result(scalar=True),
            make_result(rows=[("modules", "n"), ("sessions", "h")]),
        ]

        report = await controller.verify_distribution(["sessions", "issues"])

        assert report.available
        assert report.distributed_tables == ("sessions",)
        assert report.reference_tables == ("modules",)
        assert report.missing == ("issues",)

    @pytest.mark.asyncio
    async def test_unavailable(
        self, controller: DistributionController, db_conn: AsyncMock, make_result
    ) -> None:
        db_conn.execute.return_value = make_result(scalar=False)

        report = await controller.verify_distribution(["sessions"])

        assert not report.available
        assert report.missing == ()
