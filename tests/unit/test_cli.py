"""
Unit tests for the command-line entry point.
"""

from unittest.mock import AsyncMock, patch

import pytest
from conftest import TEST_DATABASE_URL

from tenantshard.cli import EXIT_INVALID_CONFIG, build_parser, config_from_args, main
from tenantshard.models import MigrationStats
from tenantshard.orchestrator import MigrationReport


@pytest.fixture
def environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", TEST_DATABASE_URL)
    monkeypatch.delenv("TENANT_MAPPING_CSV", raising=False)
    monkeypatch.delenv("MIGRATION_BATCH_SIZE", raising=False)
    monkeypatch.delenv("DEFAULT_TENANT_CODE", raising=False)
    monkeypatch.delenv("DEFAULT_ORGANISATION_CODE", raising=False)


class TestParser:
    """Tests for argument parsing."""

    def test_defaults(self):
        args = build_parser().parse_args([])
        assert args.database_url is None
        assert args.mapping_path is None
        assert args.log_level == "INFO"
        assert not args.skip_not_null

    def test_rejects_unknown_log_level(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--log-level", "TRACE"])

    def test_config_from_args(self, environment):
        args = build_parser().parse_args(
            [
                "--mapping",
                "codes.csv",
                "--batch-size",
                "100",
                "--no-registry-filter",
                "--skip-not-null",
                "--keep-obsolete-tables",
                "--no-tracing",
            ]
        )

        config = config_from_args(args)

        assert config.database_url == TEST_DATABASE_URL
        assert str(config.mapping_path) == "codes.csv"
        assert config.batch_size == 100
        assert not config.restrict_to_registry
        assert not config.enforce_not_null
        assert not config.drop_obsolete_tables
        assert not config.enable_tracing
        assert not config.enable_metrics

    def test_flags_absent_keep_defaults(self, environment):
        config = config_from_args(build_parser().parse_args([]))
        assert config.restrict_to_registry
        assert config.enforce_not_null
        assert config.lock_timeout is None


class TestMain:
    """Tests for main()."""

    def test_invalid_configuration(self, environment):
        assert main(["--batch-size", "0"]) == EXIT_INVALID_CONFIG

    def test_missing_database_url(self, environment, monkeypatch):
        monkeypatch.delenv("DATABASE_URL")
        assert main([]) == EXIT_INVALID_CONFIG

    @pytest.mark.parametrize("fatal_error, exit_code", [(None, 0), ("mapping is missing columns", 1)])
    def test_exit_code_follows_report(self, environment, capsys, fatal_error, exit_code):
        report = MigrationReport(MigrationStats(), fatal_error=fatal_error)
        with patch("tenantshard.cli.run_migration", AsyncMock(return_value=report)) as run:
            assert main(["--no-tracing"]) == exit_code

        run.assert_awaited_once()
        output = capsys.readouterr().out
        assert "Migration summary" in output
        assert "Table failures: 0" in output
