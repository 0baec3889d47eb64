"""
Command-line entry point.

Usage:
    tenantshard                                  # configuration from the environment
    tenantshard --mapping data_codes.csv         # explicit mapping file
    tenantshard --batch-size 1000 --log-level DEBUG

Exit codes:
    0  The run completed; table-level failures are listed in the summary.
    1  A fatal precondition stopped the run before any schema change.
    2  Invalid configuration.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from sqlalchemy.ext.asyncio import create_async_engine

from tenantshard.config import MigrationConfig
from tenantshard.orchestrator import MigrationOrchestrator, MigrationReport

logger = logging.getLogger(__name__)

EXIT_INVALID_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tenantshard",
        description="Convert a single-tenant schema into a tenant-partitioned one.",
    )
    parser.add_argument(
        "--database-url",
        help="SQLAlchemy async database URL (default: $DATABASE_URL)",
    )
    parser.add_argument(
        "--mapping",
        dest="mapping_path",
        help="Organization mapping CSV (default: $TENANT_MAPPING_CSV or data_codes.csv)",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        help="Organizations per transaction in per-organization backfill (default: 5000)",
    )
    parser.add_argument(
        "--lock-timeout",
        type=float,
        help="Seconds to wait for a concurrent run to finish (default: fail immediately)",
    )
    parser.add_argument(
        "--no-registry-filter",
        action="store_true",
        help="Keep mapping rows whose organization is not in organization_extension",
    )
    parser.add_argument(
        "--skip-not-null",
        action="store_true",
        help="Do not add NOT NULL constraints to the tenant columns",
    )
    parser.add_argument(
        "--keep-obsolete-tables",
        action="store_true",
        help="Do not drop tables retired by the migration",
    )
    parser.add_argument(
        "--no-tracing",
        action="store_true",
        help="Disable OpenTelemetry tracing and metrics",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> MigrationConfig:
    overrides: dict[str, Any] = {
        "database_url": args.database_url,
        "mapping_path": args.mapping_path,
        "batch_size": args.batch_size,
        "lock_timeout": args.lock_timeout,
    }
    if args.no_registry_filter:
        overrides["restrict_to_registry"] = False
    if args.skip_not_null:
        overrides["enforce_not_null"] = False
    if args.keep_obsolete_tables:
        overrides["drop_obsolete_tables"] = False
    if args.no_tracing:
        overrides["enable_tracing"] = False
        overrides["enable_metrics"] = False
    return MigrationConfig.from_env(**overrides)


async def run_migration(config: MigrationConfig) -> MigrationReport:
    engine = create_async_engine(
        config.database_url,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
    )
    try:
        return await MigrationOrchestrator(engine, config).run()
    finally:
        await engine.dispose()


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = config_from_args(args)
    except ValueError as e:
        logger.error("Invalid configuration: %s", e)
        return EXIT_INVALID_CONFIG

    report = asyncio.run(run_migration(config))

    print("=" * 60)
    for line in report.summary_lines():
        print(line)
    print("=" * 60)
    return report.exit_code


__all__ = ["build_parser", "config_from_args", "main", "run_migration"]
