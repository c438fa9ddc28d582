#!/usr/bin/env python3
"""
Command line entry point.

Examples:
    supabase-pg-migrate                       # all stages, live
    supabase-pg-migrate --schema --data       # selected stages only
    supabase-pg-migrate --export-sql          # write SQL files, no target needed
    supabase-pg-migrate --apply-sql dump.sql  # replay a file on the target
    supabase-pg-migrate --dry-run             # log the plan, write nothing
"""

import argparse
import logging
import sys
from typing import List, Optional

from supabase_pg_migration.config import create_providers, load_config
from supabase_pg_migration.errors import MigrationConnectionError, MigrationError
from supabase_pg_migration.orchestrator import MigrationOrchestrator, RunMode, Stage
from supabase_pg_migration.sql_exporter import COMPLETE_FILE

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='supabase-pg-migrate',
        description='Migrate a Supabase / PostgreSQL instance to another instance',
    )

    stages = parser.add_argument_group('stages (default: all)')
    stages.add_argument('--schema', action='store_true', help='Tables, sequences, enums, constraints, indexes, views')
    stages.add_argument('--functions', action='store_true', help='Functions and procedures')
    stages.add_argument('--triggers', action='store_true', help='Triggers')
    stages.add_argument('--data', action='store_true', help='Table data')
    stages.add_argument('--rls', action='store_true', help='Row level security and policies')
    stages.add_argument('--grants', action='store_true', help='Roles and privileges')
    stages.add_argument('--storage', action='store_true', help='Storage buckets and files')
    stages.add_argument('--verify', action='store_true', help='Verify row counts (and storage when selected)')
    stages.add_argument('--all', action='store_true', help='Run every stage')

    modes = parser.add_argument_group('modes')
    modes.add_argument('--export-sql', action='store_true', help='Write SQL files instead of migrating')
    modes.add_argument(
        '--apply-sql', nargs='?', const=COMPLETE_FILE, default=None, metavar='FILE',
        help=f'Apply an SQL file to the target (default: {COMPLETE_FILE})',
    )
    modes.add_argument('--dry-run', action='store_true', help='Show what would be migrated')
    modes.add_argument('--output-dir', default=None, help='Directory for exported SQL files')

    return parser


def selected_stages(args: argparse.Namespace) -> List[Stage]:
    """Stages picked on the command line; none (or --all) means every stage."""
    if args.all:
        return Stage.canonical()
    chosen = [stage for stage in Stage.canonical() if getattr(args, stage.value)]
    return chosen or Stage.canonical()


def resolve_mode(args: argparse.Namespace) -> RunMode:
    if args.dry_run:
        return RunMode.PLAN
    if args.export_sql:
        return RunMode.EXPORT
    if args.apply_sql:
        return RunMode.APPLY
    return RunMode.LIVE


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    args = build_parser().parse_args(argv)
    mode = resolve_mode(args)

    logger.info("=" * 60)
    logger.info("Supabase Migration Tool")
    logger.info("=" * 60)

    try:
        config = load_config(output_dir=args.output_dir)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    source, target = create_providers(config)
    try:
        if mode is not RunMode.APPLY:
            source.initialize()
        if mode in (RunMode.LIVE, RunMode.APPLY):
            target.initialize()

        orchestrator = MigrationOrchestrator(config, source, target)
        stats = orchestrator.run(selected_stages(args), mode=mode, apply_file=args.apply_sql)
    except MigrationConnectionError as e:
        logger.error(f"Connection failed: {e}")
        return 1
    except (MigrationError, FileNotFoundError) as e:
        logger.error(f"Migration failed: {e}")
        return 1
    finally:
        source.close()
        target.close()

    summary = stats.summary()
    logger.info("=" * 60)
    logger.info(
        f"Migration complete: {summary['objects_applied']} objects applied, "
        f"{summary['objects_failed']} failed, {summary['rows_migrated']:,} rows in "
        f"{summary['elapsed_seconds']:.2f}s"
    )
    logger.info("=" * 60)
    return 0


if __name__ == '__main__':
    sys.exit(main())
