#!/usr/bin/env python3
"""
supabase-sync command line
==========================

Thin front-end over SyncOrchestrator: loads configuration, asks for
confirmation in interactive mode, runs the pipeline and prints a summary.
Exit code is 0 on success and 1 on a failed run or invalid configuration.
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, Callable, Dict, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .clients.postgres import PostgresConnector, SslPreferenceCache, check_connection
from .clients.storage import StorageClient
from .config import (
    ConfigError,
    SyncConfig,
    apply_component_skips,
    load_config,
    validate_config,
)
from .errors import SyncError
from .orchestrator import SyncOrchestrator, SyncResult
from .sync.dump import PgDumpRunner
from .utils.formatting import format_duration
from .utils.sync_logging import sanitize_config, setup_logging

logger = logging.getLogger(__name__)

COMPONENTS = ("schema", "data", "auth", "storage", "roles")


def add_global_options(parser: argparse.ArgumentParser, suppress: bool = False) -> None:
    """
    Add --config, --verbose and --log-format to ``parser``.

    Subcommands pass ``suppress=True`` so an option left out after the
    subcommand does not overwrite the value given before it.
    """
    defaults = {'default': argparse.SUPPRESS} if suppress else {}
    parser.add_argument('--config', help='Config file path (YAML or JSON)', **defaults)
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging', **defaults)
    parser.add_argument('--log-format', choices=('text', 'json'), help='Log output format',
                        **defaults)


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="supabase-sync",
        description="Migrate a Supabase project (database, auth users, storage) to another",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  supabase-sync sync --config sync-config.yaml
  supabase-sync sync --dry-run --skip-storage
  supabase-sync sync --ci --log-format json
  supabase-sync validate
  supabase-sync test-connection
        """
    )
    add_global_options(parser)

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    sync_parser = subparsers.add_parser('sync', help='Run the migration')
    add_global_options(sync_parser, suppress=True)
    sync_parser.add_argument('--ci', action='store_true', help='Non-interactive mode, no prompt')
    sync_parser.add_argument('--dry-run', action='store_true',
                             help='Show what would be migrated without changing the target')
    sync_parser.add_argument('--yes', '-y', action='store_true', help='Skip the confirmation prompt')
    for component in COMPONENTS:
        sync_parser.add_argument(f'--skip-{component}', action='store_true',
                                 help=f'Do not migrate {component}')

    validate_parser = subparsers.add_parser('validate', help='Validate configuration and exit')
    add_global_options(validate_parser, suppress=True)
    test_parser = subparsers.add_parser('test-connection',
                                        help='Check database and API access on both sides')
    add_global_options(test_parser, suppress=True)
    return parser


def build_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if getattr(args, 'ci', False):
        overrides['mode'] = 'ci'
    if getattr(args, 'dry_run', False):
        overrides['dry_run'] = True
    if args.verbose:
        overrides['verbose'] = True
    if args.log_format:
        overrides['log_format'] = args.log_format
    skips = {c: getattr(args, f'skip_{c}', False) for c in COMPONENTS}
    return apply_component_skips(overrides, skips)


def confirm_sync(config: SyncConfig, input_fn: Callable[[str], str] = input) -> bool:
    """Ask the operator to type the target host before overwriting it."""
    host = config.target.host
    print(f"\nThis will OVERWRITE data on the target: {config.target.safe_display()}")
    print(f"Source: {config.source.safe_display()}")
    try:
        answer = input_fn(f"Type the target host ({host}) to continue: ")
    except EOFError:
        return False
    return answer.strip() == host


def print_ci_summary(result: SyncResult) -> None:
    print("\n" + "=" * 60)
    print("SYNC SUMMARY" + (" (DRY RUN)" if result.dry_run else ""))
    print("=" * 60)
    print(f"Status: {'SUCCESS' if result.success else 'FAILED'}")
    print(f"Duration: {format_duration(result.duration_seconds)}")
    print("\nSteps:")
    for step in result.steps:
        mark = "✓" if step.success else "✗"
        print(f"  {mark} {step.name} ({format_duration(step.duration_seconds)})")
    if result.errors:
        print(f"\nErrors ({len(result.errors)}):")
        for error in result.errors[:20]:
            print(f"  - [{error.category.value}] {error}")
        if len(result.errors) > 20:
            print(f"  ... and {len(result.errors) - 20} more")
    print("=" * 60)


def print_rich_summary(result: SyncResult, console: Optional[Console] = None) -> None:
    console = console or Console()
    title = "Sync summary" + (" (dry run)" if result.dry_run else "")
    table = Table(title=title)
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Notes")
    for step in result.steps:
        status = "[green]✓ ok[/green]" if step.success else "[red]✗ failed[/red]"
        notes = ""
        if step.error:
            notes = escape(step.error.message)
        elif step.details.get("errors"):
            notes = f"{len(step.details['errors'])} warnings"
        table.add_row(step.name, status, format_duration(step.duration_seconds), notes)
    console.print(table)
    if result.success:
        console.print(f"[bold green]Completed in {format_duration(result.duration_seconds)}[/bold green]")
    else:
        console.print(f"[bold red]Failed: {escape(str(result.errors[0]))}[/bold red]")


def _load(args: argparse.Namespace) -> Optional[SyncConfig]:
    try:
        config = load_config(args.config, overrides=build_overrides(args))
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return None
    setup_logging(verbose=config.verbose, log_format=config.log_format)
    problems = validate_config(config)
    if problems:
        print("Invalid configuration:", file=sys.stderr)
        for problem in problems:
            print(f"  - {problem}", file=sys.stderr)
        return None
    logger.debug(f"Configuration: {sanitize_config(config.to_dict())}")
    return config


async def run_sync(config: SyncConfig, assume_yes: bool = False) -> int:
    if not config.is_ci and not config.dry_run and not assume_yes:
        if not confirm_sync(config):
            print("Aborted.")
            return 1
    result = await SyncOrchestrator(config).execute()
    if config.is_ci:
        print_ci_summary(result)
    else:
        print_rich_summary(result)
    return 0 if result.success else 1


async def run_test_connection(config: SyncConfig) -> int:
    connector = PostgresConnector(SslPreferenceCache())
    ok = True
    missing = PgDumpRunner().missing_tools()
    if missing:
        ok = False
        print(f"✗ missing PostgreSQL client tools: {', '.join(missing)}")
    else:
        print("✓ pg_dump and pg_dumpall found")

    for label, endpoint in (("source", config.source), ("target", config.target)):
        pool = None
        try:
            pool = await connector.create_pool(endpoint.db_url, label)
            await check_connection(pool, label)
            print(f"✓ {label} database ({endpoint.host})")
        except SyncError as e:
            ok = False
            print(f"✗ {label} database: {e}")
        finally:
            if pool is not None:
                await pool.close()

        client = StorageClient(endpoint.api_url, endpoint.api_key)
        try:
            await asyncio.get_running_loop().run_in_executor(None, client.ping)
            print(f"✓ {label} API ({endpoint.api_url})")
        except SyncError as e:
            ok = False
            print(f"✗ {label} API: {e}")
        finally:
            client.close()
    return 0 if ok else 1


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    config = _load(args)
    if config is None:
        return 1

    if args.command == 'validate':
        print("Configuration is valid.")
        return 0
    if args.command == 'test-connection':
        return asyncio.run(run_test_connection(config))
    return asyncio.run(run_sync(config, assume_yes=args.yes))


if __name__ == "__main__":
    sys.exit(main())
