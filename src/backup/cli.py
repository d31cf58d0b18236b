"""CLI handlers for backup and restore verbs.

Usage:
    stackctl backup [--type full|db|content|config|search-index] [--output DIR] [--name NAME]
                    [--no-search-index] [--hot] [--no-compress] [--keep DAYS] [--force]
    stackctl restore --backup PATH [--type TYPE] [--no-search-index] [--force] [--dry-run]
"""

import argparse
import logging
import time
from pathlib import Path

from backup.engine import BackupEngine, BackupOptions
from backup.manifest import BACKUP_TYPES, TYPE_ALIASES, components_for
from backup.restore import RestoreEngine, RestoreOptions
from cli_common import (
    common_parser, echo_for, emit_json, handle_error, load_config, run_preflight, setup_logging,
)
from common import format_size
from errors import StackError
from lifecycle.orchestrator import LifecycleOrchestrator

logger = logging.getLogger(__name__)

TYPE_CHOICES = list(BACKUP_TYPES) + list(TYPE_ALIASES)


def _add_search_index_arg(parser) -> None:
    parser.add_argument(
        '--no-search-index', '--no-solr',
        dest='include_search_index',
        action='store_false',
        help='Exclude the search index (it rebuilds from the repository)',
    )


def backup_main(argv: list) -> int:
    """Handle 'backup' verb."""
    parser = common_parser('backup', 'Back up database, content store, search index and config')
    parser.add_argument(
        '--type', '-t',
        dest='backup_type',
        default='full',
        choices=TYPE_CHOICES,
        help='What to back up (default: full)',
    )
    parser.add_argument(
        '--output', '-o',
        type=Path,
        help='Backup output directory (default: <home>/backups)',
    )
    parser.add_argument(
        '--name', '-n',
        help='Backup name prefix (default: alfresco-backup)',
    )
    _add_search_index_arg(parser)
    parser.add_argument(
        '--hot',
        action='store_true',
        help='Back up while services are running (no consistency guarantee)',
    )
    parser.add_argument(
        '--compress',
        action=argparse.BooleanOptionalAction,
        default=True,
        help='Create a .tar.gz archive (default: on)',
    )
    parser.add_argument(
        '--keep', '-k',
        type=int,
        dest='keep_days',
        help='Delete backups with this prefix older than DAYS (0 disables)',
    )
    parser.add_argument(
        '--force', '-f',
        action='store_true',
        help='Do not ask for confirmation',
    )
    parser.add_argument(
        '--report-dir',
        type=Path,
        help='Also write JSON and markdown reports to this directory',
    )
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.json_output)
    echo = echo_for(args.json_output)

    start = time.time()
    try:
        config = load_config(args)
        output_dir = args.output or config.backup_output_dir
        preflight_rc = run_preflight(
            args, 'backup', config,
            components=components_for(args.backup_type, args.include_search_index),
            output_dir=output_dir,
        )
        if preflight_rc is not None:
            return preflight_rc

        engine = BackupEngine(config, LifecycleOrchestrator.from_config(config), echo=echo)
        result = engine.run(BackupOptions(
            backup_type=args.backup_type,
            output_dir=output_dir,
            name=args.name,
            include_search_index=args.include_search_index,
            hot=args.hot,
            compress=args.compress,
            keep_days=args.keep_days,
            force=args.force,
        ))
    except StackError as e:
        return handle_error('backup', e, args, time.time() - start)

    report = result.report
    echo("\nBackup summary:")
    echo(report.format_table())
    echo(f"\nBackup: {result.path}")
    echo(f"Total size (uncompressed): {format_size(result.manifest.total_size)}")
    if args.report_dir:
        report.write(args.report_dir)
    if args.json_output:
        emit_json('backup', True, {'backup': result.to_dict(), 'report': report.to_dict()},
                  time.time() - start)
    return 0


def restore_main(argv: list) -> int:
    """Handle 'restore' verb."""
    parser = common_parser('restore', 'Restore the stack from a backup')
    parser.add_argument(
        '--backup', '-b',
        type=Path,
        required=True,
        help='Backup archive (.tar.gz/.tgz) or directory',
    )
    parser.add_argument(
        '--type', '-t',
        dest='restore_type',
        default='full',
        choices=TYPE_CHOICES,
        help='What to restore (default: full)',
    )
    _add_search_index_arg(parser)
    parser.add_argument(
        '--force', '-f',
        action='store_true',
        help='Stop services and restore without confirmation',
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Validate the backup and show the plan without changing anything',
    )
    parser.add_argument(
        '--restore-root',
        type=Path,
        default=Path('/'),
        help='Root for restored config files (default: /)',
    )
    parser.add_argument(
        '--report-dir',
        type=Path,
        help='Also write JSON and markdown reports to this directory',
    )
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.json_output)
    echo = echo_for(args.json_output)

    start = time.time()
    try:
        config = load_config(args)
        preflight_rc = run_preflight(
            args, 'restore', config,
            components=components_for(args.restore_type, args.include_search_index),
        )
        if preflight_rc is not None:
            return preflight_rc

        engine = RestoreEngine(config, LifecycleOrchestrator.from_config(config), echo=echo)
        report = engine.run(RestoreOptions(
            backup_path=args.backup,
            restore_type=args.restore_type,
            include_search_index=args.include_search_index,
            force=args.force,
            dry_run=args.dry_run,
            restore_root=args.restore_root,
        ))
    except StackError as e:
        return handle_error('restore', e, args, time.time() - start)

    echo("\nRestore summary:")
    echo(report.format_table())
    if args.dry_run:
        echo("\nMode: DRY-RUN (no changes made)")
    if args.report_dir:
        report.write(args.report_dir)
    if args.json_output:
        emit_json('restore', report.success, report.to_dict(), time.time() - start)
    return 0 if report.success else 1
