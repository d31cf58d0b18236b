#!/usr/bin/env python3
"""CLI entry point for stackctl.

Commands:
- start / stop / restart: service lifecycle in dependency order
- backup / restore: point-in-time backup and restore of stateful components
- memory: show the memory profile computed for this host
"""

import json
import logging
import subprocess
import sys
from pathlib import Path

from cli_common import common_parser, echo_for, handle_error, load_config, setup_logging
from errors import StackError
from memory_profile import compute_profile, format_profile, meets_minimum, read_total_memory_mb

COMMANDS = {
    "start": "Start services in dependency order",
    "stop": "Stop services in reverse dependency order",
    "restart": "Stop, settle, then start all services",
    "backup": "Back up database, content, search index and config",
    "restore": "Restore from a backup archive or directory",
    "memory": "Show the memory profile for this host",
}

logger = logging.getLogger(__name__)


def get_version():
    """Get version from git tags, falling back to 'dev'."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


def print_usage():
    """Print top-level usage."""
    print(f"stackctl {get_version()}")
    print()
    print("Usage: stackctl <command> [options]")
    print()
    print("Commands:")
    for name, desc in COMMANDS.items():
        print(f"  {name:<10} {desc}")
    print()
    print("Run 'stackctl <command> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  stackctl start")
    print("  stackctl stop --force")
    print("  stackctl backup --type full --keep 14")
    print("  stackctl restore --backup /opt/alfresco/backups/alfresco-backup_20260101_020000.tar.gz --dry-run")


def memory_main(argv: list) -> int:
    """Handle 'memory' command."""
    parser = common_parser('memory', 'Show the memory profile computed for this host')
    parser.add_argument(
        '--total-mb',
        type=int,
        help='Compute for this much memory instead of reading /proc/meminfo',
    )
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.json_output)
    echo = echo_for(args.json_output)

    try:
        config = load_config(args)
        total = args.total_mb if args.total_mb is not None else read_total_memory_mb()
        profile = compute_profile(total, config.memory_overrides)
    except StackError as e:
        return handle_error('memory', e, args, 0.0)

    if args.json_output:
        print(json.dumps(profile.to_dict(), indent=2))
    else:
        echo(format_profile(profile))
        if not meets_minimum(total):
            echo("\nWARNING: less than the recommended 8GB of memory")
    return 0


def dispatch(command: str, argv: list) -> int:
    """Dispatch to command handler.

    Args:
        command: The command name (e.g., "start", "backup")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if command == "start":
        from lifecycle.cli import start_main
        rc: int = start_main(argv)
        return rc
    if command == "stop":
        from lifecycle.cli import stop_main
        rc = stop_main(argv)
        return rc
    if command == "restart":
        from lifecycle.cli import restart_main
        rc = restart_main(argv)
        return rc
    if command == "backup":
        from backup.cli import backup_main
        rc = backup_main(argv)
        return rc
    if command == "restore":
        from backup.cli import restore_main
        rc = restore_main(argv)
        return rc
    if command == "memory":
        return memory_main(argv)

    print(f"Error: Unknown command '{command}'")
    print(f"Available commands: {', '.join(COMMANDS)}")
    return 1


def main(argv: list | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    argv = sys.argv[1:] if argv is None else argv

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0 if argv else 1
    if argv[0] == '--version':
        print(f"stackctl {get_version()}")
        return 0
    return dispatch(argv[0], argv[1:])


if __name__ == '__main__':
    sys.exit(main())
