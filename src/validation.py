"""Pre-flight validation checks.

Run before an operation mutates anything, catching missing tools and
unusable paths early with actionable error messages.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from config import StackConfig

logger = logging.getLogger(__name__)

DATABASE_TOOLS = {
    'backup': ['pg_dump', 'pg_isready', 'psql'],
    'restore': ['pg_restore', 'psql', 'pg_isready'],
}

TOOL_HINTS = {
    'pg_dump': 'apt install postgresql-client',
    'pg_restore': 'apt install postgresql-client',
    'psql': 'apt install postgresql-client',
    'pg_isready': 'apt install postgresql-client',
    'systemctl': 'stackctl manages services through systemd',
    'sudo': 'apt install sudo, or set stack.use_sudo: false',
}


def check_commands(names: list[str]) -> list[str]:
    """Check that commands are on PATH.

    Returns:
        List of validation error messages (empty if all present)
    """
    errors = []
    for name in names:
        if shutil.which(name) is None:
            hint = TOOL_HINTS.get(name)
            errors.append(f"Required command '{name}' not found" + (f"\n  {hint}" if hint else ''))
    return errors


def validate_output_dir(path: Path) -> list[str]:
    """Check that a backup output directory is usable."""
    existing = path
    while not existing.exists() and existing != existing.parent:
        existing = existing.parent
    if not existing.is_dir():
        return [f"Backup output path {path} is not a directory"]
    if not os.access(existing, os.W_OK):
        return [f"Backup output directory {existing} is not writable"]
    return []


def validate_operation(operation: str, config: StackConfig,
                       components: Optional[list[str]] = None,
                       output_dir: Optional[Path] = None) -> list[str]:
    """Collect pre-flight errors for start/stop/restart/backup/restore.

    Args:
        operation: Command name
        config: Stack configuration
        components: Backup/restore components involved
        output_dir: Backup destination (backup only)
    """
    tools = ['systemctl']
    if config.use_sudo:
        tools.append('sudo')
    if components and 'database' in components:
        tools.extend(DATABASE_TOOLS.get(operation, []))

    errors = check_commands(tools)
    if operation == 'backup' and output_dir is not None:
        errors.extend(validate_output_dir(output_dir))
    if operation in ('backup', 'restore') and not config.home.exists():
        errors.append(f"Stack home {config.home} does not exist\n  Set stack.home in the config file")
    if errors:
        logger.debug(f"Pre-flight for {operation}: {len(errors)} error(s)")
    return errors


def format_preflight_results(operation: str, errors: list[str]) -> str:
    """Format pre-flight errors for display."""
    if not errors:
        return f"Pre-flight checks for {operation} passed"
    lines = [f"\nPre-flight validation failed for {operation}:"]
    for error in errors:
        for i, line in enumerate(error.split('\n')):
            prefix = "  ✗ " if i == 0 else "    "
            lines.append(f"{prefix}{line}")
    lines.append("")
    lines.append("Use --skip-preflight to bypass these checks")
    return '\n'.join(lines)
