"""Common utilities and types for stack operations."""

import hashlib
import logging
import subprocess
import time
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def poll_until(
    check: Callable[[], bool],
    timeout: float,
    interval: float = 2,
    description: str = 'condition'
) -> tuple[bool, float, int]:
    """Call check() every interval seconds until it returns True or timeout elapses.

    Exceptions raised by check() count as a failed attempt. A check is only
    issued while elapsed < timeout, so timeout=60 and interval=2 gives at
    most 30 attempts.

    Returns:
        (ok, elapsed_seconds, attempts) tuple
    """
    start = time.monotonic()
    attempts = 0
    while time.monotonic() - start < timeout:
        attempts += 1
        try:
            if check():
                elapsed = time.monotonic() - start
                logger.debug(f"{description} satisfied after {attempts} attempt(s)")
                return True, elapsed, attempts
        except Exception as e:
            logger.debug(f"{description} check raised: {e}")
        time.sleep(interval)
    elapsed = time.monotonic() - start
    logger.debug(f"{description} not satisfied after {elapsed:.0f}s ({attempts} attempts)")
    return False, elapsed, attempts


def confirm(prompt: str, expected: tuple = ('y', 'yes')) -> bool:
    """Ask the operator a question; EOF (no tty) counts as no."""
    try:
        response = input(prompt).strip().lower()
    except EOFError:
        return False
    return response in expected


def file_checksum(path: Path, chunk_size: int = 1024 * 1024) -> str:
    """Compute sha256 of a file."""
    sha256 = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(chunk_size), b''):
            sha256.update(chunk)
    return sha256.hexdigest()


def tree_checksum(path: Path) -> str:
    """Compute sha256 over a directory's relative file paths and contents."""
    sha256 = hashlib.sha256()
    if path.is_file():
        return file_checksum(path)
    for item in sorted(path.rglob('*')):
        if item.is_file() and not item.is_symlink():
            sha256.update(str(item.relative_to(path)).encode())
            sha256.update(file_checksum(item).encode())
    return sha256.hexdigest()


def path_size(path: Path) -> int:
    """Total size in bytes of a file or directory tree."""
    if not path.exists():
        return 0
    if path.is_file():
        return path.stat().st_size
    return sum(p.stat().st_size for p in path.rglob('*') if p.is_file() and not p.is_symlink())


def format_size(num_bytes: int) -> str:
    """Human readable byte count."""
    size = float(num_bytes)
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if size < 1024 or unit == 'TB':
            return f"{size:.0f}{unit}" if unit == 'B' else f"{size:.1f}{unit}"
        size /= 1024
    return f"{num_bytes}B"
