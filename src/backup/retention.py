"""Retention sweep for old backups.

Only entries named like backups produced with the same prefix are
candidates: <prefix>_<YYYYmmdd_HHMMSS>[-N] directories and the matching
.tar.gz archives. Anything else in the output directory is left alone.
"""

import logging
import re
import shutil
import time
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


def backup_name_pattern(prefix: str) -> re.Pattern:
    return re.compile(rf'^{re.escape(prefix)}_\d{{8}}_\d{{6}}(-\d+)?(\.tar\.gz)?$')


def find_expired(output_dir: Path, prefix: str, keep_days: int,
                 now: Optional[float] = None, exclude: Iterable[Path] = ()) -> list[Path]:
    """List backups strictly older than keep_days days."""
    if keep_days <= 0 or not output_dir.is_dir():
        return []
    now = time.time() if now is None else now
    cutoff = keep_days * SECONDS_PER_DAY
    pattern = backup_name_pattern(prefix)
    skip = {Path(p).resolve() for p in exclude}

    expired = []
    for entry in sorted(output_dir.iterdir()):
        if not pattern.match(entry.name):
            continue
        if entry.is_symlink() or entry.resolve() in skip:
            continue
        if entry.name.endswith('.tar.gz') and not entry.is_file():
            continue
        if not entry.name.endswith('.tar.gz') and not entry.is_dir():
            continue
        age = now - entry.stat().st_mtime
        if age > cutoff:
            expired.append(entry)
    return expired


def sweep(output_dir: Path, prefix: str, keep_days: int,
          now: Optional[float] = None, exclude: Iterable[Path] = ()) -> list[Path]:
    """Delete expired backups.

    keep_days <= 0 disables the sweep.

    Returns:
        Paths that were removed
    """
    if keep_days <= 0:
        logger.info("Retention disabled (keep <= 0)")
        return []

    removed = []
    for entry in find_expired(output_dir, prefix, keep_days, now=now, exclude=exclude):
        logger.info(f"Removing expired backup: {entry.name}")
        try:
            if entry.is_dir():
                shutil.rmtree(entry)
            else:
                entry.unlink()
            removed.append(entry)
        except OSError as e:
            logger.warning(f"Could not remove {entry}: {e}")
    if removed:
        logger.info(f"Removed {len(removed)} backup(s) older than {keep_days} days")
    else:
        logger.debug(f"No backups older than {keep_days} days")
    return removed
