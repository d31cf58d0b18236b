"""External tools used by backup and restore.

- PostgresTool: pg_dump / pg_restore / psql run as the database admin user
- LocalFileCopier: attribute-preserving recursive copy (rsync when present)
- TarArchiver: gzip tarballs with path-safe extraction

Every failure raises DataMutationError naming the component and, where a
tool writes one, the log file to inspect.
"""

import logging
import shutil
import tarfile
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Optional

from common import run_command
from errors import DataMutationError, ValidationError

logger = logging.getLogger(__name__)


def _append_log(log_path: Optional[Path], cmd: list[str], rc: int, out: str, err: str) -> None:
    if log_path is None:
        return
    with open(log_path, 'a', encoding='utf-8') as f:
        f.write(f"[{datetime.now().isoformat(timespec='seconds')}] $ {' '.join(cmd)} (rc={rc})\n")
        if out:
            f.write(out if out.endswith('\n') else out + '\n')
        if err:
            f.write(err if err.endswith('\n') else err + '\n')


class PostgresTool:
    """PostgreSQL operations for backup and restore."""

    def __init__(self, host: str = 'localhost', port: int = 5432,
                 admin_user: str = 'postgres', use_sudo: bool = True, timeout: int = 3600):
        self.host = host
        self.port = port
        self.admin_user = admin_user
        self.use_sudo = use_sudo
        self.timeout = timeout

    @classmethod
    def from_config(cls, config) -> 'PostgresTool':
        return cls(host=config.db_host, port=config.db_port,
                   admin_user=config.db_admin_user, use_sudo=config.use_sudo)

    def _cmd(self, *args: str) -> list[str]:
        cmd = list(args)
        if self.host not in ('localhost', '127.0.0.1', '::1'):
            cmd += ['-h', self.host, '-p', str(self.port)]
        if self.use_sudo:
            return ['sudo', '-u', self.admin_user] + cmd
        return cmd

    def _run(self, cmd: list[str], log_path: Optional[Path], what: str) -> str:
        rc, out, err = run_command(cmd, timeout=self.timeout)
        _append_log(log_path, cmd, rc, out, err)
        if rc != 0:
            detail = err.strip().splitlines()[-1] if err.strip() else f"exit code {rc}"
            raise DataMutationError(f"{what} failed: {detail}", component='database', log_path=log_path)
        return out

    def _sql(self, db: str, sql: str, log_path: Optional[Path] = None, what: str = 'psql') -> str:
        return self._run(self._cmd('psql', '-v', 'ON_ERROR_STOP=1', '-d', db, '-tAc', sql), log_path, what)

    def is_ready(self) -> bool:
        rc, _, _ = run_command(['pg_isready', '-h', self.host, '-p', str(self.port), '-q'], timeout=10)
        return rc == 0

    def dump(self, db: str, scratch_dir: Path, log_path: Optional[Path] = None) -> list[Path]:
        """Dump a database in custom and plain formats into scratch_dir.

        Returns:
            [custom_dump, plain_sql] paths inside scratch_dir
        """
        custom = scratch_dir / f'database_{db}.sql.dump'
        plain = scratch_dir / f'database_{db}.sql'
        logger.info(f"Dumping database '{db}' (custom format)...")
        self._run(self._cmd('pg_dump', '--format=custom', f'--file={custom}', db),
                  log_path, 'pg_dump (custom format)')
        logger.info(f"Dumping database '{db}' (plain SQL)...")
        self._run(self._cmd('pg_dump', '--format=plain', f'--file={plain}', db),
                  log_path, 'pg_dump (plain format)')
        return [custom, plain]

    def database_size(self, db: str) -> str:
        try:
            return self._sql('postgres', f"SELECT pg_size_pretty(pg_database_size('{db}'));").strip()
        except DataMutationError:
            return 'unknown'

    def drop_create(self, db: str, owner: str, log_path: Optional[Path] = None) -> None:
        logger.info(f"Recreating database '{db}'...")
        self._sql('postgres', f'DROP DATABASE IF EXISTS "{db}";', log_path, 'drop database')
        self._sql('postgres', f"CREATE DATABASE \"{db}\" OWNER \"{owner}\" ENCODING 'UTF8';",
                  log_path, 'create database')
        self._sql('postgres', f'GRANT ALL PRIVILEGES ON DATABASE "{db}" TO "{owner}";',
                  log_path, 'grant database')

    def restore(self, db: str, dump_file: Path, owner: str, log_path: Optional[Path] = None,
                sql_file: Optional[Path] = None) -> None:
        """Restore from a custom dump, falling back to plain SQL."""
        cmd = self._cmd('pg_restore', f'--dbname={db}', '--no-owner', '--no-privileges',
                        f'--role={owner}', str(dump_file))
        rc, out, err = run_command(cmd, timeout=self.timeout)
        _append_log(log_path, cmd, rc, out, err)
        if rc == 0 and 'pg_restore: error:' not in err:
            return
        if sql_file is not None and sql_file.exists():
            logger.warning("pg_restore reported errors, retrying with plain SQL dump")
            self._run(self._cmd('psql', '-v', 'ON_ERROR_STOP=1', '-d', db, f'--file={sql_file}'),
                      log_path, 'psql restore')
            return
        raise DataMutationError("pg_restore failed", component='database', log_path=log_path)

    def grant(self, db: str, role: str, log_path: Optional[Path] = None) -> None:
        for sql in (
            f'GRANT ALL ON SCHEMA public TO "{role}";',
            f'GRANT ALL PRIVILEGES ON ALL TABLES IN SCHEMA public TO "{role}";',
            f'GRANT ALL PRIVILEGES ON ALL SEQUENCES IN SCHEMA public TO "{role}";',
        ):
            self._sql(db, sql, log_path, 'grant')

    def table_count(self, db: str) -> int:
        out = self._sql(db, "SELECT count(*) FROM information_schema.tables WHERE table_schema = 'public';")
        try:
            return int(out.strip() or 0)
        except ValueError:
            return 0


class LocalFileCopier:
    """Recursive copy preserving ownership, modes and timestamps."""

    def __init__(self, prefer_rsync: bool = True, use_sudo: bool = False):
        self.prefer_rsync = prefer_rsync
        self.use_sudo = use_sudo

    def copy(self, src: Path, dst: Path, preserve_attrs: bool = True, component: str = '') -> None:
        """Copy a file or tree; directories are merged into dst.

        Raises:
            DataMutationError: Source missing or copy failed
        """
        if not src.exists():
            raise DataMutationError(f"Source {src} does not exist", component=component or None)
        dst.parent.mkdir(parents=True, exist_ok=True)

        if self.prefer_rsync and shutil.which('rsync'):
            flags = '-a' if preserve_attrs else '-r'
            source = f"{src}/" if src.is_dir() else str(src)
            target = f"{dst}/" if src.is_dir() else str(dst)
            cmd = ['rsync', flags, source, target]
            if self.use_sudo:
                cmd = ['sudo'] + cmd
            rc, _, err = run_command(cmd, timeout=24 * 3600)
            if rc != 0:
                raise DataMutationError(f"rsync {src} -> {dst} failed: {err.strip()}",
                                        component=component or None)
            return

        copy_fn = shutil.copy2 if preserve_attrs else shutil.copy
        try:
            if src.is_dir():
                shutil.copytree(src, dst, symlinks=True, copy_function=copy_fn, dirs_exist_ok=True)
            else:
                copy_fn(src, dst)
        except (OSError, shutil.Error) as e:
            raise DataMutationError(f"Copy {src} -> {dst} failed: {e}", component=component or None) from e


class TarArchiver:
    """gzip-compressed tar archives of backup directories."""

    def compress(self, directory: Path) -> Path:
        """Archive directory as <parent>/<name>.tar.gz with the directory as top-level entry.

        Raises:
            DataMutationError: Archive could not be written
        """
        archive = directory.parent / f"{directory.name}.tar.gz"
        try:
            with tarfile.open(archive, 'w:gz') as tar:
                tar.add(directory, arcname=directory.name)
        except (OSError, tarfile.TarError) as e:
            raise DataMutationError(f"Failed to create {archive}: {e}", component='archive') from e
        return archive

    def verify(self, archive: Path, required_member: str) -> bool:
        """True if the archive opens and contains required_member."""
        try:
            with tarfile.open(archive, 'r:gz') as tar:
                return required_member in tar.getnames()
        except (OSError, tarfile.TarError) as e:
            logger.debug(f"Archive verification of {archive} failed: {e}")
            return False

    def extract(self, archive: Path, directory: Path) -> None:
        """Extract into directory, refusing members that would escape it.

        Raises:
            ValidationError: Unreadable archive or unsafe member path
        """
        try:
            with tarfile.open(archive, 'r:*') as tar:
                members = tar.getmembers()
                for member in members:
                    name = PurePosixPath(member.name)
                    if name.is_absolute() or '..' in name.parts:
                        raise ValidationError(f"Unsafe path in archive {archive}: {member.name}")
                    if member.islnk():
                        link = PurePosixPath(member.linkname)
                        if link.is_absolute() or '..' in link.parts:
                            raise ValidationError(f"Unsafe hard link in archive {archive}: {member.name}")
                tar.extractall(directory, members=members, filter='tar')
        except (OSError, tarfile.TarError) as e:
            raise ValidationError(f"Cannot extract {archive}: {e}") from e
