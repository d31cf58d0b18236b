"""Backup engine.

Captures a point-in-time copy of the stack's stateful components into a
timestamped directory described by manifest.txt, optionally compresses it,
then applies the retention policy.

Flow:
1. Validate the backup type
2. Cold/hot decision: running stateful services need confirmation (or --force)
3. Create <output>/<name>_<timestamp> and the manifest header
4. Capture each component (database, content, search-index, config)
5. Finalize the manifest
6. Compress and verify (failure keeps the uncompressed tree)
7. Retention sweep

A fatal capture failure removes the partial backup directory and raises
with the component name and its tool log.
"""

import logging
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import requests

from backup import retention
from backup.manifest import (
    CONFIG, CONTENT, DATABASE, HOT_CAVEAT, MANIFEST_FILENAME, SEARCH_INDEX, TIMESTAMP_FORMAT,
    BackupManifest, ComponentEntry, ManifestWriter, components_for, normalize_type,
    validate_backup_name,
)
from backup.tools import LocalFileCopier, PostgresTool, TarArchiver
from common import confirm, file_checksum, format_size, path_size, tree_checksum
from config import StackConfig
from errors import (
    ConfigurationError, DataMutationError, DependencyError, OperationCancelled, StackError,
    ValidationError,
)
from reporting import OperationReport
from services.registry import STATEFUL_SERVICES

logger = logging.getLogger(__name__)

DB_LOG = 'database_backup.log'


@dataclass
class BackupOptions:
    """Options for one backup run (defaults come from StackConfig)."""
    backup_type: str = 'full'
    output_dir: Optional[Path] = None
    name: Optional[str] = None
    include_search_index: bool = True
    hot: bool = False
    compress: bool = True
    keep_days: Optional[int] = None
    force: bool = False


@dataclass
class BackupResult:
    """Outcome of a successful backup."""
    manifest: BackupManifest
    path: Path
    compressed: bool
    removed: list = field(default_factory=list)
    report: Optional[OperationReport] = None

    def to_dict(self) -> dict:
        data = self.manifest.to_dict()
        data['path'] = str(self.path)
        data['compressed'] = self.compressed
        data['retention_removed'] = [str(p) for p in self.removed]
        return data


class BackupEngine:
    """Manifest-driven backup of database, content store, search index and config."""

    def __init__(
        self,
        config: StackConfig,
        orchestrator,
        db_tool: Optional[PostgresTool] = None,
        copier: Optional[LocalFileCopier] = None,
        archiver: Optional[TarArchiver] = None,
        confirm_fn: Callable[[str], bool] = confirm,
        now: Callable[[], datetime] = datetime.now,
        echo: Callable[[str], None] = print,
    ):
        self.config = config
        self.orchestrator = orchestrator
        self.db_tool = db_tool or PostgresTool.from_config(config)
        self.copier = copier or LocalFileCopier()
        self.archiver = archiver or TarArchiver()
        self.confirm = confirm_fn
        self.now = now
        self.echo = echo

    def _known(self, names) -> list[str]:
        available = set(self.orchestrator.start_order())
        return [n for n in names if n in available]

    @staticmethod
    def _preserve_log(log_path: Optional[Path], backup_dir: Path) -> Optional[Path]:
        """Move a tool log out of a backup directory that is about to be removed."""
        if log_path is None or not log_path.is_file() or not log_path.is_relative_to(backup_dir):
            return log_path
        kept = backup_dir.parent / f"{backup_dir.name}.{log_path.name}"
        shutil.move(str(log_path), str(kept))
        return kept

    @staticmethod
    def _setup_failed(report: OperationReport, message: str) -> DataMutationError:
        report.fail('backup', message)
        report.finish(False)
        err = DataMutationError(message, component='backup')
        err.state = report
        return err

    def _create_backup_dir(self, output_dir: Path, name: str, timestamp: datetime) -> Path:
        output_dir.mkdir(parents=True, exist_ok=True)
        base = f"{name}_{timestamp.strftime(TIMESTAMP_FORMAT)}"
        candidate = output_dir / base
        suffix = 1
        while candidate.exists() or candidate.with_name(candidate.name + '.tar.gz').exists():
            candidate = output_dir / f"{base}-{suffix}"
            suffix += 1
        candidate.mkdir()
        return candidate

    def run(self, options: BackupOptions) -> BackupResult:
        """Run a backup.

        Raises:
            ConfigurationError: Invalid backup type or name
            OperationCancelled: Operator declined a hot backup
            DependencyError: Database could not be reached/started
            DataMutationError: A component capture failed
        """
        try:
            backup_type = normalize_type(options.backup_type)
        except ValidationError as e:
            raise ConfigurationError(e.message) from e

        output_dir = Path(options.output_dir or self.config.backup_output_dir)
        name = validate_backup_name(options.name or self.config.backup_name)
        keep_days = self.config.backup_keep_days if options.keep_days is None else options.keep_days
        components = components_for(backup_type, options.include_search_index)

        report = OperationReport('backup')
        report.start()

        hot = options.hot
        running = self.orchestrator.running_services(self._known(STATEFUL_SERVICES))
        confirmed = False
        if running and not hot:
            logger.warning(f"Services are running: {', '.join(running)}")
            if not options.force:
                self.echo(f"\nWARNING: {', '.join(running)} running. For a consistent backup, stop services first.")
                if not self.confirm("Continue with hot backup? [y/N] "):
                    raise OperationCancelled("Backup cancelled; stop services or use --hot")
            confirmed = True
            hot = True
        if hot:
            report.warn(HOT_CAVEAT)

        timestamp = self.now()
        try:
            backup_dir = self._create_backup_dir(output_dir, name, timestamp)
        except OSError as e:
            raise self._setup_failed(report, f"Cannot create backup directory in {output_dir}: {e}") from e
        manifest = BackupManifest(
            backup_id=backup_dir.name,
            backup_type=backup_type,
            timestamp=timestamp,
            home=str(self.config.home),
            include_search_index=options.include_search_index,
            hot=hot,
            compressed=options.compress,
            retention_days=keep_days,
        )
        if confirmed:
            manifest.extra['hot_backup_confirmed'] = 'true'
        writer = ManifestWriter(manifest, backup_dir)
        try:
            writer.write_header()
        except OSError as e:
            shutil.rmtree(backup_dir, ignore_errors=True)
            raise self._setup_failed(report, f"Cannot write manifest in {backup_dir}: {e}") from e
        logger.info(f"Backup type: {backup_type}, directory: {backup_dir}")

        capture = {
            DATABASE: self._capture_database,
            CONTENT: self._capture_content,
            SEARCH_INDEX: self._capture_search_index,
            CONFIG: self._capture_config,
        }
        try:
            for component in components:
                start = time.time()
                entry = capture[component](backup_dir, hot, report, explicit=backup_type != 'full')
                if entry is None:
                    continue
                writer.add(entry)
                report.ok(component, f"{entry.path} ({format_size(entry.size)})", time.time() - start)
            writer.finalize()
        except StackError as e:
            logger.error(f"Backup failed, removing {backup_dir}")
            e.log_path = self._preserve_log(e.log_path, backup_dir)
            shutil.rmtree(backup_dir, ignore_errors=True)
            report.fail(e.component or component, e.message)
            report.finish(False)
            e.state = report
            raise
        except OSError as e:
            shutil.rmtree(backup_dir, ignore_errors=True)
            report.fail(component, str(e))
            report.finish(False)
            err = DataMutationError(f"Backup failed: {e}", component=component)
            err.state = report
            raise err from e

        logger.info(f"Backup size (uncompressed): {format_size(manifest.total_size)}")

        result_path = backup_dir
        compressed = False
        if options.compress:
            result_path, compressed = self._compress(backup_dir, report)

        removed = retention.sweep(output_dir, name, keep_days, exclude=[result_path])
        if removed:
            report.ok('retention', f"removed {len(removed)} backup(s) older than {keep_days} days")

        report.finish()
        return BackupResult(manifest=manifest, path=result_path, compressed=compressed,
                            removed=removed, report=report)

    # -----------------------------------------------------------------
    # Components
    # -----------------------------------------------------------------

    def _capture_database(self, backup_dir: Path, hot: bool, report: OperationReport,
                          explicit: bool = False) -> ComponentEntry:
        db = self.config.db_name
        log_path = backup_dir / DB_LOG
        started_here = False
        try:
            if not self.db_tool.is_ready():
                if not self.config.is_local_db:
                    raise DependencyError(f"Database at {self.config.db_host} is not reachable",
                                          component=DATABASE)
                logger.info("PostgreSQL is not running, starting it for the dump...")
                started_here = True
                self.orchestrator.start(['postgresql'])

            scratch = Path(tempfile.mkdtemp(prefix='stackctl-dump-'))
            try:
                # Dump runs as the database admin user
                scratch.chmod(0o777)
                files = self.db_tool.dump(db, scratch, log_path)
                for f in files:
                    shutil.move(str(f), str(backup_dir / f.name))
            finally:
                shutil.rmtree(scratch, ignore_errors=True)

            custom = backup_dir / files[0].name
            if not custom.is_file() or custom.stat().st_size == 0:
                raise DataMutationError("Database dump is empty", component=DATABASE, log_path=log_path)
            return ComponentEntry(
                name=DATABASE,
                path=custom.name,
                size=sum(path_size(backup_dir / f.name) for f in files),
                checksum=file_checksum(custom),
                metadata={
                    'database': db,
                    'sql_file': files[1].name if len(files) > 1 else '',
                    'db_size': self.db_tool.database_size(db),
                    'log': DB_LOG,
                },
            )
        except DataMutationError as e:
            if e.log_path is None:
                e.log_path = log_path
            raise
        finally:
            if started_here:
                logger.info("Stopping PostgreSQL (was not running before backup)")
                self.orchestrator.stop(['postgresql'])

    def _capture_content(self, backup_dir: Path, hot: bool, report: OperationReport,
                         explicit: bool = False) -> ComponentEntry:
        source = self.config.content_store_dir
        if not source.is_dir():
            raise DataMutationError(f"Content store not found: {source}", component=CONTENT)
        source_size = path_size(source)
        logger.info(f"Backing up content store ({format_size(source_size)})...")
        dest = backup_dir / 'alf_data'
        self.copier.copy(source, dest, component=CONTENT)
        return ComponentEntry(
            name=CONTENT,
            path='alf_data',
            size=path_size(dest),
            metadata={'source': str(source), 'source_size': source_size},
        )

    def _snapshot_search_index(self, report: OperationReport) -> None:
        """Ask each core for a replication snapshot before copying a live index."""
        headers = {'X-Alfresco-Search-Secret': self.config.solr_secret} if self.config.solr_secret else {}
        base = f"http://{self.config.solr_host}:{self.config.solr_port}/solr"
        for core in self.config.solr_cores:
            try:
                resp = requests.get(f"{base}/{core}/replication?command=backup", headers=headers, timeout=30)
                if resp.status_code != 200:
                    report.warn(f"Solr snapshot for core '{core}' returned {resp.status_code}")
            except requests.exceptions.RequestException as e:
                report.warn(f"Solr snapshot for core '{core}' failed: {e}")

    def _capture_search_index(self, backup_dir: Path, hot: bool, report: OperationReport,
                              explicit: bool = False) -> Optional[ComponentEntry]:
        source = self.config.search_index_dir
        if not source.is_dir():
            if explicit:
                raise DataMutationError(f"Search index not found: {source}", component=SEARCH_INDEX)
            logger.warning(f"Search index not found at {source}, skipping")
            report.warn(f"Search index not found at {source}; indexes will rebuild after restore")
            report.skip(SEARCH_INDEX, 'not found')
            return None
        if hot and 'solr' in self.orchestrator.start_order() and self.orchestrator.is_active('solr'):
            self._snapshot_search_index(report)
        logger.info("Backing up search index...")
        dest = backup_dir / 'solr'
        self.copier.copy(source, dest, component=SEARCH_INDEX)
        return ComponentEntry(
            name=SEARCH_INDEX,
            path='solr',
            size=path_size(dest),
            metadata={'source': str(source)},
        )

    def _capture_config(self, backup_dir: Path, hot: bool, report: OperationReport,
                        explicit: bool = False) -> ComponentEntry:
        config_root = backup_dir / 'config'
        config_root.mkdir()
        copied = 0
        missing = 0
        for path in self.config.resolved_config_paths():
            if not path.exists():
                logger.warning(f"Config path not found, skipping: {path}")
                report.warn(f"Config path not found: {path}")
                missing += 1
                continue
            dest = config_root / str(path.absolute()).lstrip('/')
            self.copier.copy(path, dest, component=CONFIG)
            copied += 1
            logger.debug(f"Backed up config: {path}")
        logger.info(f"Backed up {copied} config path(s)")
        return ComponentEntry(
            name=CONFIG,
            path='config',
            size=path_size(config_root),
            checksum=tree_checksum(config_root),
            metadata={'paths': copied, 'missing': missing},
        )

    # -----------------------------------------------------------------
    # Compression
    # -----------------------------------------------------------------

    def _compress(self, backup_dir: Path, report: OperationReport) -> tuple[Path, bool]:
        """Compress and verify; on failure keep the directory."""
        logger.info("Compressing backup...")
        archive = backup_dir.parent / f"{backup_dir.name}.tar.gz"
        try:
            archive = self.archiver.compress(backup_dir)
            if not self.archiver.verify(archive, f"{backup_dir.name}/{MANIFEST_FILENAME}"):
                raise DataMutationError(f"Archive {archive} failed verification", component='archive')
        except DataMutationError as e:
            logger.warning(f"Compression failed, keeping uncompressed backup: {e.message}")
            report.warn(f"Compression failed, backup kept uncompressed at {backup_dir}")
            report.add('archive', 'warning', 'compression failed, directory kept')
            archive.unlink(missing_ok=True)
            return backup_dir, False
        shutil.rmtree(backup_dir)
        report.ok('archive', f"{archive.name} ({format_size(archive.stat().st_size)})")
        return archive, True
