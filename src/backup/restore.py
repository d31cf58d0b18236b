"""Restore engine.

Restores a backup produced by BackupEngine. The backup is validated and a
RestorePlan is shown before anything changes; with --dry-run nothing
beyond a private scratch extraction happens.

Existing data is never deleted outright: live content and index
directories are renamed aside to <dir>.old.<timestamp>[-N], and every config
file about to be overwritten gets a sibling <file>.restore-backup.<timestamp>[-N]
copy.
"""

import logging
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from backup.manifest import (
    COMPONENTS, CONFIG, CONTENT, DATABASE, MANIFEST_FILENAME, SEARCH_INDEX, TIMESTAMP_FORMAT,
    BackupManifest, components_for, normalize_type, safe_join,
)
from backup.tools import LocalFileCopier, PostgresTool, TarArchiver
from common import confirm, format_size, path_size, run_command
from config import StackConfig
from errors import (
    ConfigurationError, DataMutationError, DependencyError, OperationCancelled, StackError,
    ValidationError,
)
from reporting import OperationReport

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIXES = ('.tar.gz', '.tgz')
BANNER = "═══════════════════════════════════════════════════════════════"


def _free_sibling(path: Path, suffix: str) -> Path:
    """Sibling named <name><suffix>, with -N appended if that is taken."""
    candidate = path.with_name(f"{path.name}{suffix}")
    n = 1
    while candidate.exists() or candidate.is_symlink():
        candidate = path.with_name(f"{path.name}{suffix}-{n}")
        n += 1
    return candidate


@dataclass
class RestoreOptions:
    """Options for one restore run."""
    backup_path: Path
    restore_type: str = 'full'
    include_search_index: bool = True
    force: bool = False
    dry_run: bool = False
    restore_root: Path = field(default_factory=lambda: Path('/'))


@dataclass
class RestorePlan:
    """What a restore will do, built from a validated backup.

    Attributes:
        source: Path given by the operator (archive or directory)
        backup_root: Directory holding manifest.txt
        manifest: Parsed manifest
        restore_type: Canonical restore type
        components: Components to restore, in order
        skipped: Component -> reason it will not be restored
        services_to_stop: Running services that must stop first
        confirmed: Operator confirmed (or --force)
        dry_run: Plan only
    """
    source: Path
    backup_root: Path
    manifest: BackupManifest
    restore_type: str
    components: list[str] = field(default_factory=list)
    skipped: dict = field(default_factory=dict)
    services_to_stop: list[str] = field(default_factory=list)
    confirmed: bool = False
    dry_run: bool = False

    @property
    def rebuilds_search_index(self) -> bool:
        return SEARCH_INDEX in self.skipped

    def format(self) -> str:
        m = self.manifest
        lines = [
            "",
            BANNER,
            f"  {'DRY-RUN: ' if self.dry_run else ''}Restore {self.restore_type} from {m.backup_id}",
            f"  Backup: {m.backup_type}, taken {m.timestamp.isoformat(sep=' ')} on {m.hostname or 'unknown host'}",
            BANNER,
            "",
            "Components:",
        ]
        for name in self.components:
            entry = m.get(name)
            size = format_size(entry.size) if entry else '?'
            lines.append(f"  [ OK ] {name}: {entry.path if entry else ''} ({size})")
        for name, reason in self.skipped.items():
            lines.append(f"  [SKIP] {name}: {reason}")
        lines.append("")
        if self.services_to_stop:
            lines.append(f"Services to stop: {', '.join(self.services_to_stop)}")
        if m.hot:
            lines.append("Note: this is a hot backup; files may not be consistent with the database dump")
        if self.rebuilds_search_index:
            lines.append("Note: search index not restored; Solr will rebuild indexes from the repository")
        return '\n'.join(lines)

    def to_dict(self) -> dict:
        return {
            'backup_id': self.manifest.backup_id,
            'restore_type': self.restore_type,
            'components': list(self.components),
            'skipped': dict(self.skipped),
            'services_to_stop': list(self.services_to_stop),
            'dry_run': self.dry_run,
        }


class RestoreEngine:
    """Validated, confirmed, rename-aside restore."""

    def __init__(
        self,
        config: StackConfig,
        orchestrator,
        db_tool: Optional[PostgresTool] = None,
        copier: Optional[LocalFileCopier] = None,
        archiver: Optional[TarArchiver] = None,
        confirm_fn: Callable[..., bool] = confirm,
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

    # -----------------------------------------------------------------
    # Locating and validating the backup
    # -----------------------------------------------------------------

    @staticmethod
    def _is_archive(path: Path) -> bool:
        return path.is_file() and path.name.endswith(ARCHIVE_SUFFIXES)

    @staticmethod
    def _find_backup_root(directory: Path) -> Path:
        if (directory / MANIFEST_FILENAME).is_file():
            return directory
        candidates = [d for d in sorted(directory.iterdir())
                      if d.is_dir() and (d / MANIFEST_FILENAME).is_file()]
        if len(candidates) != 1:
            raise ValidationError(f"Could not find a backup ({MANIFEST_FILENAME}) in {directory}")
        return candidates[0]

    def plan(self, options: RestoreOptions, backup_root: Path) -> RestorePlan:
        """Build a RestorePlan for an extracted/located backup.

        Raises:
            ConfigurationError: Invalid restore type
            ValidationError: Required component missing from the backup
        """
        try:
            restore_type = normalize_type(options.restore_type)
        except ValidationError as e:
            raise ConfigurationError(e.message) from e

        manifest = BackupManifest.load(backup_root)
        requested = components_for(restore_type, options.include_search_index)
        required = {DATABASE, CONTENT} if restore_type == 'full' else set(requested)

        plan = RestorePlan(
            source=options.backup_path,
            backup_root=backup_root,
            manifest=manifest,
            restore_type=restore_type,
            dry_run=options.dry_run,
        )
        for name in COMPONENTS:
            if name not in requested:
                if restore_type == 'full' and name == SEARCH_INDEX:
                    plan.skipped[name] = 'excluded, indexes will rebuild'
                continue
            entry = manifest.get(name)
            present = entry is not None and safe_join(backup_root, entry.path).exists()
            if present:
                plan.components.append(name)
            elif name in required:
                raise ValidationError(
                    f"Backup {manifest.backup_id} has no '{name}' component "
                    f"required for a {restore_type} restore",
                    component=name,
                )
            elif name == SEARCH_INDEX:
                plan.skipped[name] = 'not in backup, indexes will rebuild'
            else:
                plan.skipped[name] = 'not in backup'

        others = [n for n in self.orchestrator.start_order() if n != 'postgresql']
        plan.services_to_stop = self.orchestrator.running_services(others)
        return plan

    # -----------------------------------------------------------------
    # Run
    # -----------------------------------------------------------------

    def run(self, options: RestoreOptions) -> OperationReport:
        """Validate, plan, confirm and restore.

        Returns:
            OperationReport (success False if any component failed in full mode)

        Raises:
            ValidationError: Bad backup path or missing required component
            OperationCancelled: Operator declined
            DependencyError: Services could not be stopped
            DataMutationError: Component failure in single-component mode
        """
        source = Path(options.backup_path)
        if not source.exists():
            raise ValidationError(f"Backup not found: {source}")
        if source.is_file() and not self._is_archive(source):
            raise ValidationError(f"Unsupported backup format: {source} (expected .tar.gz, .tgz or a directory)")

        scratch: Optional[Path] = None
        try:
            if source.is_file():
                scratch = Path(tempfile.mkdtemp(prefix='stackctl-restore-'))
                logger.info(f"Extracting {source.name}...")
                self.archiver.extract(source, scratch)
                backup_root = self._find_backup_root(scratch)
            else:
                backup_root = self._find_backup_root(source)

            plan = self.plan(options, backup_root)
            self.echo(plan.format())
            if options.dry_run:
                return self._dry_run_report(plan)
            return self._execute(plan, options)
        finally:
            if scratch is not None:
                shutil.rmtree(scratch, ignore_errors=True)

    def _dry_run_report(self, plan: RestorePlan) -> OperationReport:
        report = OperationReport('restore')
        report.start()
        for name in plan.components:
            report.add(name, 'planned', 'would restore')
        for name, reason in plan.skipped.items():
            report.skip(name, reason)
        if plan.services_to_stop:
            report.warn(f"Would stop: {', '.join(plan.services_to_stop)}")
        report.next_steps.append("Remove --dry-run to perform the restore")
        report.finish(True)
        return report

    def _prepare_services(self, plan: RestorePlan, options: RestoreOptions) -> None:
        if plan.services_to_stop:
            if not options.force:
                self.echo(f"\nThese services must be stopped first: {', '.join(plan.services_to_stop)}")
                if not self.confirm("Stop services now? [y/N] "):
                    raise OperationCancelled("Restore cancelled; services are still running")
            success, state = self.orchestrator.stop(plan.services_to_stop, forced=options.force)
            if not success:
                err = DependencyError(f"Could not stop: {', '.join(state.failed())}")
                err.state = state
                raise err

        if DATABASE in plan.components and self.config.is_local_db and not self.db_tool.is_ready():
            logger.info("Starting PostgreSQL for database restore...")
            self.orchestrator.start(['postgresql'])

    def _execute(self, plan: RestorePlan, options: RestoreOptions) -> OperationReport:
        self._prepare_services(plan, options)

        if not options.force:
            self.echo("\nWARNING: This will replace current data with the backup contents.")
            if not self.confirm("Type 'yes' to continue: ", expected=('yes',)):
                raise OperationCancelled("Restore cancelled")
        plan.confirmed = True

        stamp = self.now().strftime(TIMESTAMP_FORMAT)
        report = OperationReport('restore')
        report.start()
        if plan.manifest.hot:
            report.warn("Restored from a hot backup; verify content against the database")

        steps = {
            DATABASE: self._restore_database,
            CONTENT: self._restore_content,
            SEARCH_INDEX: self._restore_search_index,
            CONFIG: self._restore_config,
        }
        for name in plan.components:
            start = time.time()
            logger.info(f"Restoring {name}...")
            try:
                message = steps[name](plan, options, stamp, report)
                report.ok(name, message, time.time() - start)
            except (StackError, OSError) as e:
                if isinstance(e, StackError):
                    message = e.describe()
                else:
                    message = f"{name}: {e}"
                logger.error(f"Restore of {name} failed: {message}")
                report.fail(name, message, time.time() - start)
                if plan.restore_type != 'full':
                    report.finish(False)
                    if isinstance(e, StackError):
                        e.state = report
                        raise
                    err = DataMutationError(message, component=name)
                    err.state = report
                    raise err from e

        for name, reason in plan.skipped.items():
            report.skip(name, reason)

        report.next_steps.extend([
            "Review restored configuration files",
            "Start services: stackctl start",
            "Verify the application and search are working",
        ])
        if plan.rebuilds_search_index:
            report.next_steps.append("Monitor Solr while it rebuilds the search index")
        report.finish()
        return report

    # -----------------------------------------------------------------
    # Components
    # -----------------------------------------------------------------

    def _restore_database(self, plan: RestorePlan, options: RestoreOptions, stamp: str,
                          report: OperationReport) -> str:
        entry = plan.manifest.get(DATABASE)
        db = self.config.db_name
        owner = self.config.db_user
        log_dir = Path(self.config.backup_output_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / f"db_restore_{stamp}.log"

        dump_file = safe_join(plan.backup_root, entry.path)
        sql_file = None
        if sql_name := entry.metadata.get('sql_file'):
            sql_file = safe_join(plan.backup_root, sql_name)

        try:
            self.db_tool.drop_create(db, owner, log_path)
            self.db_tool.restore(db, dump_file, owner, log_path, sql_file=sql_file)
            self.db_tool.grant(db, owner, log_path)
            tables = self.db_tool.table_count(db)
        except DataMutationError as e:
            e.log_path = e.log_path or log_path
            raise
        if tables == 0:
            raise DataMutationError("Database restored but contains no tables",
                                    component=DATABASE, log_path=log_path)
        logger.info(f"Database '{db}' restored ({tables} tables)")
        return f"{tables} tables"

    def _rename_aside(self, target: Path, stamp: str) -> Optional[Path]:
        if not target.exists():
            return None
        aside = _free_sibling(target, f".old.{stamp}")
        target.rename(aside)
        logger.info(f"Moved existing {target} to {aside}")
        return aside

    def _fix_ownership(self, target: Path, report: OperationReport) -> None:
        if not self.config.use_sudo:
            return
        rc, _, err = run_command(
            ['sudo', 'chown', '-R', f'{self.config.user}:{self.config.group}', str(target)])
        if rc != 0:
            report.warn(f"Could not set ownership on {target}: {err.strip()}")

    def _restore_tree(self, name: str, target: Path, plan: RestorePlan, stamp: str,
                      report: OperationReport) -> str:
        entry = plan.manifest.get(name)
        source = safe_join(plan.backup_root, entry.path)
        aside = self._rename_aside(target, stamp)
        self.copier.copy(source, target, component=name)
        self._fix_ownership(target, report)
        restored = path_size(target)
        if entry.size and restored != entry.size:
            report.warn(f"{name}: restored size {restored} differs from backup ({entry.size})")
        message = f"{format_size(restored)} restored"
        if aside:
            message += f", previous data at {aside.name}"
        return message

    def _restore_content(self, plan: RestorePlan, options: RestoreOptions, stamp: str,
                         report: OperationReport) -> str:
        return self._restore_tree(CONTENT, self.config.content_store_dir, plan, stamp, report)

    def _restore_search_index(self, plan: RestorePlan, options: RestoreOptions, stamp: str,
                              report: OperationReport) -> str:
        return self._restore_tree(SEARCH_INDEX, self.config.search_index_dir, plan, stamp, report)

    def _restore_config(self, plan: RestorePlan, options: RestoreOptions, stamp: str,
                        report: OperationReport) -> str:
        entry = plan.manifest.get(CONFIG)
        source_root = safe_join(plan.backup_root, entry.path)
        restored = 0
        saved = 0
        units = False
        for item in sorted(source_root.rglob('*')):
            if item.is_dir() and not item.is_symlink():
                continue
            rel = item.relative_to(source_root)
            dest = options.restore_root / rel
            if dest.exists() and not dest.is_dir():
                shutil.copy2(dest, _free_sibling(dest, f".restore-backup.{stamp}"))
                saved += 1
                if item.is_symlink():
                    dest.unlink()
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(item, dest, follow_symlinks=False)
            restored += 1
            if dest.suffix == '.service':
                units = True
            logger.debug(f"Restored config: {dest}")

        if units:
            logger.info("Reloading service unit definitions...")
            try:
                self.orchestrator.manager.reload_units()
            except DependencyError as e:
                report.warn(f"Unit reload failed: {e.message}")
        return f"{restored} file(s), {saved} existing saved as .restore-backup.{stamp}"
