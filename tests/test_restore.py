"""Tests for backup.restore module.

Each test takes a real backup of a temporary stack tree, changes the live
data, and restores with an in-memory database tool and fake process
manager.
"""

import sys
from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from backup.engine import BackupEngine, BackupOptions
from backup.manifest import CONFIG, CONTENT, DATABASE, SEARCH_INDEX
from backup.restore import RestoreEngine, RestoreOptions
from backup.tools import LocalFileCopier
from common import tree_checksum
from conftest import FakeDbTool, FakeManager, stack_descriptors
from errors import ConfigurationError, DataMutationError, OperationCancelled, ValidationError
from lifecycle.orchestrator import LifecycleOrchestrator

BACKUP_STAMP = datetime(2026, 1, 1, 2, 0, 0)
RESTORE_STAMP = datetime(2026, 1, 2, 9, 30, 0)
ORIGINAL_TABLES = {'alf_node': [1, 2, 3], 'alf_store': [1]}


def _orchestrator(manager):
    return LifecycleOrchestrator(stack_descriptors(manager), manager)


def _backup(config, db_tool, compress=True, **kwargs):
    """Take a backup with no services running."""
    engine = BackupEngine(
        config, _orchestrator(FakeManager()), db_tool=db_tool,
        copier=LocalFileCopier(prefer_rsync=False),
        now=lambda: BACKUP_STAMP, echo=lambda *args: None,
    )
    return engine.run(BackupOptions(compress=compress, **kwargs)).path


def _restorer(config, db_tool, manager=None, confirm_fn=None):
    return RestoreEngine(
        config, _orchestrator(manager or FakeManager()), db_tool=db_tool,
        copier=LocalFileCopier(prefer_rsync=False),
        confirm_fn=confirm_fn or MagicMock(return_value=True),
        now=lambda: RESTORE_STAMP, echo=lambda *args: None,
    )


def _damage(config, db_tool):
    """Change live content, config and database after the backup."""
    a_bin = config.content_store_dir / 'contentstore' / '2026' / '1' / 'a.bin'
    a_bin.write_bytes(b'changed')
    (config.content_store_dir / 'new.bin').write_bytes(b'new')
    (config.home / 'tomcat' / 'conf' / 'server.xml').write_text('<Server port="9999"/>\n')
    db_tool.tables = {'scratch': []}


@pytest.fixture
def db():
    return FakeDbTool(tables=dict(ORIGINAL_TABLES))


class TestDryRun:
    """Dry-run validates and plans without changing anything."""

    def test_dry_run_changes_nothing(self, stack_home, db):
        archive = _backup(stack_home, db)
        _damage(stack_home, db)
        before = tree_checksum(stack_home.home)
        archive_bytes = archive.read_bytes()

        report = _restorer(stack_home, db).run(RestoreOptions(backup_path=archive, dry_run=True))

        assert tree_checksum(stack_home.home) == before
        assert archive.read_bytes() == archive_bytes
        assert db.tables == {'scratch': []}
        assert db.calls == ['dump']
        assert report.success is True
        assert report.names('planned') == [DATABASE, CONTENT, SEARCH_INDEX, CONFIG]

    def test_dry_run_reports_services_to_stop(self, stack_home, db):
        archive = _backup(stack_home, db)
        manager = FakeManager(active=['postgresql', 'tomcat', 'solr'])
        report = _restorer(stack_home, db, manager=manager).run(
            RestoreOptions(backup_path=archive, dry_run=True))
        assert manager.actions('stop') == []
        assert 'Would stop: tomcat, solr' in report.warnings

    def test_plan_is_printed(self, stack_home, db):
        archive = _backup(stack_home, db)
        echoed = []
        engine = _restorer(stack_home, db)
        engine.echo = echoed.append
        engine.run(RestoreOptions(backup_path=archive, dry_run=True))
        text = '\n'.join(echoed)
        assert 'DRY-RUN' in text
        assert '[ OK ] database' in text


class TestFullRestore:
    """Round trip: backup, damage, restore."""

    def test_round_trip_from_archive(self, stack_home, db):
        original_content = tree_checksum(stack_home.content_store_dir)
        server_xml = stack_home.home / 'tomcat' / 'conf' / 'server.xml'
        original_server = server_xml.read_text()

        archive = _backup(stack_home, db)
        _damage(stack_home, db)

        report = _restorer(stack_home, db).run(RestoreOptions(backup_path=archive, force=True))

        assert report.success is True
        assert db.tables == ORIGINAL_TABLES
        assert db.calls == ['dump', 'drop_create', 'restore', 'grant']
        assert tree_checksum(stack_home.content_store_dir) == original_content
        assert server_xml.read_text() == original_server

    def test_existing_data_renamed_aside(self, stack_home, db):
        archive = _backup(stack_home, db)
        _damage(stack_home, db)
        _restorer(stack_home, db).run(RestoreOptions(backup_path=archive, force=True))

        aside = stack_home.home / 'alf_data.old.20260102_093000'
        assert (aside / 'new.bin').read_bytes() == b'new'
        assert (aside / 'contentstore' / '2026' / '1' / 'a.bin').read_bytes() == b'changed'
        solr_aside = stack_home.home / 'alfresco-search-services' / 'solrhome.old.20260102_093000'
        assert (solr_aside / 'alfresco' / 'index' / 'segments_1').is_file()

    def test_overwritten_config_saved(self, stack_home, db):
        archive = _backup(stack_home, db)
        _damage(stack_home, db)
        _restorer(stack_home, db).run(RestoreOptions(backup_path=archive, force=True))

        saved = stack_home.home / 'tomcat' / 'conf' / 'server.xml.restore-backup.20260102_093000'
        assert saved.read_text() == '<Server port="9999"/>\n'

    def test_restore_from_directory(self, stack_home, db):
        backup_dir = _backup(stack_home, db, compress=False)
        _damage(stack_home, db)
        report = _restorer(stack_home, db).run(RestoreOptions(backup_path=backup_dir, force=True))
        assert report.success is True
        assert db.tables == ORIGINAL_TABLES

    def test_restore_from_parent_directory(self, stack_home, db):
        backup_dir = _backup(stack_home, db, compress=False)
        report = _restorer(stack_home, db).run(
            RestoreOptions(backup_path=backup_dir.parent, force=True, dry_run=True))
        assert report.success is True

    def test_next_steps_reported(self, stack_home, db):
        archive = _backup(stack_home, db)
        report = _restorer(stack_home, db).run(RestoreOptions(backup_path=archive, force=True))
        assert any('stackctl start' in step for step in report.next_steps)

    def test_unit_files_trigger_reload(self, stack_home, db):
        units = stack_home.home / 'units'
        units.mkdir()
        (units / 'tomcat.service').write_text('[Service]\n')
        stack_home.config_paths.append('units/tomcat.service')
        archive = _backup(stack_home, db)

        manager = FakeManager()
        _restorer(stack_home, db, manager=manager).run(RestoreOptions(backup_path=archive, force=True))
        assert manager.reloads == 1


class TestConfirmation:
    """Operator confirmation and service handling."""

    def test_running_services_stopped_after_confirmation(self, stack_home, db):
        archive = _backup(stack_home, db)
        manager = FakeManager(active=['postgresql', 'tomcat', 'nginx'])
        prompts = []

        def confirm_fn(prompt, expected=('y', 'yes')):
            prompts.append(prompt)
            return True

        report = _restorer(stack_home, db, manager=manager, confirm_fn=confirm_fn).run(
            RestoreOptions(backup_path=archive))
        assert report.success is True
        assert manager.actions('stop') == ['nginx', 'tomcat']
        assert 'postgresql' in manager.active
        assert len(prompts) == 2

    def test_decline_stop_cancels(self, stack_home, db):
        archive = _backup(stack_home, db)
        _damage(stack_home, db)
        before = tree_checksum(stack_home.home)
        manager = FakeManager(active=['tomcat'])
        with pytest.raises(OperationCancelled):
            _restorer(stack_home, db, manager=manager,
                      confirm_fn=MagicMock(return_value=False)).run(RestoreOptions(backup_path=archive))
        assert manager.actions('stop') == []
        assert tree_checksum(stack_home.home) == before

    def test_typed_yes_required(self, stack_home, db):
        archive = _backup(stack_home, db)
        _damage(stack_home, db)

        confirm_fn = MagicMock(return_value=False)
        with pytest.raises(OperationCancelled):
            _restorer(stack_home, db, confirm_fn=confirm_fn).run(RestoreOptions(backup_path=archive))
        assert confirm_fn.call_args.kwargs == {'expected': ('yes',)}
        assert db.tables == {'scratch': []}
        assert not (stack_home.home / 'alf_data.old.20260102_093000').exists()


class TestValidation:
    """Backup path and component validation."""

    def test_missing_path(self, stack_home, db):
        with pytest.raises(ValidationError, match='not found'):
            _restorer(stack_home, db).run(RestoreOptions(backup_path=stack_home.home / 'nope.tar.gz'))

    def test_unsupported_file(self, stack_home, db):
        bogus = stack_home.home / 'backup.zip'
        bogus.write_bytes(b'zip')
        with pytest.raises(ValidationError, match='Unsupported'):
            _restorer(stack_home, db).run(RestoreOptions(backup_path=bogus))

    def test_directory_without_manifest(self, stack_home, db):
        with pytest.raises(ValidationError, match='manifest.txt'):
            _restorer(stack_home, db).run(RestoreOptions(backup_path=stack_home.home / 'tomcat'))

    def test_full_restore_requires_database(self, stack_home, db):
        archive = _backup(stack_home, db, backup_type='content')
        with pytest.raises(ValidationError, match="'database'"):
            _restorer(stack_home, db).run(RestoreOptions(backup_path=archive, force=True))

    def test_invalid_restore_type(self, stack_home, db):
        archive = _backup(stack_home, db)
        with pytest.raises(ConfigurationError):
            _restorer(stack_home, db).run(RestoreOptions(backup_path=archive, restore_type='nope'))

    def test_corrupt_manifest_value(self, stack_home, db):
        backup_dir = _backup(stack_home, db, compress=False)
        manifest = backup_dir / 'manifest.txt'
        manifest.write_text(manifest.read_text().replace('retention_days=30', 'retention_days=thirty'))
        with pytest.raises(ValidationError, match='retention_days'):
            _restorer(stack_home, db).run(RestoreOptions(backup_path=backup_dir, dry_run=True))

    def test_missing_index_is_skipped_with_rebuild_note(self, stack_home, db):
        archive = _backup(stack_home, db, include_search_index=False)
        report = _restorer(stack_home, db).run(RestoreOptions(backup_path=archive, force=True))
        assert report.success is True
        assert SEARCH_INDEX in report.names('skipped')
        assert any('rebuild' in step for step in report.next_steps)

    def test_excluded_index_not_touched(self, stack_home, db):
        archive = _backup(stack_home, db)
        solr = stack_home.search_index_dir
        before = tree_checksum(solr)
        _restorer(stack_home, db).run(
            RestoreOptions(backup_path=archive, force=True, include_search_index=False))
        assert tree_checksum(solr) == before
        assert not solr.with_name('solrhome.old.20260102_093000').exists()


class TestFailures:
    """Component failures."""

    def test_full_restore_continues_after_failure(self, stack_home, db):
        archive = _backup(stack_home, db)
        _damage(stack_home, db)
        db.fail_restore = True
        report = _restorer(stack_home, db).run(RestoreOptions(backup_path=archive, force=True))
        assert report.success is False
        assert report.names('failed') == [DATABASE]
        assert CONTENT in report.names('ok')
        assert CONFIG in report.names('ok')
        assert 'db_restore_20260102_093000.log' in report.to_dict()['error']

    def test_single_component_failure_raises(self, stack_home, db):
        archive = _backup(stack_home, db)
        db.fail_restore = True
        with pytest.raises(DataMutationError) as exc_info:
            _restorer(stack_home, db).run(RestoreOptions(backup_path=archive, restore_type='db', force=True))
        assert exc_info.value.state.names('failed') == [DATABASE]

    def test_empty_database_after_restore_fails(self, stack_home):
        db = FakeDbTool(tables={})
        archive = _backup(stack_home, db, backup_type='db')
        with pytest.raises(DataMutationError, match='no tables'):
            _restorer(stack_home, db).run(RestoreOptions(backup_path=archive, restore_type='db', force=True))


class TestRepeatedRestore:
    """Two restores within the same second keep every earlier copy."""

    def test_second_restore_gets_suffixed_names(self, stack_home, db):
        archive = _backup(stack_home, db)
        server_xml = stack_home.home / 'tomcat' / 'conf' / 'server.xml'

        _damage(stack_home, db)
        _restorer(stack_home, db).run(RestoreOptions(backup_path=archive, force=True))
        server_xml.write_text('<Server port="8888"/>\n')
        report = _restorer(stack_home, db).run(RestoreOptions(backup_path=archive, force=True))

        assert report.success is True
        saved = server_xml.with_name('server.xml.restore-backup.20260102_093000')
        assert saved.read_text() == '<Server port="9999"/>\n'
        assert saved.with_name(saved.name + '-1').read_text() == '<Server port="8888"/>\n'
        assert (stack_home.home / 'alf_data.old.20260102_093000' / 'new.bin').is_file()
        assert (stack_home.home / 'alf_data.old.20260102_093000-1').is_dir()
