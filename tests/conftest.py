"""Shared pytest fixtures for stackctl tests."""

import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import StackConfig  # noqa: E402
from errors import DataMutationError, DependencyError  # noqa: E402
from services.registry import ServiceDescriptor  # noqa: E402


class FakeClock:
    """Stand-in for the time module: sleep() advances monotonic()."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def time(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeManager:
    """In-memory ProcessManager.

    Args:
        active: Units running at the start
        installed: Units known to the manager (default: everything)
        fail_start: Units whose start action raises
        fail_stop: Units whose stop action raises
        stubborn: Units that ignore a graceful stop
        unkillable: Units that survive force_stop
    """

    def __init__(self, active=(), installed=None, fail_start=(), fail_stop=(),
                 stubborn=(), unkillable=()):
        self.active = set(active)
        self.installed = None if installed is None else set(installed)
        self.fail_start = set(fail_start)
        self.fail_stop = set(fail_stop)
        self.stubborn = set(stubborn)
        self.unkillable = set(unkillable)
        self.calls: list[tuple[str, str]] = []
        self.reloads = 0

    def start(self, unit):
        self.calls.append(('start', unit))
        if unit in self.fail_start:
            raise DependencyError(f"systemctl start {unit} failed", component=unit)
        self.active.add(unit)

    def stop(self, unit):
        self.calls.append(('stop', unit))
        if unit in self.fail_stop:
            raise DependencyError(f"systemctl stop {unit} failed", component=unit)
        if unit not in self.stubborn:
            self.active.discard(unit)

    def force_stop(self, unit):
        self.calls.append(('force_stop', unit))
        if unit not in self.unkillable:
            self.active.discard(unit)

    def is_active(self, unit):
        return unit in self.active

    def is_installed(self, unit):
        return self.installed is None or unit in self.installed

    def reload_units(self):
        self.reloads += 1

    def actions(self, verb):
        return [unit for v, unit in self.calls if v == verb]


class FakeProbe:
    """Probe returning scripted results; the last result repeats."""

    def __init__(self, *results):
        self.results = list(results) or [True]
        self.calls = 0

    def check(self):
        result = self.results[min(self.calls, len(self.results) - 1)]
        self.calls += 1
        if isinstance(result, Exception):
            raise result
        return result


class ManagerProbe:
    """Healthy exactly when the fake manager reports the unit active."""

    def __init__(self, manager, unit):
        self.manager = manager
        self.unit = unit
        self.calls = 0

    def check(self):
        self.calls += 1
        return self.manager.is_active(self.unit)


def make_descriptor(name, depends_on=(), probe=None, **kwargs):
    """Helper to build a ServiceDescriptor with a healthy probe."""
    return ServiceDescriptor(
        name=name,
        unit=kwargs.pop('unit', name),
        probe=probe or FakeProbe(True),
        depends_on=tuple(depends_on),
        **kwargs,
    )


def stack_descriptors(manager, **timeouts):
    """The default stack shape with probes backed by the fake manager."""
    layout = [
        ('postgresql', ()),
        ('activemq', ()),
        ('transform', ('activemq',)),
        ('tomcat', ('postgresql', 'activemq', 'transform')),
        ('solr', ('tomcat',)),
        ('nginx', ('tomcat',)),
    ]
    return [
        make_descriptor(name, deps, probe=ManagerProbe(manager, name),
                        start_timeout=timeouts.get(name, 60), stop_timeout=60,
                        stateful=name in ('postgresql', 'tomcat', 'solr'))
        for name, deps in layout
    ]


class FakeDbTool:
    """In-memory database tool: a dict of table name -> rows."""

    def __init__(self, tables=None, ready=True, fail_dump=False, fail_restore=False):
        self.tables = dict(tables if tables is not None else {'alf_node': [1, 2, 3], 'alf_store': [1]})
        self.ready = ready
        self.fail_dump = fail_dump
        self.fail_restore = fail_restore
        self.calls: list[str] = []

    def is_ready(self):
        return self.ready

    def dump(self, db, scratch_dir, log_path=None):
        self.calls.append('dump')
        if self.fail_dump:
            if log_path:
                log_path.write_text("pg_dump: error: connection refused\n")
            raise DataMutationError("pg_dump (custom format) failed", component='database',
                                    log_path=log_path)
        payload = json.dumps(self.tables, sort_keys=True)
        custom = scratch_dir / f'database_{db}.sql.dump'
        plain = scratch_dir / f'database_{db}.sql'
        custom.write_text(payload)
        plain.write_text(f"-- {db}\n{payload}\n")
        return [custom, plain]

    def database_size(self, db):
        return '8 MB'

    def drop_create(self, db, owner, log_path=None):
        self.calls.append('drop_create')
        self.tables = {}

    def restore(self, db, dump_file, owner, log_path=None, sql_file=None):
        self.calls.append('restore')
        if self.fail_restore:
            raise DataMutationError("pg_restore failed", component='database', log_path=log_path)
        self.tables = json.loads(Path(dump_file).read_text())

    def grant(self, db, role, log_path=None):
        self.calls.append('grant')

    def table_count(self, db):
        return len(self.tables)


@pytest.fixture
def clock(monkeypatch):
    """Fake clock patched into common (poll_until) and the orchestrator."""
    fake = FakeClock()
    monkeypatch.setattr('common.time', fake)
    monkeypatch.setattr('lifecycle.orchestrator.time', fake)
    return fake


@pytest.fixture
def stack_home(tmp_path):
    """Create a stack installation tree with content, index and config files.

    Returns:
        StackConfig pointing at the tree (sudo disabled)
    """
    home = tmp_path / 'home'
    (home / 'alf_data' / 'contentstore' / '2026' / '1').mkdir(parents=True)
    (home / 'alf_data' / 'contentstore' / '2026' / '1' / 'a.bin').write_bytes(b'content-a' * 100)
    (home / 'alf_data' / 'contentstore' / '2026' / '1' / 'b.bin').write_bytes(b'content-b')
    solr = home / 'alfresco-search-services' / 'solrhome'
    (solr / 'alfresco' / 'index').mkdir(parents=True)
    (solr / 'alfresco' / 'index' / 'segments_1').write_bytes(b'segments')
    (solr / 'conf').mkdir()
    (solr / 'conf' / 'shared.properties').write_text('alfresco.cross.locale=true\n')

    classes = home / 'tomcat' / 'shared' / 'classes'
    classes.mkdir(parents=True)
    (classes / 'alfresco-global.properties').write_text('db.name=alfresco\ndb.host=localhost\n')
    (home / 'tomcat' / 'conf').mkdir(parents=True)
    (home / 'tomcat' / 'conf' / 'server.xml').write_text('<Server port="8005"/>\n')

    return StackConfig(
        home=home,
        use_sudo=False,
        backup_output_dir=tmp_path / 'backups',
        config_paths=[
            'tomcat/shared/classes/alfresco-global.properties',
            'tomcat/conf/server.xml',
            'alfresco-search-services/solrhome/conf',
            'activemq/conf',
        ],
    )
