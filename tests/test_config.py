"""Tests for config module."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import config as config_module
from config import (
    DEFAULT_START_TIMEOUTS,
    StackConfig,
    config_from_dict,
    find_config_file,
    load_stack_config,
)
from errors import ConfigurationError


class TestStackConfigDefaults:
    """Test built-in defaults and derived properties."""

    def test_defaults(self):
        config = StackConfig()
        assert config.home == Path('/opt/alfresco')
        assert config.backup_output_dir == Path('/opt/alfresco/backups')
        assert config.poll_interval == 2
        assert config.stop_timeout == 60
        assert config.start_timeouts == DEFAULT_START_TIMEOUTS

    def test_derived_paths(self):
        config = StackConfig(home='/srv/alf')
        assert config.content_store_dir == Path('/srv/alf/alf_data')
        assert config.search_index_dir == Path('/srv/alf/alfresco-search-services/solrhome')

    @pytest.mark.parametrize('host,local', [
        ('localhost', True),
        ('127.0.0.1', True),
        ('db.example.com', False),
    ])
    def test_is_local_db(self, host, local):
        assert StackConfig(db_host=host).is_local_db is local

    def test_resolved_config_paths(self):
        config = StackConfig(home='/srv/alf', config_dir='/srv/install/config',
                             config_paths=['tomcat/conf/server.xml', '/etc/nginx/sites-available/alfresco'])
        paths = config.resolved_config_paths()
        assert Path('/srv/alf/tomcat/conf/server.xml') in paths
        assert Path('/etc/nginx/sites-available/alfresco') in paths
        assert Path('/srv/install/config/alfresco.env') in paths
        assert Path('/srv/install/config/versions.conf') in paths

    def test_start_timeout_fallback(self):
        assert StackConfig().start_timeout('tomcat') == 300
        assert StackConfig().start_timeout('unknown') == 60


class TestConfigFromDict:
    """Test building config from parsed YAML."""

    def test_sections(self):
        config = config_from_dict({
            'stack': {'home': '/srv/alf', 'user': 'svc', 'use_sudo': False},
            'database': {'host': 'db.internal', 'port': 5433, 'name': 'repo'},
            'search': {'secret': 's3cret'},
            'timeouts': {'poll_interval': 1, 'stop': 30, 'start': {'tomcat': 600}},
            'backup': {'keep_days': 7, 'name': 'nightly'},
        }, environ={})
        assert config.home == Path('/srv/alf')
        assert config.user == 'svc'
        assert config.group == 'svc'
        assert config.use_sudo is False
        assert config.db_host == 'db.internal'
        assert config.db_port == 5433
        assert config.db_name == 'repo'
        assert config.is_local_db is False
        assert config.solr_secret == 's3cret'
        assert config.poll_interval == 1
        assert config.stop_timeout == 30
        assert config.start_timeouts['tomcat'] == 600
        assert config.start_timeouts['postgresql'] == 60
        assert config.backup_keep_days == 7
        assert config.backup_name == 'nightly'
        assert config.backup_output_dir == Path('/srv/alf/backups')

    def test_memory_overrides_from_file(self):
        config = config_from_dict({'memory': {'overrides': {'solr': 1000}}}, environ={})
        assert config.memory_overrides == {'solr': 1000}

    def test_env_overrides_win(self):
        config = config_from_dict(
            {'memory': {'overrides': {'solr': 1000}}},
            environ={'SOLR_HEAP_MB': '3000', 'TOMCAT_XMX_MB': '8192'},
        )
        assert config.memory_overrides == {'solr': 3000, 'tomcat_xmx': 8192}

    def test_env_override_must_be_integer(self):
        with pytest.raises(ConfigurationError, match='SOLR_HEAP_MB'):
            config_from_dict({}, environ={'SOLR_HEAP_MB': 'lots'})

    def test_invalid_port(self):
        with pytest.raises(ConfigurationError, match='database.port'):
            config_from_dict({'database': {'port': 'abc'}}, environ={})

    def test_non_positive_timeout(self):
        with pytest.raises(ConfigurationError, match='timeouts.stop'):
            config_from_dict({'timeouts': {'stop': 0}}, environ={})

    def test_drain_delay(self):
        assert config_from_dict({}, environ={}).drain_delay == 2
        config = config_from_dict({'timeouts': {'drain_delay': 0.5}}, environ={})
        assert config.drain_delay == 0.5

    def test_section_must_be_mapping(self):
        with pytest.raises(ConfigurationError, match="'database'"):
            config_from_dict({'database': ['localhost']}, environ={})

    def test_config_paths_must_be_list(self):
        with pytest.raises(ConfigurationError, match='config_paths'):
            config_from_dict({'backup': {'config_paths': 'tomcat/conf'}}, environ={})


class TestDiscovery:
    """Test config file discovery and loading."""

    def test_explicit_path(self, tmp_path):
        f = tmp_path / 'stack.yaml'
        f.write_text("stack:\n  home: /srv/alf\n")
        config = load_stack_config(f)
        assert config.home == Path('/srv/alf')
        assert config.source == f

    def test_explicit_missing(self, tmp_path):
        with pytest.raises(ConfigurationError, match='does not exist'):
            load_stack_config(tmp_path / 'missing.yaml')

    def test_env_var(self, tmp_path, monkeypatch):
        f = tmp_path / 'env.yaml'
        f.write_text("backup:\n  keep_days: 3\n")
        monkeypatch.setenv('STACKCTL_CONFIG', str(f))
        assert find_config_file() == f

    def test_env_var_missing_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv('STACKCTL_CONFIG', str(tmp_path / 'nope.yaml'))
        with pytest.raises(ConfigurationError, match='STACKCTL_CONFIG'):
            find_config_file()

    def test_defaults_when_nothing_found(self, tmp_path, monkeypatch, caplog):
        monkeypatch.delenv('STACKCTL_CONFIG', raising=False)
        monkeypatch.setattr(config_module, 'get_base_dir', lambda: tmp_path)
        monkeypatch.setattr(config_module, 'SYSTEM_CONFIG', tmp_path / 'etc' / 'stack.yaml')
        config = load_stack_config()
        assert config.source is None
        assert 'built-in defaults' in caplog.text

    def test_invalid_yaml(self, tmp_path):
        f = tmp_path / 'bad.yaml'
        f.write_text("stack: [unclosed\n")
        with pytest.raises(ConfigurationError, match='Invalid YAML'):
            load_stack_config(f)

    def test_top_level_must_be_mapping(self, tmp_path):
        f = tmp_path / 'list.yaml'
        f.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match='mapping'):
            load_stack_config(f)

