"""Stack configuration management.

Configuration is loaded once per run from a YAML file and passed explicitly
to every component. Sections:
- stack: install home, service user/group, sudo usage
- database / search / broker / transform / tomcat / proxy: endpoints
- timeouts: poll interval, probe timeout, stop timeout, restart settle and
  pre-stop drain delays, per-service start timeouts
- memory.overrides: per-allocation MB overrides (see memory_profile)
- backup: default output dir, name prefix, retention days, config allow-list

Resolution order for the config file:
1. --config path given on the command line
2. $STACKCTL_CONFIG environment variable
3. config/stack.yaml next to the source tree (dev workspace)
4. /etc/stackctl/stack.yaml
5. built-in defaults (with a warning)

Legacy memory override environment variables (TOMCAT_XMX_MB etc.) are read
here, once, and merged over memory.overrides from the file.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from errors import ConfigurationError

logger = logging.getLogger(__name__)

# Legacy env var -> memory allocation key
MEMORY_ENV_OVERRIDES = {
    'TOMCAT_XMS_MB': 'tomcat_xms',
    'TOMCAT_XMX_MB': 'tomcat_xmx',
    'SOLR_HEAP_MB': 'solr',
    'TRANSFORM_HEAP_MB': 'transform',
    'ACTIVEMQ_HEAP_MB': 'activemq',
    'POSTGRES_SHARED_BUFFERS_MB': 'postgres_shared_buffers',
    'POSTGRES_EFFECTIVE_CACHE_MB': 'postgres_effective_cache',
}

DEFAULT_START_TIMEOUTS = {
    'postgresql': 60,
    'activemq': 90,
    'transform': 120,
    'tomcat': 300,
    'solr': 180,
    'nginx': 30,
}

# Relative paths are resolved against the stack home
DEFAULT_CONFIG_PATHS = [
    'tomcat/shared/classes/alfresco-global.properties',
    'tomcat/shared/classes/alfresco',
    'tomcat/conf/server.xml',
    'tomcat/conf/catalina.properties',
    'tomcat/bin/setenv.sh',
    'alfresco-search-services/solrhome/conf',
    'alfresco-search-services/solr.in.sh',
    'activemq/conf',
    'transform/application.properties',
    'keystore',
    '/etc/nginx/sites-available/alfresco',
    '/etc/systemd/system/tomcat.service',
    '/etc/systemd/system/solr.service',
    '/etc/systemd/system/activemq.service',
    '/etc/systemd/system/transform.service',
]

LOCAL_HOSTS = ('localhost', '127.0.0.1', '::1')

SYSTEM_CONFIG = Path('/etc/stackctl/stack.yaml')


@dataclass
class StackConfig:
    """Configuration for one stack installation."""
    home: Path = field(default_factory=lambda: Path('/opt/alfresco'))
    user: str = 'alfresco'
    group: str = 'alfresco'
    use_sudo: bool = True
    config_dir: Optional[Path] = None

    # Database
    db_host: str = 'localhost'
    db_port: int = 5432
    db_name: str = 'alfresco'
    db_user: str = 'alfresco'
    db_admin_user: str = 'postgres'

    # Search index
    solr_host: str = 'localhost'
    solr_port: int = 8983
    solr_secret: str = ''
    solr_cores: list = field(default_factory=lambda: ['alfresco', 'archive'])

    # Broker, transform, application server, proxy
    activemq_host: str = 'localhost'
    activemq_port: int = 61616
    transform_port: int = 8090
    tomcat_port: int = 8080
    nginx_port: int = 80

    # Timeouts (seconds)
    poll_interval: float = 2
    probe_timeout: float = 5
    stop_timeout: float = 60
    settle_delay: float = 5
    drain_delay: float = 2
    start_timeouts: dict = field(default_factory=lambda: dict(DEFAULT_START_TIMEOUTS))

    memory_overrides: dict = field(default_factory=dict)

    # Backup defaults
    backup_output_dir: Optional[Path] = None
    backup_name: str = 'alfresco-backup'
    backup_keep_days: int = 30
    config_paths: list = field(default_factory=lambda: list(DEFAULT_CONFIG_PATHS))

    source: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.home, str):
            self.home = Path(self.home)
        if isinstance(self.config_dir, str):
            self.config_dir = Path(self.config_dir)
        if isinstance(self.backup_output_dir, str):
            self.backup_output_dir = Path(self.backup_output_dir)
        if self.backup_output_dir is None:
            self.backup_output_dir = self.home / 'backups'

    @property
    def content_store_dir(self) -> Path:
        return self.home / 'alf_data'

    @property
    def search_index_dir(self) -> Path:
        return self.home / 'alfresco-search-services' / 'solrhome'

    @property
    def is_local_db(self) -> bool:
        return self.db_host in LOCAL_HOSTS

    def start_timeout(self, service: str) -> float:
        return float(self.start_timeouts.get(service, 60))

    def resolved_config_paths(self) -> list[Path]:
        """Config allow-list as absolute paths."""
        paths = []
        for entry in self.config_paths:
            p = Path(entry)
            paths.append(p if p.is_absolute() else self.home / p)
        if self.config_dir:
            paths.append(self.config_dir / 'alfresco.env')
            paths.append(self.config_dir / 'versions.conf')
        return paths


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: top level must be a mapping")
    return data


def get_base_dir() -> Path:
    """Get the project directory."""
    return Path(__file__).parent.parent  # src/ -> project/


def find_config_file(explicit: Optional[Path] = None) -> Optional[Path]:
    """Discover the stack config file.

    Returns None when no file is found (built-in defaults apply).
    """
    if explicit is not None:
        path = Path(explicit)
        if not path.exists():
            raise ConfigurationError(f"Config file {path} does not exist")
        return path

    if env_path := os.environ.get('STACKCTL_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigurationError(f"STACKCTL_CONFIG={env_path} does not exist")

    local = get_base_dir() / 'config' / 'stack.yaml'
    if local.exists():
        return local

    if SYSTEM_CONFIG.exists():
        return SYSTEM_CONFIG

    return None


def _int(value, key: str) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{key} must be an integer, got {value!r}") from e


def _positive(value, key: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{key} must be a number, got {value!r}") from e
    if number <= 0:
        raise ConfigurationError(f"{key} must be positive, got {value!r}")
    return number


def _section(data: dict, name: str) -> dict:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"'{name}' section must be a mapping")
    return section


def config_from_dict(data: dict, environ: Optional[dict] = None) -> StackConfig:
    """Build a StackConfig from parsed YAML data plus environment overrides."""
    environ = os.environ if environ is None else environ
    config = StackConfig()

    stack = _section(data, 'stack')
    if home := stack.get('home'):
        config.home = Path(home)
        config.backup_output_dir = config.home / 'backups'
    config.user = stack.get('user', config.user)
    config.group = stack.get('group', config.user if 'user' in stack else config.group)
    config.use_sudo = bool(stack.get('use_sudo', config.use_sudo))
    if config_dir := stack.get('config_dir'):
        config.config_dir = Path(config_dir)

    db = _section(data, 'database')
    config.db_host = db.get('host', config.db_host)
    config.db_port = _int(db.get('port', config.db_port), 'database.port')
    config.db_name = db.get('name', config.db_name)
    config.db_user = db.get('user', config.db_user)
    config.db_admin_user = db.get('admin_user', config.db_admin_user)

    search = _section(data, 'search')
    config.solr_host = search.get('host', config.solr_host)
    config.solr_port = _int(search.get('port', config.solr_port), 'search.port')
    config.solr_secret = search.get('secret', config.solr_secret) or ''
    config.solr_cores = list(search.get('cores', config.solr_cores))

    broker = _section(data, 'broker')
    config.activemq_host = broker.get('host', config.activemq_host)
    config.activemq_port = _int(broker.get('port', config.activemq_port), 'broker.port')
    config.transform_port = _int(_section(data, 'transform').get('port', config.transform_port),
                                 'transform.port')
    config.tomcat_port = _int(_section(data, 'tomcat').get('port', config.tomcat_port), 'tomcat.port')
    config.nginx_port = _int(_section(data, 'proxy').get('port', config.nginx_port), 'proxy.port')

    timeouts = _section(data, 'timeouts')
    for key in ('poll_interval', 'probe_timeout', 'settle_delay', 'drain_delay'):
        if key in timeouts:
            setattr(config, key, _positive(timeouts[key], f'timeouts.{key}'))
    if 'stop' in timeouts:
        config.stop_timeout = _positive(timeouts['stop'], 'timeouts.stop')
    start = timeouts.get('start') or {}
    if not isinstance(start, dict):
        raise ConfigurationError("'timeouts.start' must be a mapping of service -> seconds")
    for service, seconds in start.items():
        config.start_timeouts[service] = _positive(seconds, f'timeouts.start.{service}')

    memory = _section(data, 'memory')
    overrides = memory.get('overrides') or {}
    if not isinstance(overrides, dict):
        raise ConfigurationError("'memory.overrides' must be a mapping")
    config.memory_overrides = dict(overrides)
    for env_name, key in MEMORY_ENV_OVERRIDES.items():
        if value := environ.get(env_name):
            config.memory_overrides[key] = _int(value, env_name)

    backup = _section(data, 'backup')
    if output_dir := backup.get('output_dir'):
        config.backup_output_dir = Path(output_dir)
    config.backup_name = backup.get('name', config.backup_name)
    config.backup_keep_days = _int(backup.get('keep_days', config.backup_keep_days), 'backup.keep_days')
    if 'config_paths' in backup:
        paths = backup['config_paths']
        if not isinstance(paths, list):
            raise ConfigurationError("'backup.config_paths' must be a list")
        config.config_paths = [str(p) for p in paths]

    return config


def load_stack_config(path: Optional[Path] = None) -> StackConfig:
    """Load stack configuration.

    Args:
        path: Explicit config file (from --config). Discovered if None.

    Raises:
        ConfigurationError: If an explicit file is missing or values are invalid
    """
    config_file = find_config_file(path)
    if config_file is None:
        logger.warning("No stack config found, using built-in defaults")
        config = config_from_dict({})
    else:
        logger.debug(f"Loading stack config from {config_file}")
        config = config_from_dict(_parse_yaml(config_file))
        config.source = config_file
    return config
