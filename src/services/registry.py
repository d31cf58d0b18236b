"""Service descriptor registry.

Each managed service is described once by a typed ServiceDescriptor. The
default table for the stack is built from StackConfig by build_registry();
tests and alternative deployments can pass their own list to the
orchestrator.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import requests

from common import run_command
from config import StackConfig
from services.probes import CommandProbe, HealthProbe, HttpProbe, TcpProbe

logger = logging.getLogger(__name__)

# Services holding data that must be quiesced for a consistent cold backup
STATEFUL_SERVICES = ('postgresql', 'tomcat', 'solr')


@dataclass(frozen=True)
class ServiceDescriptor:
    """Static description of one service.

    Attributes:
        name: Short service name used on the command line
        display_name: Name used in tables and logs
        unit: Unit name for the process manager
        depends_on: Names of services that must be running first
        probe: Health probe confirming readiness
        start_timeout: Seconds to wait for the probe after starting
        stop_timeout: Seconds to wait for the process to exit
        start_action/stop_action/force_stop_action: Override the process
            manager call for this unit (None uses the manager)
        pre_stop: Optional hook run before a graceful stop
        stateful: Holds data that backups capture
        managed: False when the service runs elsewhere (e.g. remote DB)
    """
    name: str
    unit: str
    probe: HealthProbe
    depends_on: tuple = ()
    display_name: str = ''
    start_timeout: float = 60
    stop_timeout: float = 60
    start_action: Optional[Callable[[], None]] = field(default=None, compare=False)
    stop_action: Optional[Callable[[], None]] = field(default=None, compare=False)
    force_stop_action: Optional[Callable[[], None]] = field(default=None, compare=False)
    pre_stop: Optional[Callable[[], None]] = field(default=None, compare=False)
    stateful: bool = False
    managed: bool = True

    @property
    def label(self) -> str:
        return self.display_name or self.name


def _solr_commit_hook(config: StackConfig) -> Callable[[], None]:
    """Flush pending index changes before stopping the search service."""
    def commit() -> None:
        url = f"http://{config.solr_host}:{config.solr_port}/solr/alfresco/update?commit=true"
        headers = {'X-Alfresco-Search-Secret': config.solr_secret} if config.solr_secret else {}
        try:
            resp = requests.get(url, headers=headers, timeout=config.probe_timeout * 6)
            logger.info(f"Solr commit returned {resp.status_code}")
        except requests.exceptions.RequestException as e:
            logger.warning(f"Solr commit failed (continuing with stop): {e}")
    return commit


def _drain_hook(message: str, delay: float) -> Callable[[], None]:
    """Give in-flight work a moment to finish before a graceful stop."""
    def drain() -> None:
        logger.info(message)
        time.sleep(delay)
    return drain


def _notice_hook(message: str) -> Callable[[], None]:
    def notice() -> None:
        logger.info(message)
    return notice


def _postgres_connections_hook(config: StackConfig) -> Callable[[], None]:
    """Report active database connections before stopping PostgreSQL."""
    def report() -> None:
        sql = f"SELECT count(*) FROM pg_stat_activity WHERE datname = '{config.db_name}';"
        cmd = ['psql', '-tAc', sql]
        if config.use_sudo:
            cmd = ['sudo', '-u', config.db_admin_user] + cmd
        rc, out, _ = run_command(cmd, timeout=30)
        if rc == 0 and out.strip():
            logger.info(f"PostgreSQL has {out.strip()} active connection(s) to {config.db_name}")
    return report


def build_registry(config: StackConfig) -> list[ServiceDescriptor]:
    """Build the default descriptor table, in declaration order."""
    pt = config.probe_timeout
    solr_headers = {'X-Alfresco-Search-Secret': config.solr_secret} if config.solr_secret else {}

    return [
        ServiceDescriptor(
            name='postgresql',
            display_name='PostgreSQL',
            unit='postgresql',
            probe=CommandProbe(
                ['pg_isready', '-h', config.db_host, '-p', str(config.db_port), '-q'], timeout=pt),
            start_timeout=config.start_timeout('postgresql'),
            stop_timeout=config.stop_timeout,
            pre_stop=_postgres_connections_hook(config),
            stateful=True,
            managed=config.is_local_db,
        ),
        ServiceDescriptor(
            name='activemq',
            display_name='ActiveMQ',
            unit='activemq',
            probe=TcpProbe(config.activemq_host, config.activemq_port, timeout=pt),
            start_timeout=config.start_timeout('activemq'),
            stop_timeout=config.stop_timeout,
            pre_stop=_drain_hook("ActiveMQ will drain pending messages...", config.drain_delay),
        ),
        ServiceDescriptor(
            name='transform',
            display_name='Transform Service',
            unit='transform',
            depends_on=('activemq',),
            probe=HttpProbe(f"http://localhost:{config.transform_port}/ready", timeout=pt),
            start_timeout=config.start_timeout('transform'),
            stop_timeout=config.stop_timeout,
        ),
        ServiceDescriptor(
            name='tomcat',
            display_name='Tomcat (Alfresco)',
            unit='tomcat',
            depends_on=('postgresql', 'activemq', 'transform'),
            probe=HttpProbe(
                f"http://localhost:{config.tomcat_port}"
                "/alfresco/api/-default-/public/alfresco/versions/1/probes/-ready-",
                timeout=pt),
            start_timeout=config.start_timeout('tomcat'),
            stop_timeout=config.stop_timeout,
            pre_stop=_drain_hook("Waiting for Alfresco to complete pending operations...",
                                 config.drain_delay),
            stateful=True,
        ),
        ServiceDescriptor(
            name='solr',
            display_name='Solr',
            unit='solr',
            depends_on=('tomcat',),
            probe=HttpProbe(
                f"http://{config.solr_host}:{config.solr_port}/solr/admin/cores?action=STATUS",
                timeout=pt, headers=solr_headers),
            start_timeout=config.start_timeout('solr'),
            stop_timeout=config.stop_timeout,
            pre_stop=_solr_commit_hook(config),
            stateful=True,
        ),
        ServiceDescriptor(
            name='nginx',
            display_name='Nginx',
            unit='nginx',
            depends_on=('tomcat',),
            probe=TcpProbe('localhost', config.nginx_port, timeout=pt),
            start_timeout=config.start_timeout('nginx'),
            stop_timeout=config.stop_timeout,
            pre_stop=_notice_hook("Nginx will stop accepting new connections..."),
        ),
    ]
