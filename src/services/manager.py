"""Process/service manager abstraction.

The orchestrator talks to a ProcessManager; SystemdManager is the
implementation for hosts supervised by systemd. Action failures raise
DependencyError naming the unit; status queries never raise.
"""

import logging
from typing import Protocol

from common import run_command
from errors import DependencyError

logger = logging.getLogger(__name__)


class ProcessManager(Protocol):
    """Start/stop/query services by unit name."""

    def start(self, unit: str) -> None:
        ...

    def stop(self, unit: str) -> None:
        ...

    def force_stop(self, unit: str) -> None:
        ...

    def is_active(self, unit: str) -> bool:
        ...

    def is_installed(self, unit: str) -> bool:
        ...

    def reload_units(self) -> None:
        ...


class SystemdManager:
    """ProcessManager backed by systemctl."""

    def __init__(self, use_sudo: bool = True, timeout: int = 120):
        self.use_sudo = use_sudo
        self.timeout = timeout

    def _systemctl(self, *args: str) -> list[str]:
        cmd = ['systemctl', *args]
        return ['sudo', *cmd] if self.use_sudo else cmd

    def _action(self, verb: str, unit: str, *extra: str) -> None:
        cmd = self._systemctl(*extra, verb, unit) if extra else self._systemctl(verb, unit)
        rc, out, err = run_command(cmd, timeout=self.timeout)
        if rc != 0:
            detail = (err or out).strip() or f"exit code {rc}"
            raise DependencyError(f"systemctl {verb} {unit} failed: {detail}", component=unit)
        logger.debug(f"systemctl {verb} {unit} ok")

    def start(self, unit: str) -> None:
        self._action('start', unit)

    def stop(self, unit: str) -> None:
        self._action('stop', unit)

    def force_stop(self, unit: str) -> None:
        cmd = self._systemctl('kill', '-s', 'SIGKILL', unit)
        rc, out, err = run_command(cmd, timeout=self.timeout)
        if rc != 0:
            detail = (err or out).strip() or f"exit code {rc}"
            raise DependencyError(f"systemctl kill {unit} failed: {detail}", component=unit)
        logger.debug(f"systemctl kill -s SIGKILL {unit} ok")

    def is_active(self, unit: str) -> bool:
        rc, _, _ = run_command(['systemctl', 'is-active', '--quiet', unit], timeout=30)
        return rc == 0

    def is_installed(self, unit: str) -> bool:
        name = unit if '.' in unit else f'{unit}.service'
        rc, out, _ = run_command(
            ['systemctl', 'list-unit-files', '--no-legend', name], timeout=30)
        return rc == 0 and name in out

    def reload_units(self) -> None:
        rc, out, err = run_command(self._systemctl('daemon-reload'), timeout=self.timeout)
        if rc != 0:
            raise DependencyError(f"systemctl daemon-reload failed: {(err or out).strip()}")
