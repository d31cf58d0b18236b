"""Health probes.

A probe answers "is this service ready to serve?" with a single,
side-effect-free check bounded by its own short timeout. Probes never
raise for an unhealthy service; they return False and log the reason at
debug level. Retrying until a deadline is the orchestrator's job.
"""

import logging
import socket
from typing import Optional, Protocol

import requests

from common import run_command

logger = logging.getLogger(__name__)


class HealthProbe(Protocol):
    """Readiness check for one service."""

    def check(self) -> bool:
        ...


class TcpProbe:
    """Ready when a TCP connection to host:port succeeds."""

    def __init__(self, host: str, port: int, timeout: float = 5):
        self.host = host
        self.port = port
        self.timeout = timeout

    def check(self) -> bool:
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout):
                return True
        except OSError as e:
            logger.debug(f"TCP probe {self.host}:{self.port} failed: {e}")
            return False

    def __repr__(self) -> str:
        return f"TcpProbe({self.host}:{self.port})"


class HttpProbe:
    """Ready when a GET returns one of the expected status codes."""

    def __init__(self, url: str, timeout: float = 5, headers: Optional[dict] = None,
                 expect_status: tuple = (200,)):
        self.url = url
        self.timeout = timeout
        self.headers = headers or {}
        self.expect_status = expect_status

    def check(self) -> bool:
        try:
            resp = requests.get(self.url, headers=self.headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.debug(f"HTTP probe {self.url} failed: {e}")
            return False
        if resp.status_code not in self.expect_status:
            logger.debug(f"HTTP probe {self.url} returned {resp.status_code}")
            return False
        return True

    def __repr__(self) -> str:
        return f"HttpProbe({self.url})"


class CommandProbe:
    """Ready when a command exits 0 (e.g. pg_isready)."""

    def __init__(self, cmd: list[str], timeout: float = 5):
        self.cmd = cmd
        self.timeout = timeout

    def check(self) -> bool:
        rc, _, err = run_command(self.cmd, timeout=int(max(1, self.timeout)))
        if rc != 0:
            logger.debug(f"Command probe {' '.join(self.cmd)} returned {rc}: {err.strip()}")
        return rc == 0

    def __repr__(self) -> str:
        return f"CommandProbe({' '.join(self.cmd)})"
