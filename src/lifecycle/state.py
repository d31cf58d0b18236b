"""Lifecycle state tracking.

Tracks per-service status for one start/stop/restart run and renders the
status table printed at the end of every lifecycle command. Nothing is
persisted; the next run derives status from the process manager again.
"""

import time
from dataclasses import dataclass
from typing import Any, Optional

# Per-service states
STOPPED = 'stopped'
STARTING = 'starting'
HEALTH_CHECKING = 'health_checking'
RUNNING = 'running'
STOPPING = 'stopping'
FAILED = 'failed'

# Stop outcomes beyond the state machine
FORCED = 'forced'
SKIPPED = 'skipped'

TRANSITIONS = {
    STOPPED: {STARTING, STOPPING, RUNNING, SKIPPED},
    STARTING: {HEALTH_CHECKING, RUNNING, FAILED},
    HEALTH_CHECKING: {RUNNING, FAILED},
    RUNNING: {STOPPING, RUNNING},
    STOPPING: {STOPPED, FORCED, FAILED},
    FAILED: {STARTING, STOPPING},
    FORCED: {STARTING},
    SKIPPED: set(),
}


@dataclass
class ServiceState:
    """Per-service state for one run.

    Attributes:
        name: Service name
        status: One of the state constants above
        message: Human readable detail (e.g. "already stopped")
        started_at: When the current action began
        completed_at: When it finished
        attempts: Probe attempts used by the last wait
    """
    name: str
    status: str = STOPPED
    message: str = ''
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    attempts: int = 0

    def transition(self, status: str, message: str = '') -> None:
        """Move to a new status.

        Raises:
            ValueError: On a transition the state machine does not allow
        """
        if status not in TRANSITIONS.get(self.status, set()):
            raise ValueError(f"{self.name}: invalid transition {self.status} -> {status}")
        if status in (STARTING, STOPPING):
            self.started_at = time.time()
            self.completed_at = None
        if status in (RUNNING, STOPPED, FORCED, FAILED, SKIPPED):
            self.completed_at = time.time()
        self.status = status
        if message:
            self.message = message

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'status': self.status,
        }
        if self.message:
            d['message'] = self.message
        if self.duration is not None:
            d['duration'] = round(self.duration, 2)
        if self.attempts:
            d['attempts'] = self.attempts
        return d


class StackState:
    """Status of every service touched by one lifecycle run."""

    def __init__(self, operation: str):
        self.operation = operation
        self._services: dict[str, ServiceState] = {}
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None

    def add_service(self, name: str, status: str = STOPPED) -> ServiceState:
        state = ServiceState(name=name, status=status)
        self._services[name] = state
        return state

    def get_service(self, name: str) -> ServiceState:
        """Get service state by name.

        Raises:
            KeyError: If service not registered
        """
        return self._services[name]

    @property
    def services(self) -> dict[str, ServiceState]:
        return dict(self._services)

    def start(self) -> None:
        self.started_at = time.time()

    def finish(self) -> None:
        self.completed_at = time.time()

    def failed(self) -> list[str]:
        return [name for name, s in self._services.items() if s.status == FAILED]

    def format_table(self) -> str:
        """Render the per-service status table."""
        width = max([len(n) for n in self._services] + [7])
        lines = [
            f"  {'SERVICE':<{width}}  {'STATUS':<15} DETAIL",
            f"  {'-' * width}  {'-' * 15} {'-' * 30}",
        ]
        for name, s in self._services.items():
            lines.append(f"  {name:<{width}}  {s.status:<15} {s.message}")
        return '\n'.join(lines)

    def to_dict(self) -> dict:
        return {
            'operation': self.operation,
            'success': not self.failed(),
            'services': [s.to_dict() for s in self._services.values()],
        }
