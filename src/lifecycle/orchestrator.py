"""Lifecycle orchestrator.

Starts services in dependency order, waiting for each one's health probe
before moving on, and stops them in the exact reverse order. Start is
fail-fast: the first service that cannot start or become healthy aborts
the sequence. Stop never aborts: every service gets an attempt and the
result is a per-service status table.
"""

import logging
import time
from typing import Optional

from common import poll_until
from errors import DependencyError, OperationTimeoutError
from lifecycle.state import (
    FAILED, FORCED, HEALTH_CHECKING, RUNNING, SKIPPED, STARTING, STOPPED, STOPPING,
    StackState,
)
from services.graph import ServiceGraph
from services.manager import ProcessManager
from services.registry import ServiceDescriptor

logger = logging.getLogger(__name__)

# Grace period for a killed process to disappear
FORCE_GRACE_SECONDS = 10


class LifecycleOrchestrator:
    """Dependency-ordered start/stop/restart over a descriptor table."""

    def __init__(
        self,
        descriptors: list[ServiceDescriptor],
        manager: ProcessManager,
        poll_interval: float = 2,
        settle_delay: float = 5,
    ):
        """Build the orchestrator and compute the service order once.

        Raises:
            ConfigurationError: Unknown dependency or dependency cycle
        """
        self.graph = ServiceGraph(descriptors)
        self.manager = manager
        self.poll_interval = poll_interval
        self.settle_delay = settle_delay

    @classmethod
    def from_config(cls, config, manager: Optional[ProcessManager] = None) -> 'LifecycleOrchestrator':
        """Build with the default registry and a systemd manager."""
        from services.manager import SystemdManager
        from services.registry import build_registry
        return cls(
            build_registry(config),
            manager or SystemdManager(use_sudo=config.use_sudo),
            poll_interval=config.poll_interval,
            settle_delay=config.settle_delay,
        )

    def _select(self, ordered: list[ServiceDescriptor], services: Optional[list[str]]) -> list:
        if not services:
            return ordered
        wanted = {self.graph.get(name).name for name in services}
        return [d for d in ordered if d.name in wanted]

    def start_order(self) -> list[str]:
        return self.graph.names()

    def stop_order(self) -> list[str]:
        return list(reversed(self.graph.names()))

    def is_active(self, name: str) -> bool:
        desc = self.graph.get(name)
        return desc.managed and self.manager.is_active(desc.unit)

    def running_services(self, names: Optional[list[str]] = None) -> list[str]:
        """Managed services currently active, in start order."""
        return [d.name for d in self._select(self.graph.start_order(), names)
                if d.managed and self.manager.is_active(d.unit)]

    # -----------------------------------------------------------------
    # Start
    # -----------------------------------------------------------------

    def start(self, services: Optional[list[str]] = None, wait: bool = True) -> StackState:
        """Start services in dependency order.

        Args:
            services: Subset of service names (order still follows the graph)
            wait: Wait for each health probe before starting the next service

        Returns:
            StackState with every service running or skipped

        Raises:
            DependencyError: A start action failed (remaining services not attempted)
            OperationTimeoutError: A service never became healthy
        """
        state = StackState('start')
        state.start()
        for desc in self._select(self.graph.start_order(), services):
            svc = state.add_service(desc.name)

            if not desc.managed:
                svc.transition(SKIPPED, 'not managed on this host')
                logger.info(f"{desc.label}: not managed locally, skipping")
                continue

            if self.manager.is_active(desc.unit):
                svc.transition(RUNNING, 'already running')
                logger.info(f"{desc.label} is already running")
                continue

            logger.info(f"Starting {desc.label}...")
            svc.transition(STARTING)
            try:
                if desc.start_action is not None:
                    desc.start_action()
                else:
                    self.manager.start(desc.unit)
            except Exception as e:
                svc.transition(FAILED, f'start action failed: {e}')
                state.finish()
                err = DependencyError(f"Failed to start {desc.label}: {e}", component=desc.name)
                err.state = state
                raise err from e

            if not wait:
                svc.transition(RUNNING, 'started (health not verified)')
                continue

            svc.transition(HEALTH_CHECKING)
            ok, elapsed, attempts = poll_until(
                desc.probe.check,
                timeout=desc.start_timeout,
                interval=self.poll_interval,
                description=f"{desc.name} health",
            )
            svc.attempts = attempts
            if not ok:
                svc.transition(FAILED, f'not healthy after {elapsed:.0f}s ({attempts} probes)')
                logger.error(f"{desc.label} failed health check after {elapsed:.0f}s")
                state.finish()
                err = OperationTimeoutError(
                    f"{desc.label} did not become healthy within {desc.start_timeout:.0f}s "
                    f"(elapsed {elapsed:.0f}s)",
                    service=desc.name,
                    elapsed=elapsed,
                )
                err.state = state
                raise err

            svc.transition(RUNNING, f'healthy after {elapsed:.0f}s')
            logger.info(f"{desc.label} is running")

        state.finish()
        return state

    # -----------------------------------------------------------------
    # Stop
    # -----------------------------------------------------------------

    def _force(self, desc: ServiceDescriptor) -> None:
        if desc.force_stop_action is not None:
            desc.force_stop_action()
        else:
            self.manager.force_stop(desc.unit)

    def _wait_stopped(self, desc: ServiceDescriptor, timeout: float) -> tuple[bool, float, int]:
        return poll_until(
            lambda: not self.manager.is_active(desc.unit),
            timeout=timeout,
            interval=self.poll_interval,
            description=f"{desc.name} stop",
        )

    def _escalate(self, desc: ServiceDescriptor, svc) -> None:
        """Kill a service that did not stop gracefully; records forced or failed."""
        logger.warning(f"Force killing {desc.label}...")
        try:
            self._force(desc)
        except Exception as e:
            svc.transition(FAILED, f'force kill failed: {e}')
            logger.error(f"Failed to kill {desc.label}: {e}")
            return
        ok, _, _ = self._wait_stopped(desc, min(desc.stop_timeout, FORCE_GRACE_SECONDS))
        if ok:
            svc.transition(FORCED, 'force killed')
            logger.warning(f"{desc.label} force stopped")
        else:
            svc.transition(FAILED, 'still running after force kill')
            logger.error(f"{desc.label} still running after force kill")

    def stop(self, services: Optional[list[str]] = None, forced: bool = False,
             wait: bool = True) -> tuple[bool, StackState]:
        """Stop services in reverse dependency order.

        Never raises for a single service; every service gets an attempt.

        Returns:
            (success, state) where success means no service ended failed
        """
        state = StackState('stop')
        state.start()
        for desc in self._select(self.graph.stop_order(), services):
            if not desc.managed:
                state.add_service(desc.name).transition(SKIPPED, 'remote, not managed')
                logger.info(f"{desc.label}: remote, skipping")
                continue

            if not self.manager.is_installed(desc.unit):
                state.add_service(desc.name).transition(SKIPPED, 'not installed')
                logger.info(f"{desc.label}: not installed")
                continue

            if not self.manager.is_active(desc.unit):
                svc = state.add_service(desc.name, STOPPED)
                svc.message = 'already stopped'
                logger.info(f"{desc.label} is already stopped")
                continue

            svc = state.add_service(desc.name, RUNNING)
            svc.transition(STOPPING)
            logger.info(f"Stopping {desc.label}...")

            if desc.pre_stop is not None:
                try:
                    desc.pre_stop()
                except Exception as e:
                    logger.warning(f"{desc.label} pre-stop hook failed: {e}")

            try:
                if desc.stop_action is not None:
                    desc.stop_action()
                else:
                    self.manager.stop(desc.unit)
            except Exception as e:
                logger.error(f"Failed to stop {desc.label}: {e}")
                if forced:
                    self._escalate(desc, svc)
                else:
                    svc.transition(FAILED, f'stop action failed: {e}')
                continue

            if not wait:
                svc.transition(STOPPED, 'stop requested')
                continue

            ok, elapsed, attempts = self._wait_stopped(desc, desc.stop_timeout)
            svc.attempts = attempts
            if ok:
                svc.transition(STOPPED, f'stopped after {elapsed:.0f}s')
                logger.info(f"{desc.label} stopped")
            elif forced:
                logger.warning(f"{desc.label} did not stop within {desc.stop_timeout:.0f}s")
                self._escalate(desc, svc)
            else:
                svc.transition(FAILED, f'still running after {elapsed:.0f}s')
                logger.error(f"{desc.label} did not stop within {desc.stop_timeout:.0f}s "
                             "(use --force to kill)")

        state.finish()
        failed = state.failed()
        if failed:
            logger.error(f"Failed to stop: {', '.join(failed)}")
        return not failed, state

    # -----------------------------------------------------------------
    # Restart
    # -----------------------------------------------------------------

    def restart(self, forced: bool = False, wait: bool = True) -> StackState:
        """Stop everything, settle, then start everything.

        Raises:
            DependencyError: If any service failed to stop (start not attempted)
            DependencyError/OperationTimeoutError: From start()
        """
        success, stop_state = self.stop(forced=forced)
        if not success:
            err = DependencyError(
                f"Restart aborted, services failed to stop: {', '.join(stop_state.failed())}")
            err.state = stop_state
            raise err
        logger.info(f"Waiting {self.settle_delay:.0f}s before starting services...")
        time.sleep(self.settle_delay)
        return self.start(wait=wait)
