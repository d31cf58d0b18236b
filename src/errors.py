"""Error taxonomy for stack operations.

Every operation raises one of these so the CLI can report which component
failed and where its tool log lives:
- ConfigurationError: invalid config or service graph (before any side effect)
- DependencyError: missing tool or failed start/stop action
- OperationTimeoutError: a service did not become healthy/stopped in time
- ValidationError: bad backup path, missing required component, unsafe path
- DataMutationError: dump, copy, archive or restore step failed
- OperationCancelled: operator declined a confirmation prompt
"""

from pathlib import Path
from typing import Optional


class StackError(Exception):
    """Base error for stack operations."""

    def __init__(self, message: str, component: Optional[str] = None,
                 log_path: Optional[Path] = None):
        super().__init__(message)
        self.message = message
        self.component = component
        self.log_path = log_path
        # Partial status table or report attached by the raising operation
        self.state = None

    def describe(self) -> str:
        """Operator-facing one-line description."""
        text = self.message
        if self.component and self.component not in text:
            text = f"{self.component}: {text}"
        if self.log_path:
            text = f"{text} (see {self.log_path})"
        return text


class ConfigurationError(StackError):
    """Invalid configuration or service descriptor table."""


class DependencyError(StackError):
    """Required tool missing or a service action failed."""


class OperationTimeoutError(StackError, TimeoutError):
    """A service did not reach the expected state before its deadline."""

    def __init__(self, message: str, service: str, elapsed: float,
                 log_path: Optional[Path] = None):
        super().__init__(message, component=service, log_path=log_path)
        self.service = service
        self.elapsed = elapsed


class ValidationError(StackError):
    """Backup path, manifest or plan failed validation."""


class DataMutationError(StackError):
    """A step that reads or writes stack data failed."""


class OperationCancelled(StackError):
    """Operator declined a confirmation."""
