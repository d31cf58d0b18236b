"""Dependency graph over service descriptors.

Computes a deterministic start order (dependencies first) and the exact
reverse for stopping. Ties between independent services are broken by the
registry's declaration order, so the same table always yields the same
order.
"""

import logging
from collections import deque

from errors import ConfigurationError

logger = logging.getLogger(__name__)


class ServiceGraph:
    """Execution graph built from a list of ServiceDescriptors.

    Provides ordered traversal for lifecycle operations:
    - start_order(): dependencies before dependents (Kahn's algorithm)
    - stop_order(): dependents before dependencies (reverse of start_order)
    """

    def __init__(self, descriptors: list):
        """Build the graph.

        Raises:
            ConfigurationError: Duplicate name, unknown dependency or cycle
        """
        self._descriptors = {}
        self._position = {}
        for index, desc in enumerate(descriptors):
            if desc.name in self._descriptors:
                raise ConfigurationError(f"Duplicate service '{desc.name}'", component=desc.name)
            self._descriptors[desc.name] = desc
            self._position[desc.name] = index

        for desc in descriptors:
            for dep in desc.depends_on:
                if dep not in self._descriptors:
                    raise ConfigurationError(
                        f"Service '{desc.name}' depends on unknown service '{dep}'",
                        component=desc.name,
                    )

        self._order = self._topological_order()
        logger.debug(f"Start order: {' -> '.join(self._order)}")

    def _topological_order(self) -> list[str]:
        indegree = {name: len(d.depends_on) for name, d in self._descriptors.items()}
        dependents: dict[str, list[str]] = {name: [] for name in self._descriptors}
        for name, desc in self._descriptors.items():
            for dep in desc.depends_on:
                dependents[dep].append(name)

        ready = deque(sorted((n for n, deg in indegree.items() if deg == 0),
                             key=self._position.__getitem__))
        ordered: list[str] = []
        while ready:
            name = ready.popleft()
            ordered.append(name)
            released = []
            for child in dependents[name]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    released.append(child)
            # Merge released services keeping declaration order among all ready ones
            ready = deque(sorted(list(ready) + released, key=self._position.__getitem__))

        if len(ordered) != len(self._descriptors):
            cyclic = sorted(set(self._descriptors) - set(ordered), key=self._position.__getitem__)
            raise ConfigurationError(f"Dependency cycle between services: {', '.join(cyclic)}")
        return ordered

    def get(self, name: str):
        """Get a descriptor by name.

        Raises:
            ConfigurationError: If the service is unknown
        """
        try:
            return self._descriptors[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown service '{name}'. Available: {', '.join(self._order)}"
            ) from None

    def start_order(self) -> list:
        return [self._descriptors[name] for name in self._order]

    def stop_order(self) -> list:
        return list(reversed(self.start_order()))

    def names(self) -> list[str]:
        return list(self._order)
