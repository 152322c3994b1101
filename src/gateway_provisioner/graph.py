"""Resource graph: nodes, edges and dependency ordering.

A ResourceGraph is an ordered DAG of ResourceNodes. Declaration order is
kept so topological sorting can break ties deterministically:

1. Graph construction with duplicate-id detection
2. Validation (unknown dependencies, dangling references, cycles)
3. Topological sorting for execution order
4. Ready-set computation for wave execution
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import CyclicDependencyError, DuplicateResourceError, UnknownDependencyError

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    """Kinds of cloud resources the provisioner can create."""

    ROLE = "role"
    FUNCTION = "function"
    API = "api"
    PATH_RESOURCE = "path-resource"
    METHOD = "method"
    INTEGRATION = "integration"
    METHOD_RESPONSE = "method-response"
    DEPLOYMENT = "deployment"
    PERMISSION = "permission"


@dataclass(frozen=True)
class Ref:
    """Placeholder for the external identifier of another node."""

    logical_id: str


@dataclass(frozen=True)
class ResourceNode:
    """A single resource to create."""

    logical_id: str
    kind: ResourceKind
    depends_on: tuple[str, ...] = ()
    params: Mapping[str, Any] = field(default_factory=dict)

    @property
    def lookup_name(self) -> str | None:
        """Name used for lookup-by-name, if the node declares one."""
        name = self.params.get("name")
        return name if isinstance(name, str) else None

    def references(self) -> set[str]:
        """Logical ids referenced from params via Ref."""
        return {value.logical_id for value in _iter_values(self.params) if isinstance(value, Ref)}

    def resolve_params(self, external_ids: Mapping[str, str]) -> dict[str, Any]:
        """Substitute every Ref with the external id of the referenced node.

        Args:
            external_ids: Map of logical id to resolved external identifier.

        Returns:
            New params mapping with all references replaced.

        Raises:
            UnknownDependencyError: If a referenced id is not resolved yet.
        """

        def resolve(value: Any) -> Any:
            if isinstance(value, Ref):
                if value.logical_id not in external_ids:
                    raise UnknownDependencyError(
                        f"Node '{self.logical_id}' references unresolved node '{value.logical_id}'"
                    )
                return external_ids[value.logical_id]
            if isinstance(value, Mapping):
                return {k: resolve(v) for k, v in value.items()}
            if isinstance(value, list | tuple):
                return [resolve(v) for v in value]
            return value

        return {key: resolve(value) for key, value in self.params.items()}


def _iter_values(value: Any) -> list[Any]:
    if isinstance(value, Mapping):
        return [leaf for v in value.values() for leaf in _iter_values(v)]
    if isinstance(value, list | tuple):
        return [leaf for v in value for leaf in _iter_values(v)]
    return [value]


@dataclass
class ResourceGraph:
    """Directed acyclic graph of resource nodes in declaration order."""

    nodes: dict[str, ResourceNode] = field(default_factory=dict)

    def add_node(self, node: ResourceNode) -> None:
        """Add a node to the graph.

        Raises:
            DuplicateResourceError: If the logical id is already declared.
        """
        if node.logical_id in self.nodes:
            raise DuplicateResourceError(f"Logical id declared twice: '{node.logical_id}'")
        self.nodes[node.logical_id] = node

    def get(self, logical_id: str) -> ResourceNode:
        return self.nodes[logical_id]

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self.nodes.values())

    def ancestors(self, logical_id: str) -> set[str]:
        """All transitive dependencies of a node."""
        seen: set[str] = set()
        stack = list(self.nodes[logical_id].depends_on)
        while stack:
            current = stack.pop()
            if current in seen or current not in self.nodes:
                continue
            seen.add(current)
            stack.extend(self.nodes[current].depends_on)
        return seen

    def validate(self) -> None:
        """Validate edges, references and acyclicity.

        Raises:
            UnknownDependencyError: If a dependency or Ref names an unknown node,
                or a Ref points outside the node's ancestors.
            CyclicDependencyError: If a cycle is detected.
        """
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep not in self.nodes:
                    raise UnknownDependencyError(
                        f"Node '{node.logical_id}' depends on unknown node '{dep}'"
                    )

        # Kahn's algorithm, only for detection here
        in_degree = {lid: len(set(node.depends_on)) for lid, node in self.nodes.items()}
        dependents = self._dependents()
        queue = [lid for lid, degree in in_degree.items() if degree == 0]
        processed = 0

        while queue:
            current = queue.pop(0)
            processed += 1
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if processed != len(self.nodes):
            cycle_nodes = [lid for lid, degree in in_degree.items() if degree > 0]
            raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")

        # References must point at something guaranteed to be resolved first
        for node in self.nodes.values():
            missing = node.references() - self.ancestors(node.logical_id)
            if missing:
                raise UnknownDependencyError(
                    f"Node '{node.logical_id}' references non-ancestor nodes: {sorted(missing)}"
                )

    def topological_sort(self) -> list[str]:
        """Return logical ids in dependency order (dependencies first).

        Among nodes that become ready at the same time, the one declared
        first wins, so the order is stable for a given graph.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        position = {lid: index for index, lid in enumerate(self.nodes)}
        in_degree = {lid: len(set(node.depends_on)) for lid, node in self.nodes.items()}
        dependents = self._dependents()

        result: list[str] = []
        queue = [lid for lid, degree in in_degree.items() if degree == 0]

        while queue:
            queue.sort(key=position.__getitem__)
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def get_ready_nodes(self, satisfied: set[str], started: set[str] | None = None) -> list[str]:
        """Get nodes whose dependencies are all satisfied.

        Args:
            satisfied: Logical ids already created or skipped.
            started: Logical ids already in flight or finished, excluded.

        Returns:
            Ready logical ids in declaration order.
        """
        excluded = satisfied | (started or set())
        return [
            lid
            for lid, node in self.nodes.items()
            if lid not in excluded and all(dep in satisfied for dep in node.depends_on)
        ]

    def _dependents(self) -> dict[str, list[str]]:
        dependents: dict[str, list[str]] = {lid: [] for lid in self.nodes}
        for node in self.nodes.values():
            for dep in set(node.depends_on):
                if dep in dependents:
                    dependents[dep].append(node.logical_id)
        return dependents
