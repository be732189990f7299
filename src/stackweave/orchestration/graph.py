"""
Resource graph.

Nodes are units of desired state; edges point from a prerequisite to the node
that depends on it. Explicit edges come from ``depends_on`` declarations,
implicit edges from outputs (and secret references) embedded in a node's
desired state.
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Iterable, Iterator

from stackweave.core.errors import (
    CycleError,
    DuplicateNodeError,
    PermanentProviderError,
    StackweaveError,
    ValidationError,
)
from stackweave.orchestration.output import Output, all_outputs, unwrap
from stackweave.providers.base import PHYSICAL_ID_OUTPUT
from stackweave.resources import GATED_TYPES, ResourceType
from stackweave.secrets import SecretRef, secret_refs


def to_plain(value: Any) -> Any:
    if isinstance(value, SecretRef):
        return value.to_dict()
    return value


class NodeStatus(StrEnum):
    PENDING = "pending"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"


class EdgeKind(StrEnum):
    EXPLICIT = "explicit"  # declared ordering
    IMPLICIT = "implicit"  # value interpolation reference


@dataclass(frozen=True, order=True)
class DependencyEdge:
    """``to_node`` depends on ``from_node``."""

    from_node: str
    to_node: str
    kind: EdgeKind


@dataclass
class ResourceNode:
    """A typed unit of desired state."""

    id: str
    type: ResourceType
    desired_state: dict[str, Any] = field(default_factory=dict)
    depends_on: set[str] = field(default_factory=set)
    gate: dict[str, Any] | None = None
    physical_id: str = ""
    status: NodeStatus = NodeStatus.PENDING
    failure: StackweaveError | None = None
    outputs: dict[str, Output[Any]] = field(default_factory=dict, repr=False)

    @property
    def is_gated(self) -> bool:
        return self.gate is not None or self.type in GATED_TYPES

    def output(self, name: str) -> Output[Any]:
        """Future for one of this node's provider outputs (``"id"`` is the physical id)."""
        if name not in self.outputs:
            self.outputs[name] = Output({self.id}, label=f"{self.id}.{name}")
        return self.outputs[name]

    def referenced_nodes(self) -> set[str]:
        """Node ids whose outputs are embedded in the desired state."""
        referenced: set[str] = set()
        for output in all_outputs(self.desired_state):
            referenced |= output.resources
        referenced.discard(self.id)
        return referenced

    def referenced_secrets(self) -> set[str]:
        return {ref.secret_id for ref in secret_refs(self.desired_state)}

    def render(self, *, strict: bool = True, unknown: Any = None) -> dict[str, Any]:
        """Desired state with outputs replaced by values and secret refs as plain dicts."""
        return unwrap(self.desired_state, unknown=unknown, strict=strict, convert=to_plain)

    def mark_applying(self) -> None:
        if self.status is not NodeStatus.PENDING:
            raise RuntimeError(f"{self.id} cannot start applying from {self.status}")
        self.status = NodeStatus.APPLYING

    def mark_applied(self, physical_id: str, outputs: dict[str, Any]) -> None:
        if not physical_id:
            raise RuntimeError(f"{self.id} cannot be applied without a physical id")
        self.physical_id = physical_id
        self.status = NodeStatus.APPLIED
        self.settle_outputs(physical_id, outputs)

    def mark_failed(self, error: StackweaveError) -> None:
        self.status = NodeStatus.FAILED
        self.failure = error
        for output in self.outputs.values():
            output.fail(error)

    def settle_outputs(self, physical_id: str, outputs: dict[str, Any]) -> None:
        for name, output in self.outputs.items():
            if name == PHYSICAL_ID_OUTPUT:
                output.resolve(physical_id)
            elif name in outputs:
                output.resolve(outputs[name])
            else:
                output.fail(
                    PermanentProviderError(
                        f"{self.id} did not produce output '{name}'",
                        {"node_id": self.id, "output": name},
                    )
                )


class ResourceGraph:
    """Nodes plus dependency edges; validates acyclicity and orders nodes."""

    def __init__(self) -> None:
        self._nodes: dict[str, ResourceNode] = {}
        self._edges: set[DependencyEdge] = set()

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self._nodes[node_id] for node_id in sorted(self._nodes))

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def edges(self) -> list[DependencyEdge]:
        return sorted(self._edges)

    def node(self, node_id: str) -> ResourceNode:
        return self._nodes[node_id]

    def add_node(self, node: ResourceNode) -> ResourceNode:
        if node.id in self._nodes:
            raise DuplicateNodeError(node.id)
        self._nodes[node.id] = node
        return node

    def add_edge(self, from_node: str, to_node: str, kind: EdgeKind = EdgeKind.EXPLICIT) -> None:
        """Record that ``to_node`` depends on ``from_node``."""
        if from_node == to_node:
            raise CycleError([to_node, to_node])
        self._edges.add(DependencyEdge(from_node, to_node, kind))

    def add_declared_edges(self) -> None:
        """Derive explicit and implicit edges from every node's declaration."""
        secret_nodes = self.secret_index()
        for node in self._nodes.values():
            for dependency in node.depends_on:
                self.add_edge(dependency, node.id, EdgeKind.EXPLICIT)
            for dependency in node.referenced_nodes():
                self.add_edge(dependency, node.id, EdgeKind.IMPLICIT)
            for secret_id in node.referenced_secrets():
                secret_node = secret_nodes.get(secret_id)
                if secret_node is not None and secret_node != node.id:
                    self.add_edge(secret_node, node.id, EdgeKind.IMPLICIT)

    def secret_index(self) -> dict[str, str]:
        """Map declared secret ids to the node that manages them."""
        return {
            str(node.desired_state["secret_id"]): node.id
            for node in self._nodes.values()
            if node.type is ResourceType.SECRET and node.desired_state.get("secret_id")
        }

    def dependencies_of(self, node_id: str) -> set[str]:
        return {edge.from_node for edge in self._edges if edge.to_node == node_id}

    def dependents_of(self, node_id: str) -> set[str]:
        return {edge.to_node for edge in self._edges if edge.from_node == node_id}

    def transitive_dependents(self, node_id: str) -> set[str]:
        found: set[str] = set()
        stack = [node_id]
        while stack:
            for dependent in self.dependents_of(stack.pop()):
                if dependent not in found:
                    found.add(dependent)
                    stack.append(dependent)
        return found

    def secret_consumers(self, secret_id: str) -> set[str]:
        return {node.id for node in self._nodes.values() if secret_id in node.referenced_secrets()}

    def validate(self) -> None:
        """Fail on unknown edge endpoints or any dependency cycle."""
        for edge in self.edges:
            for endpoint in (edge.from_node, edge.to_node):
                if endpoint not in self._nodes:
                    raise ValidationError(
                        f"Unknown resource '{endpoint}' referenced by "
                        f"{edge.to_node if endpoint == edge.from_node else edge.from_node}",
                        {"node_id": endpoint},
                    )

        adjacency = {node_id: sorted(self.dependencies_of(node_id)) for node_id in self._nodes}
        done: set[str] = set()
        on_stack: dict[str, int] = {}
        path: list[str] = []

        def visit(node_id: str) -> None:
            on_stack[node_id] = len(path)
            path.append(node_id)
            for dependency in adjacency[node_id]:
                if dependency in on_stack:
                    raise CycleError(path[on_stack[dependency] :] + [dependency])
                if dependency not in done:
                    visit(dependency)
            path.pop()
            del on_stack[node_id]
            done.add(node_id)

        for node_id in sorted(self._nodes):
            if node_id not in done:
                visit(node_id)

    def topological_order(self) -> list[str]:
        """Dependencies first; ties broken by node id."""
        self.validate()
        remaining = {node_id: len(self.dependencies_of(node_id)) for node_id in self._nodes}
        ready = [node_id for node_id, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            node_id = heapq.heappop(ready)
            order.append(node_id)
            for dependent in self.dependents_of(node_id):
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, dependent)
        return order

    def reverse_order(self) -> list[str]:
        """Dependents before their dependencies, for teardown."""
        return list(reversed(self.topological_order()))

    def nodes_of_type(self, resource_type: ResourceType) -> Iterable[ResourceNode]:
        return [node for node in self if node.type is resource_type]
