"""
Declaration API.

A ``Stack`` collects resource declarations (desired state) and exports.
Graph assembly is a separate step: ``build_graph`` wires explicit and
implicit edges, then validates acyclicity and routing before anything runs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Union

import structlog

from stackweave.config.settings import Settings, load_settings
from stackweave.core.errors import ConfigurationError, DuplicateNodeError
from stackweave.orchestration.graph import PHYSICAL_ID_OUTPUT, ResourceGraph, ResourceNode, to_plain
from stackweave.orchestration.output import UNKNOWN, Output, unwrap
from stackweave.orchestration.routing import validate_graph_routing
from stackweave.resources import ResourceType
from stackweave.secrets import SecretRef, SecretStoreAdapter

logger = structlog.get_logger()


@dataclass(frozen=True)
class ResourceHandle:
    """What a declaration returns: a way to reference the node's outputs."""

    stack: Stack
    id: str

    def output(self, name: str) -> Output[Any]:
        return self.stack.reference(self.id, name)

    @property
    def physical_id(self) -> Output[str]:
        return self.output(PHYSICAL_ID_OUTPUT)


Dependency = Union[ResourceHandle, str]


class Stack:
    """A named set of resource declarations."""

    def __init__(
        self,
        name: str,
        settings: Settings | None = None,
        *,
        secrets: SecretStoreAdapter | None = None,
    ) -> None:
        self.name = name
        self.settings = settings or load_settings()
        self._secrets = secrets
        self._nodes: dict[str, ResourceNode] = {}
        self._duplicates: list[str] = []
        self._outputs: dict[str, dict[str, Output[Any]]] = {}
        self._exports: dict[str, Any] = {}
        self._graph: ResourceGraph | None = None

    def reference(self, node_id: str, name: str) -> Output[Any]:
        """Output ``name`` of ``node_id``; the node may be declared later."""
        outputs = self._outputs.setdefault(node_id, {})
        if name not in outputs:
            outputs[name] = Output({node_id}, label=f"{node_id}.{name}")
        return outputs[name]

    def resource(
        self,
        node_id: str,
        resource_type: ResourceType | str,
        desired_state: dict[str, Any] | None = None,
        *,
        depends_on: Iterable[Dependency] = (),
        gate: dict[str, Any] | None = None,
    ) -> ResourceHandle:
        if self._graph is not None:
            raise ConfigurationError(f"Stack {self.name} is already assembled; cannot add {node_id}")
        if not isinstance(resource_type, ResourceType):
            resource_type = ResourceType.parse(resource_type)
        node = ResourceNode(
            id=node_id,
            type=resource_type,
            desired_state=dict(desired_state or {}),
            depends_on={dep.id if isinstance(dep, ResourceHandle) else dep for dep in depends_on},
            gate=gate,
            outputs=self._outputs.setdefault(node_id, {}),
        )
        if node_id in self._nodes:
            # Reported by build_graph so parsing can finish first
            self._duplicates.append(node_id)
        else:
            self._nodes[node_id] = node
        return ResourceHandle(self, node_id)

    def secret(
        self,
        node_id: str,
        secret_id: str,
        values: dict[str, str],
        *,
        description: str | None = None,
        depends_on: Iterable[Dependency] = (),
    ) -> ResourceHandle:
        """Declare a managed secret whose values are source references (``${env:NAME}``)."""
        if self._secrets is None:
            raise ConfigurationError("Declaring secrets requires a secret store adapter")
        desired = {
            "secret_id": secret_id,
            "values": dict(values),
            "fingerprint": self._secrets.fingerprint(secret_id, values),
        }
        if description:
            desired["description"] = description
        return self.resource(node_id, ResourceType.SECRET, desired, depends_on=depends_on)

    @staticmethod
    def secret_ref(secret_id: str, key_path: str | None = None, version: str = "latest") -> SecretRef:
        return SecretRef(secret_id=secret_id, version=version, key_path=key_path)

    def export(self, name: str, value: Any) -> None:
        self._exports[name] = value

    @property
    def exports(self) -> dict[str, Any]:
        return dict(self._exports)

    def resolved_exports(self, *, strict: bool = False) -> dict[str, Any]:
        resolved: dict[str, Any] = {}
        for name, value in self._exports.items():
            try:
                resolved[name] = unwrap(value, unknown=UNKNOWN, strict=strict, convert=to_plain)
            except Exception as exc:
                logger.warning("export_unresolved", export=name, error=str(exc))
                resolved[name] = None
        return resolved

    def build_graph(self) -> ResourceGraph:
        """Assemble and validate the dependency graph (once)."""
        if self._graph is not None:
            return self._graph

        if self._duplicates:
            raise DuplicateNodeError(self._duplicates[0])

        graph = ResourceGraph()
        for node in self._nodes.values():
            graph.add_node(node)
        graph.add_declared_edges()
        graph.validate()
        validate_graph_routing(graph)

        logger.debug("graph_assembled", stack=self.name, nodes=len(graph), edges=len(graph.edges))
        self._graph = graph
        return graph
