"""Dry-run diff of a stack against its last-applied state."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

from stackweave.orchestration.graph import PHYSICAL_ID_OUTPUT, ResourceGraph, ResourceNode
from stackweave.orchestration.output import UNKNOWN
from stackweave.orchestration.results import PlanAction, PlanChange, PlanResult
from stackweave.orchestration.state import ResourceRecord, StackState


class PlanBuilder:
    """Computes per-node actions without calling any provider.

    Outputs of nodes already recorded in the state are resolved from their
    recorded values, so planning consumes the graph: build a fresh stack for
    an apply that follows.
    """

    def __init__(self, graph: ResourceGraph, state: StackState) -> None:
        self._graph = graph
        self._state = state

    def build(self, stack: str, stack_file: Path) -> PlanResult:
        result = PlanResult(stack=stack, stack_file=stack_file)
        order = self._graph.topological_order()

        if not order:
            result.warnings.append("Stack declares no resources.")

        actions: Dict[str, PlanAction] = {}
        for node_id in order:
            node = self._graph.node(node_id)
            record = self._state.get(node_id)
            change = self._diff(node, record, actions)
            actions[node_id] = change.action
            result.changes.append(change)
            if record is not None:
                self._hydrate(node, record)

        orphans = sorted(set(self._state.records) - {node.id for node in self._graph})
        for node_id in orphans:
            result.warnings.append(f"{node_id} is recorded in state but no longer declared; run destroy to remove it.")

        result.edges = [
            {"from": edge.from_node, "to": edge.to_node, "kind": edge.kind.value}
            for edge in self._graph.edges
        ]
        return result

    def _diff(
        self,
        node: ResourceNode,
        record: ResourceRecord | None,
        actions: Dict[str, PlanAction],
    ) -> PlanChange:
        desired = node.render(strict=False, unknown=UNKNOWN)
        change = PlanChange(
            node_id=node.id,
            type=node.type.value,
            action="no-op",
            desired=desired,
            depends_on=sorted(self._graph.dependencies_of(node.id)),
        )

        if record is None:
            change.action = "create"
            return change

        changed = _changed_keys(record.desired, desired)
        if changed:
            change.action = "update"
            change.changed_keys = changed
            if _contains_unknown(desired):
                change.reason = "depends on values known after apply"
            return change

        if not record.confirmed:
            change.action = "update"
            change.reason = "awaiting external confirmation"
            return change

        rotated = self._rotated_secrets(node, record, actions)
        if rotated:
            change.action = "secret-rotation"
            change.reason = "secret rotated: " + ", ".join(rotated)
        return change

    def _rotated_secrets(
        self,
        node: ResourceNode,
        record: ResourceRecord,
        actions: Dict[str, PlanAction],
    ) -> List[str]:
        managed = self._graph.secret_index()
        rotated: List[str] = []
        for secret_id in sorted(node.referenced_secrets()):
            secret_node = managed.get(secret_id)
            if secret_node is None:
                continue
            if actions.get(secret_node) in ("create", "update"):
                rotated.append(secret_id)
                continue
            secret_record = self._state.get(secret_node)
            current = secret_record.outputs.get("version") if secret_record else None
            if current and record.secret_versions.get(secret_id) != current:
                rotated.append(secret_id)
        return rotated

    @staticmethod
    def _hydrate(node: ResourceNode, record: ResourceRecord) -> None:
        for name, output in node.outputs.items():
            if name == PHYSICAL_ID_OUTPUT:
                output.resolve(record.physical_id)
            elif name in record.outputs:
                output.resolve(record.outputs[name])


def _changed_keys(previous: Dict[str, Any], desired: Dict[str, Any]) -> List[str]:
    return sorted(key for key in set(previous) | set(desired) if previous.get(key) != desired.get(key))


def _contains_unknown(value: Any) -> bool:
    if value == UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(_contains_unknown(child) for child in value.values())
    if isinstance(value, list):
        return any(_contains_unknown(child) for child in value)
    return False
