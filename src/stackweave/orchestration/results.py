"""Result types for plan, apply and destroy."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from stackweave.core.errors import ExitCode, GateTimeoutError, StackweaveError
from stackweave.orchestration.graph import NodeStatus, ResourceNode

PlanAction = Literal["create", "update", "no-op", "secret-rotation"]


@dataclass
class NodeReport:
    """Final outcome of one node in an apply."""

    node_id: str
    type: str
    status: NodeStatus
    physical_id: str = ""
    attempts: int = 0
    skipped: bool = False
    gate_state: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    blocked_by: Optional[str] = None

    @property
    def timed_out(self) -> bool:
        return self.error_type == GateTimeoutError.__name__

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class ApplyReport:
    """Aggregate result of applying a stack."""

    stack: str
    nodes: Dict[str, NodeReport] = field(default_factory=dict)
    exports: Dict[str, Any] = field(default_factory=dict)
    duration_seconds: float = 0.0
    cancelled: bool = False

    def with_status(self, status: NodeStatus) -> List[NodeReport]:
        return [report for report in self.nodes.values() if report.status is status]

    @property
    def applied(self) -> List[NodeReport]:
        return self.with_status(NodeStatus.APPLIED)

    @property
    def failed(self) -> List[NodeReport]:
        return self.with_status(NodeStatus.FAILED)

    @property
    def timed_out(self) -> List[NodeReport]:
        return [report for report in self.nodes.values() if report.timed_out]

    @property
    def blocked(self) -> List[NodeReport]:
        return [report for report in self.nodes.values() if report.blocked_by is not None]

    @property
    def skipped(self) -> List[NodeReport]:
        return [report for report in self.applied if report.skipped]

    @property
    def success(self) -> bool:
        return len(self.applied) == len(self.nodes)

    @property
    def exit_code(self) -> ExitCode:
        """0 all applied; 2 only gate timeouts (and what they block) remain; 1 otherwise."""
        if self.success:
            return ExitCode.SUCCESS
        timed_out = {report.node_id for report in self.timed_out}
        outstanding = [
            report
            for report in self.nodes.values()
            if report.status is not NodeStatus.APPLIED
            and report.node_id not in timed_out
            and report.blocked_by not in timed_out
        ]
        if timed_out and not outstanding and not self.cancelled:
            return ExitCode.AWAITING_EXTERNAL
        return ExitCode.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stack": self.stack,
            "nodes": {node_id: report.to_dict() for node_id, report in sorted(self.nodes.items())},
            "exports": self.exports,
            "duration_seconds": self.duration_seconds,
            "cancelled": self.cancelled,
            "exit_code": int(self.exit_code),
            "success": self.success,
        }


class ResultCollector:
    """Aggregates node outcomes while the scheduler runs."""

    def __init__(self, stack: str) -> None:
        self._report = ApplyReport(stack=stack)

    def record(
        self,
        node: ResourceNode,
        *,
        attempts: int = 0,
        skipped: bool = False,
        gate_state: Optional[str] = None,
        blocked_by: Optional[str] = None,
        error: Optional[StackweaveError] = None,
    ) -> NodeReport:
        failure = error or node.failure
        report = NodeReport(
            node_id=node.id,
            type=node.type.value,
            status=node.status,
            physical_id=node.physical_id,
            attempts=attempts,
            skipped=skipped,
            gate_state=gate_state,
            error=failure.message if failure else None,
            error_type=type(failure).__name__ if failure else None,
            blocked_by=blocked_by,
        )
        self._report.nodes[node.id] = report
        return report

    def mark_cancelled(self) -> None:
        self._report.cancelled = True

    def finalize(self, duration: float, exports: Dict[str, Any]) -> ApplyReport:
        self._report.duration_seconds = duration
        self._report.exports = exports
        return self._report


@dataclass
class PlanChange:
    """One node's pending action."""

    node_id: str
    type: str
    action: PlanAction
    desired: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    changed_keys: List[str] = field(default_factory=list)
    reason: Optional[str] = None


@dataclass
class PlanResult:
    """Result of planning (dry-run) a stack."""

    stack: str
    stack_file: Path
    changes: List[PlanChange] = field(default_factory=list)
    edges: List[Dict[str, str]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def count(self, action: PlanAction) -> int:
        return sum(1 for change in self.changes if change.action == action)

    @property
    def has_changes(self) -> bool:
        return any(change.action != "no-op" for change in self.changes)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stack": self.stack,
            "stack_file": str(self.stack_file),
            "changes": [asdict(change) for change in self.changes],
            "edges": self.edges,
            "summary": {
                action: self.count(action)  # type: ignore[arg-type]
                for action in ("create", "update", "secret-rotation", "no-op")
            },
            "errors": self.errors,
            "warnings": self.warnings,
            "success": self.success,
        }


@dataclass
class DestroyReport:
    """Result of tearing a stack down."""

    stack: str
    deleted: List[str] = field(default_factory=list)
    absent: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    blocked: Dict[str, str] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return not self.failed and not self.blocked

    @property
    def exit_code(self) -> ExitCode:
        return ExitCode.SUCCESS if self.success else ExitCode.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stack": self.stack,
            "deleted": self.deleted,
            "absent": self.absent,
            "failed": self.failed,
            "blocked": self.blocked,
            "duration_seconds": self.duration_seconds,
            "exit_code": int(self.exit_code),
        }
