"""Orchestration package: graph assembly, planning and application."""

from stackweave.orchestration.gates import GatePolicy, GateState, GateStateMachine
from stackweave.orchestration.graph import (
    DependencyEdge,
    EdgeKind,
    NodeStatus,
    ResourceGraph,
    ResourceNode,
)
from stackweave.orchestration.output import UNKNOWN, Output, OutputState
from stackweave.orchestration.plan_builder import PlanBuilder
from stackweave.orchestration.results import (
    ApplyReport,
    DestroyReport,
    NodeReport,
    PlanChange,
    PlanResult,
    ResultCollector,
)
from stackweave.orchestration.routing import RoutingRule, evaluate, validate_rules
from stackweave.orchestration.scheduler import CancellationToken, Scheduler
from stackweave.orchestration.stack import ResourceHandle, Stack
from stackweave.orchestration.state import ResourceRecord, StackState, load_state, save_state

__all__ = [
    "ApplyReport",
    "CancellationToken",
    "DependencyEdge",
    "DestroyReport",
    "EdgeKind",
    "GatePolicy",
    "GateState",
    "GateStateMachine",
    "NodeReport",
    "NodeStatus",
    "Output",
    "OutputState",
    "PlanBuilder",
    "PlanChange",
    "PlanResult",
    "ResourceGraph",
    "ResourceHandle",
    "ResourceNode",
    "ResourceRecord",
    "ResultCollector",
    "RoutingRule",
    "Scheduler",
    "Stack",
    "StackState",
    "UNKNOWN",
    "evaluate",
    "load_state",
    "save_state",
    "validate_rules",
]
