"""
Host-based routing rules.

Rules are evaluated lowest priority first; a host pattern is either an exact
host or a wildcard prefix (``*.example.com``). Two rules whose host patterns
overlap may not share a priority, otherwise the winner for an overlapping
host would be ambiguous.
"""

from __future__ import annotations

from dataclasses import dataclass
from itertools import combinations
from typing import Any, Iterable

from stackweave.core.errors import ConfigurationError, RoutingConflictError
from stackweave.orchestration.graph import ResourceGraph
from stackweave.orchestration.output import Output
from stackweave.resources import ResourceType


@dataclass(frozen=True)
class RoutingRule:
    host_patterns: frozenset[str]
    priority: int
    target: str
    name: str = ""

    @classmethod
    def create(cls, hosts: Iterable[str], priority: int, target: str, name: str = "") -> RoutingRule:
        return cls(frozenset(normalize_host(host) for host in hosts), int(priority), target, name)

    def matches(self, host: str) -> bool:
        return any(pattern_matches(pattern, host) for pattern in self.host_patterns)


def normalize_host(host: str) -> str:
    """Lower-case, strip surrounding whitespace, any port, and a trailing dot."""
    value = host.strip().lower()
    if value.startswith("[") or value.count(":") != 1:
        return value.rstrip(".")
    return value.split(":", 1)[0].rstrip(".")


def pattern_matches(pattern: str, host: str) -> bool:
    host = normalize_host(host)
    if pattern.startswith("*."):
        suffix = pattern[1:]
        return host.endswith(suffix) and len(host) > len(suffix)
    return pattern == host


def patterns_overlap(left: str, right: str) -> bool:
    if left == right:
        return True
    left_wild, right_wild = left.startswith("*."), right.startswith("*.")
    if left_wild and right_wild:
        left_suffix, right_suffix = left[1:], right[1:]
        return left_suffix.endswith(right_suffix) or right_suffix.endswith(left_suffix)
    if left_wild:
        return pattern_matches(left, right)
    if right_wild:
        return pattern_matches(right, left)
    return False


def validate_rules(rules: Iterable[RoutingRule]) -> None:
    """Reject same-priority rules with overlapping host patterns."""
    for first, second in combinations(sorted(rules, key=lambda r: (r.priority, r.name)), 2):
        if first.priority != second.priority:
            continue
        overlap = sorted(
            f"{left}~{right}"
            for left in first.host_patterns
            for right in second.host_patterns
            if patterns_overlap(left, right)
        )
        if overlap:
            raise RoutingConflictError(
                f"Routing rules {first.name or first.target} and {second.name or second.target} "
                f"share priority {first.priority} with overlapping hosts",
                {"priority": first.priority, "overlap": ",".join(overlap)},
            )


def evaluate(rules: Iterable[RoutingRule], host: str) -> RoutingRule | None:
    """The lowest-priority rule matching ``host``, or None.

    Fails closed with ConfigurationError when two matches tie on priority.
    """
    matching = sorted((rule for rule in rules if rule.matches(host)), key=lambda r: r.priority)
    if not matching:
        return None
    best = matching[0]
    tied = [rule for rule in matching if rule.priority == best.priority]
    if len(tied) > 1:
        raise ConfigurationError(
            f"Ambiguous routing for host {normalize_host(host)}: "
            f"{len(tied)} rules at priority {best.priority}",
            {"host": normalize_host(host), "priority": best.priority},
        )
    return best


def _listener_key(value: Any) -> str:
    if isinstance(value, Output):
        return "output:" + ",".join(sorted(value.resources))
    return f"literal:{value}"


def _target_name(value: Any) -> str:
    if isinstance(value, Output):
        return value.label or ",".join(sorted(value.resources))
    return str(value)


def _priority(node_id: str, value: Any) -> int:
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigurationError(
            f"Listener rule {node_id} priority must be an integer, got {value!r}",
            {"node_id": node_id, "priority": str(value)},
        )
    return value


def rules_by_listener(graph: ResourceGraph) -> dict[str, list[RoutingRule]]:
    """Routing rules declared as ``listener_rule`` nodes, grouped per listener."""
    grouped: dict[str, list[RoutingRule]] = {}
    for node in graph.nodes_of_type(ResourceType.LISTENER_RULE):
        spec = node.desired_state
        hosts = spec.get("hosts") or []
        if "priority" not in spec or not hosts:
            raise ConfigurationError(
                f"Listener rule {node.id} requires 'priority' and 'hosts'", {"node_id": node.id}
            )
        if not all(isinstance(host, str) for host in hosts):
            raise ConfigurationError(
                f"Listener rule {node.id} hosts must be literal strings", {"node_id": node.id}
            )
        rule = RoutingRule.create(
            hosts,
            _priority(node.id, spec["priority"]),
            _target_name(spec.get("target_group_arn", "")),
            name=node.id,
        )
        grouped.setdefault(_listener_key(spec.get("listener_arn")), []).append(rule)
    return grouped


def validate_graph_routing(graph: ResourceGraph) -> None:
    for rules in rules_by_listener(graph).values():
        validate_rules(rules)
