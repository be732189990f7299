"""Last-applied state, used to skip provider calls for unchanged nodes."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import structlog

from stackweave.core.errors import ConfigurationError

logger = structlog.get_logger()

DEFAULT_STATE_PATH = Path("stackweave.state.json")
STATE_VERSION = 1


@dataclass
class ResourceRecord:
    """What was last applied for one node."""

    node_id: str
    type: str
    physical_id: str
    desired: dict[str, Any]
    outputs: dict[str, Any] = field(default_factory=dict)
    secret_versions: dict[str, str] = field(default_factory=dict)
    confirmed: bool = True


@dataclass
class StackState:
    stack: str = ""
    records: dict[str, ResourceRecord] = field(default_factory=dict)
    provider_data: dict[str, Any] = field(default_factory=dict)

    def get(self, node_id: str) -> ResourceRecord | None:
        return self.records.get(node_id)

    def put(self, record: ResourceRecord) -> None:
        self.records[record.node_id] = record

    def remove(self, node_id: str) -> None:
        self.records.pop(node_id, None)


def load_state(path: Path | None = None) -> StackState:
    state_path = path or DEFAULT_STATE_PATH
    if not state_path.exists():
        return StackState()
    try:
        data = json.loads(state_path.read_text())
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"State file is not valid JSON: {state_path}: {e}") from e

    records = {
        node_id: ResourceRecord(**record) for node_id, record in data.get("records", {}).items()
    }
    return StackState(
        stack=data.get("stack", ""),
        records=records,
        provider_data=dict(data.get("provider_data", {})),
    )


def save_state(state: StackState, path: Path | None = None) -> None:
    state_path = path or DEFAULT_STATE_PATH
    payload = {
        "version": STATE_VERSION,
        "stack": state.stack,
        "records": {node_id: asdict(record) for node_id, record in sorted(state.records.items())},
        "provider_data": state.provider_data,
    }
    state_path.parent.mkdir(parents=True, exist_ok=True)
    state_path.write_text(json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n")
    logger.debug("state_saved", path=str(state_path), records=len(state.records))
