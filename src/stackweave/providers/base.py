"""
Provider contracts.

``ResourceProvider`` is the contract every resource node is applied through.
The narrower collaborator protocols (DNS, image builder, load balancer
controller) describe external systems that are adapted onto that contract in
``stackweave.providers.adapters``. Providers signal failure by raising
``RetryableProviderError`` or ``PermanentProviderError``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from stackweave.resources import ResourceType

# Output name under which a node exposes its physical id; an update that
# returns it moves the resource to a new physical id
PHYSICAL_ID_OUTPUT = "id"


@dataclass(frozen=True)
class CreateResult:
    """Identity and outputs assigned by the provider on create."""

    physical_id: str
    outputs: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ResourceProvider(Protocol):
    """Contract for provider-managed resources."""

    name: str

    async def create(self, resource_type: ResourceType, desired_state: dict[str, Any]) -> CreateResult:
        ...

    async def read(self, physical_id: str) -> dict[str, Any]:
        ...

    async def update(self, physical_id: str, desired_state: dict[str, Any]) -> dict[str, Any]:
        ...

    async def delete(self, physical_id: str) -> None:
        ...


class DNSProvider(Protocol):
    """Hosted DNS zones and records."""

    async def validate_zone(self, zone_id: str) -> bool:
        ...

    async def create_record(self, zone_id: str, record: dict[str, Any]) -> dict[str, Any]:
        """Create or overwrite a record; returns at least ``record_id`` and ``fqdn``."""
        ...

    async def get_record(self, record_id: str) -> dict[str, Any]:
        ...

    async def delete_record(self, record_id: str) -> None:
        ...


class ImageBuilder(Protocol):
    """Container image build-and-push collaborator."""

    async def build_and_push(self, context: dict[str, Any]) -> str:
        """Build the image described by ``context`` and return the pushed image reference."""
        ...


class LoadBalancerController(Protocol):
    """Target groups, listeners and host-based listener rules."""

    async def create_target_group(self, spec: dict[str, Any]) -> dict[str, Any]:
        ...

    async def create_listener(self, spec: dict[str, Any]) -> dict[str, Any]:
        ...

    async def create_listener_rule(self, spec: dict[str, Any]) -> dict[str, Any]:
        ...

    async def modify(self, arn: str, spec: dict[str, Any]) -> dict[str, Any]:
        ...

    async def describe(self, arn: str) -> dict[str, Any]:
        ...

    async def delete(self, arn: str) -> None:
        ...
