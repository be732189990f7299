"""
Adapters from narrow collaborator interfaces onto ``ResourceProvider``.

Each adapter owns one resource kind and translates the generic
create/read/update/delete contract into calls on the external system.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

import structlog

from stackweave.core.errors import PermanentProviderError
from stackweave.providers.base import (
    PHYSICAL_ID_OUTPUT,
    CreateResult,
    DNSProvider,
    ImageBuilder,
    LoadBalancerController,
)
from stackweave.resources import ResourceType

logger = structlog.get_logger()


class DnsRecordResource:
    """``dns_record`` nodes backed by a DNS provider."""

    name = "dns"

    def __init__(self, dns: DNSProvider) -> None:
        self._dns = dns
        self._validated_zones: set[str] = set()

    async def _ensure_zone(self, zone_id: str) -> None:
        if zone_id in self._validated_zones:
            return
        if not await self._dns.validate_zone(zone_id):
            raise PermanentProviderError(
                f"Hosted zone {zone_id} is not usable (missing or nameservers not delegated)",
                {"zone_id": zone_id},
            )
        self._validated_zones.add(zone_id)

    async def create(self, resource_type: ResourceType, desired_state: dict[str, Any]) -> CreateResult:
        zone_id = desired_state.get("zone_id")
        if not zone_id:
            raise PermanentProviderError("dns_record requires 'zone_id'")
        await self._ensure_zone(zone_id)
        created = await self._dns.create_record(zone_id, desired_state)
        logger.info("dns_record_created", zone_id=zone_id, fqdn=created.get("fqdn"))
        return CreateResult(physical_id=created["record_id"], outputs=created)

    async def read(self, physical_id: str) -> dict[str, Any]:
        return await self._dns.get_record(physical_id)

    async def update(self, physical_id: str, desired_state: dict[str, Any]) -> dict[str, Any]:
        zone_id = desired_state.get("zone_id")
        if not zone_id:
            raise PermanentProviderError("dns_record requires 'zone_id'")
        await self._ensure_zone(zone_id)
        return await self._dns.create_record(
            zone_id, {**desired_state, "record_id": physical_id, "allow_overwrite": True}
        )

    async def delete(self, physical_id: str) -> None:
        await self._dns.delete_record(physical_id)


class ContainerImageResource:
    """``container_image`` nodes built and pushed by an image builder."""

    name = "image-builder"

    def __init__(self, builder: ImageBuilder) -> None:
        self._builder = builder

    async def _build(self, desired_state: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        image_ref = await self._builder.build_and_push(desired_state)
        # "repository:tag" stays put across rebuilds; the digest does not
        image = image_ref.partition("@")[0]
        return image, {"ref": image_ref, "image": image}

    async def create(self, resource_type: ResourceType, desired_state: dict[str, Any]) -> CreateResult:
        image, outputs = await self._build(desired_state)
        return CreateResult(physical_id=image, outputs=outputs)

    async def read(self, physical_id: str) -> dict[str, Any]:
        return {"image": physical_id}

    async def update(self, physical_id: str, desired_state: dict[str, Any]) -> dict[str, Any]:
        image, outputs = await self._build(desired_state)
        if image != physical_id:
            outputs[PHYSICAL_ID_OUTPUT] = image
        return outputs

    async def delete(self, physical_id: str) -> None:
        # Images are removed together with their repository.
        return None


class LoadBalancerResource:
    """Target groups, listeners and listener rules on a load balancer controller."""

    name = "load-balancer"

    def __init__(self, controller: LoadBalancerController) -> None:
        self._controller = controller
        self._creators: dict[ResourceType, Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]] = {
            ResourceType.TARGET_GROUP: controller.create_target_group,
            ResourceType.LISTENER: controller.create_listener,
            ResourceType.LISTENER_RULE: controller.create_listener_rule,
        }

    async def create(self, resource_type: ResourceType, desired_state: dict[str, Any]) -> CreateResult:
        creator = self._creators.get(resource_type)
        if creator is None:
            raise PermanentProviderError(
                f"Load balancer controller cannot create {resource_type.value}",
                {"type": resource_type.value},
            )
        created = await creator(desired_state)
        return CreateResult(physical_id=created["arn"], outputs=created)

    async def read(self, physical_id: str) -> dict[str, Any]:
        return await self._controller.describe(physical_id)

    async def update(self, physical_id: str, desired_state: dict[str, Any]) -> dict[str, Any]:
        return await self._controller.modify(physical_id, desired_state)

    async def delete(self, physical_id: str) -> None:
        await self._controller.delete(physical_id)
