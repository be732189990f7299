"""
Local provider.

An in-process simulated cloud that implements the generic resource contract
and every collaborator interface. Its resource table is persisted through
the stack state so that successive CLI invocations see the same world.
"""

from __future__ import annotations

import copy
import hashlib
import json
from typing import TYPE_CHECKING, Any

import structlog

from stackweave.core.errors import PermanentProviderError, ResourceNotFoundError
from stackweave.providers.adapters import (
    ContainerImageResource,
    DnsRecordResource,
    LoadBalancerResource,
)
from stackweave.providers.base import CreateResult
from stackweave.providers.registry import ProviderRegistry
from stackweave.resources import ResourceType

if TYPE_CHECKING:
    from stackweave.config.settings import Settings
    from stackweave.orchestration.state import StackState

logger = structlog.get_logger()

ACCOUNT_ID = "000000000000"


def _digest(value: Any, length: int = 12) -> str:
    return hashlib.sha256(json.dumps(value, sort_keys=True, default=str).encode()).hexdigest()[:length]


class LocalCloud:
    """Simulated provider backend."""

    name = "local"

    def __init__(self, data: dict[str, Any] | None = None, *, region: str = "local-1") -> None:
        data = copy.deepcopy(data or {})
        self._region = region
        self._resources: dict[str, dict[str, Any]] = data.get("resources", {})
        self._counter: int = data.get("counter", 0)

    def export(self) -> dict[str, Any]:
        return {"resources": copy.deepcopy(self._resources), "counter": self._counter}

    def _arn(self, kind: str, physical_id: str) -> str:
        return f"arn:local:{kind}:{self._region}:{ACCOUNT_ID}:{physical_id}"

    def _next_id(self, kind: str) -> str:
        self._counter += 1
        return f"{kind.replace('_', '-')}-{self._counter:04d}"

    def _entry(self, physical_id: str) -> dict[str, Any]:
        entry = self._resources.get(physical_id)
        if entry is None:
            raise ResourceNotFoundError(f"Resource not found: {physical_id}", {"physical_id": physical_id})
        return entry

    def _store(
        self, physical_id: str, resource_type: ResourceType, desired_state: dict[str, Any]
    ) -> dict[str, Any]:
        outputs = self._computed_outputs(resource_type, physical_id, desired_state)
        self._resources[physical_id] = {
            "type": resource_type.value,
            "state": copy.deepcopy(desired_state),
            "outputs": outputs,
        }
        return outputs

    def _computed_outputs(
        self, resource_type: ResourceType, physical_id: str, desired: dict[str, Any]
    ) -> dict[str, Any]:
        outputs: dict[str, Any] = {
            "arn": physical_id
            if physical_id.startswith("arn:")
            else self._arn(resource_type.value, physical_id),
            "name": desired.get("name", physical_id),
        }
        if resource_type is ResourceType.LOAD_BALANCER:
            outputs["dns_name"] = f"{physical_id}.elb.{self._region}.local"
            outputs["zone_id"] = "ZLOCALELB0001"
        elif resource_type is ResourceType.CERTIFICATE:
            domains = [desired.get("domain_name", "")] + list(desired.get("subject_alternative_names", []))
            outputs["status"] = "PENDING_VALIDATION"
            outputs["domain_validation_options"] = [
                {
                    "domain_name": domain,
                    "resource_record_name": f"_{_digest(domain, 8)}.{domain.lstrip('*.')}.",
                    "resource_record_type": "CNAME",
                    "resource_record_value": f"_{_digest([domain, physical_id], 16)}.acm-validations.local.",
                }
                for domain in domains
                if domain
            ]
        elif resource_type is ResourceType.CERTIFICATE_VALIDATION:
            outputs["certificate_arn"] = desired.get("certificate_arn")
            outputs["status"] = desired.get("local_status", "ISSUED")
        elif resource_type is ResourceType.TARGET_REGISTRATION:
            outputs["health"] = desired.get("local_status", "healthy")
        elif resource_type is ResourceType.DNS_ZONE:
            outputs["zone_id"] = physical_id
            outputs["name_servers"] = [f"ns-{index}.local-dns.test" for index in range(1, 5)]
        elif resource_type is ResourceType.CONTAINER_REPOSITORY:
            outputs["repository_url"] = (
                f"{ACCOUNT_ID}.dkr.ecr.{self._region}.local/{desired.get('name', physical_id)}"
            )
        elif resource_type is ResourceType.LISTENER:
            outputs["port"] = desired.get("port")
            outputs["protocol"] = desired.get("protocol")
        return outputs

    # Generic resource contract

    async def create(self, resource_type: ResourceType, desired_state: dict[str, Any]) -> CreateResult:
        physical_id = self._next_id(resource_type.value)
        outputs = self._store(physical_id, resource_type, desired_state)
        logger.debug("local_resource_created", type=resource_type.value, physical_id=physical_id)
        return CreateResult(physical_id=physical_id, outputs=outputs)

    async def read(self, physical_id: str) -> dict[str, Any]:
        entry = self._entry(physical_id)
        return {**entry["state"], **entry["outputs"]}

    async def update(self, physical_id: str, desired_state: dict[str, Any]) -> dict[str, Any]:
        entry = self._entry(physical_id)
        return self._store(physical_id, ResourceType(entry["type"]), desired_state)

    async def delete(self, physical_id: str) -> None:
        self._entry(physical_id)
        del self._resources[physical_id]

    # DNSProvider

    async def validate_zone(self, zone_id: str) -> bool:
        entry = self._resources.get(zone_id)
        return entry is not None and entry["type"] == ResourceType.DNS_ZONE.value

    async def create_record(self, zone_id: str, record: dict[str, Any]) -> dict[str, Any]:
        zone = self._entry(zone_id)
        record_id = record.get("record_id") or self._next_id(ResourceType.DNS_RECORD.value)
        if record_id in self._resources and not record.get("allow_overwrite"):
            raise PermanentProviderError(f"DNS record {record_id} already exists")
        zone_name = zone["state"].get("name", "")
        label = record.get("name", "")
        fqdn = f"{label}.{zone_name}" if label else zone_name
        state = {key: value for key, value in record.items() if key not in ("record_id", "allow_overwrite")}
        self._resources[record_id] = {
            "type": ResourceType.DNS_RECORD.value,
            "state": state,
            "outputs": {"record_id": record_id, "fqdn": fqdn, "zone_id": zone_id},
        }
        return {"record_id": record_id, "fqdn": fqdn, "zone_id": zone_id}

    async def get_record(self, record_id: str) -> dict[str, Any]:
        return await self.read(record_id)

    async def delete_record(self, record_id: str) -> None:
        await self.delete(record_id)

    # ImageBuilder

    async def build_and_push(self, context: dict[str, Any]) -> str:
        repository = context.get("repository_url", "local/image")
        tag = context.get("tag", "latest")
        return f"{repository}:{tag}@sha256:{_digest(context, 64)}"

    # LoadBalancerController

    async def _create_lb_object(self, resource_type: ResourceType, spec: dict[str, Any]) -> dict[str, Any]:
        arn = self._arn(resource_type.value, self._next_id(resource_type.value))
        return self._store(arn, resource_type, spec)

    async def create_target_group(self, spec: dict[str, Any]) -> dict[str, Any]:
        return await self._create_lb_object(ResourceType.TARGET_GROUP, spec)

    async def create_listener(self, spec: dict[str, Any]) -> dict[str, Any]:
        return await self._create_lb_object(ResourceType.LISTENER, spec)

    async def create_listener_rule(self, spec: dict[str, Any]) -> dict[str, Any]:
        return await self._create_lb_object(ResourceType.LISTENER_RULE, spec)

    async def modify(self, arn: str, spec: dict[str, Any]) -> dict[str, Any]:
        entry = self._entry(arn)
        return self._store(arn, ResourceType(entry["type"]), spec)

    async def describe(self, arn: str) -> dict[str, Any]:
        return await self.read(arn)


def create_local_provider(*, settings: Settings, state: StackState) -> ProviderRegistry:
    """Wire the local cloud, collaborator adapters and the secret store."""
    from stackweave.config.sources import SecretSourceResolver
    from stackweave.secrets import (
        AWSSecretsManagerVault,
        InMemoryVault,
        SecretStoreAdapter,
        load_fingerprint_key,
    )

    data = state.provider_data.get("local", {})
    cloud = LocalCloud(data.get("cloud"))
    vault: Any
    if settings.secret_backend == "aws":
        vault = AWSSecretsManagerVault(region=settings.aws_region)
    else:
        vault = InMemoryVault(data.get("vault"))
    secret_store = SecretStoreAdapter(
        vault,
        SecretSourceResolver(settings.credentials_file),
        fingerprint_key=load_fingerprint_key(settings.fingerprint_key_file),
    )

    registry = ProviderRegistry(default=cloud, secret_store=secret_store)
    registry.register(ResourceType.SECRET, secret_store)
    registry.register(ResourceType.DNS_RECORD, DnsRecordResource(cloud))
    registry.register(ResourceType.CONTAINER_IMAGE, ContainerImageResource(cloud))
    load_balancer = LoadBalancerResource(cloud)
    for resource_type in (ResourceType.TARGET_GROUP, ResourceType.LISTENER, ResourceType.LISTENER_RULE):
        registry.register(resource_type, load_balancer)

    def _export() -> None:
        exported: dict[str, Any] = {"cloud": cloud.export()}
        if isinstance(vault, InMemoryVault):
            exported["vault"] = vault.export()
        state.provider_data["local"] = exported

    registry.on_finalize(_export)
    return registry
