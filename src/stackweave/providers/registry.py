from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from stackweave.core.errors import ConfigurationError
from stackweave.providers.base import ResourceProvider
from stackweave.resources import ResourceType

ProviderFactory = Callable[..., "ProviderRegistry"]


class ProviderRegistry:
    """Providers bound to resource types for one invocation."""

    def __init__(self, default: ResourceProvider | None = None, *, secret_store: Any = None) -> None:
        self._providers: Dict[ResourceType, ResourceProvider] = {}
        self._default = default
        self.secret_store = secret_store
        self._finalizers: List[Callable[[], None]] = []

    def register(self, resource_type: ResourceType, provider: ResourceProvider) -> None:
        self._providers[resource_type] = provider

    def get(self, resource_type: ResourceType) -> ResourceProvider:
        provider = self._providers.get(resource_type, self._default)
        if provider is None:
            raise ConfigurationError(
                f"No provider registered for resource type '{resource_type.value}'",
                {"type": resource_type.value},
            )
        return provider

    def on_finalize(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` before state is persisted (providers export their own data)."""
        self._finalizers.append(callback)

    def finalize(self) -> None:
        for callback in self._finalizers:
            callback()


@dataclass(frozen=True)
class ProviderSpec:
    """Metadata describing a registered provider backend."""

    name: str
    factory: ProviderFactory
    version: str | None = None
    description: str | None = None


class ProviderCatalog:
    """Simple in-memory catalog of provider backends."""

    def __init__(self) -> None:
        self._providers: Dict[str, ProviderSpec] = {}

    def register(
        self,
        name: str,
        factory: ProviderFactory,
        *,
        version: str | None = None,
        description: str | None = None,
    ) -> None:
        if not name:
            raise ValueError("Provider name is required")
        self._providers[name] = ProviderSpec(
            name=name,
            factory=factory,
            version=version,
            description=description,
        )

    def create(self, name: str, **kwargs: Any) -> ProviderRegistry:
        spec = self._providers.get(name)
        if spec is None:
            raise ConfigurationError(
                f"Provider '{name}' is not registered",
                {"available": ",".join(sorted(self._providers))},
            )
        return spec.factory(**kwargs)

    def list(self) -> List[ProviderSpec]:
        return list(self._providers.values())


provider_catalog = ProviderCatalog()


def register_provider(
    name: str,
    factory: ProviderFactory,
    *,
    version: str | None = None,
    description: str | None = None,
) -> None:
    provider_catalog.register(name, factory, version=version, description=description)


def create_provider(name: str, **kwargs: Any) -> ProviderRegistry:
    return provider_catalog.create(name, **kwargs)


def list_providers() -> List[ProviderSpec]:
    return provider_catalog.list()
