"""Provider utilities and built-in registrations."""

# Import built-in providers for side effects (registration)
from stackweave.providers.local import create_local_provider
from stackweave.providers.registry import (
    ProviderRegistry,
    create_provider,
    list_providers,
    register_provider,
)

register_provider(
    "local",
    create_local_provider,
    version="0.1.0",
    description="In-process simulated cloud, persisted in the state file",
)

__all__ = [
    "ProviderRegistry",
    "create_provider",
    "list_providers",
    "register_provider",
]
