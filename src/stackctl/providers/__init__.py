"""Provider collaborators."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .base import CreateResult, ResourceProvider
from .local import InMemoryProvider

if TYPE_CHECKING:
    from ..capabilities import CapabilityTable
    from ..config import Config

__all__ = [
    "CreateResult",
    "InMemoryProvider",
    "ResourceProvider",
    "create_provider",
]


def create_provider(config: Config, capabilities: CapabilityTable) -> ResourceProvider:
    """Build the provider selected by configuration.

    The Azure provider is imported lazily so the local provider works without
    Azure credentials in the environment.
    """
    from ..config import ProviderKind

    if config.provider == ProviderKind.AZURE:
        from .azure import AzureResourceProvider

        return AzureResourceProvider(config.azure, capabilities)

    return InMemoryProvider(
        capabilities,
        store_path=config.local_provider_file,
        partition=config.partition,
        region=config.region,
        account_id=config.account_id,
    )
