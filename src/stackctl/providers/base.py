"""Provider collaborator interface.

A provider turns resource operations into calls against a real platform.
The engine knows nothing about concrete resource types; the provider also
owns the capability table describing which properties force replacement.

All methods are synchronous and may block. The executor runs them in a
worker thread under a deadline.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from ..capabilities import CapabilityTable, ResourceTypeCapabilities


@dataclass(frozen=True)
class CreateResult:
    """Outcome of a successful create."""

    physical_id: str
    attributes: dict[str, Any] = field(default_factory=dict)


class ResourceProvider(ABC):
    """Abstract provider collaborator.

    Errors are reported by raising ``ProviderError`` (``transient=True`` for
    failures worth retrying) and ``ResourceNotFound`` from ``describe``.
    """

    name: str = "provider"

    def __init__(self, capabilities: CapabilityTable | None = None) -> None:
        self._capabilities = capabilities or CapabilityTable()

    @property
    def capability_table(self) -> CapabilityTable:
        return self._capabilities

    def capabilities(self, resource_type: str) -> ResourceTypeCapabilities:
        """Mutability and replacement metadata for a resource type."""
        return self._capabilities.get(resource_type)

    @abstractmethod
    def create(
        self, resource_type: str, properties: dict[str, Any], *, token: str | None = None
    ) -> CreateResult:
        """Create a resource.

        Args:
            resource_type: Type tag from the template.
            properties: Fully resolved properties.
            token: Idempotency token; ``find`` can locate the resource by it
                if the call's outcome is unknown.
        """

    @abstractmethod
    def update(
        self, physical_id: str, resource_type: str, properties: dict[str, Any]
    ) -> dict[str, Any]:
        """Update a resource in place and return its attributes."""

    @abstractmethod
    def delete(self, physical_id: str, resource_type: str) -> None:
        """Delete a resource. Deleting an absent resource succeeds."""

    @abstractmethod
    def describe(self, physical_id: str, resource_type: str) -> dict[str, Any]:
        """Return current attributes, or raise ``ResourceNotFound``."""

    def find(
        self, resource_type: str, token: str, properties: dict[str, Any]
    ) -> CreateResult | None:
        """Locate a resource created with ``token``, if the create went through.

        Providers that cannot answer return None, which the executor treats
        as "not created".
        """
        return None
