"""Provider interface and registry.

A provider implements create/read/update/delete for a set of resource
types and declares, per type, which attributes are immutable. The engine
never contains per-type logic: update-vs-replace comes from
``ResourceTypeSchema`` and equivalence rules from
``normalization_rules()``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .models import ResourceTypeSchema
from .normalizer import NormalizationRule

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Base class for errors returned by a provider operation.

    Attributes:
        message: Provider error message.
        status_code: HTTP-like status code, when the provider returned one.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"[{self.status_code}] {self.message}"
        return self.message


class TransientProviderError(ProviderError):
    """Network, throttling or conflict class error. Retried."""

    pass


class PermanentProviderError(ProviderError):
    """Error that will not go away by retrying. The node is tainted."""

    pass


class UnknownResourceTypeError(Exception):
    """Raised when no registered provider handles a resource type."""

    def __init__(self, resource_types: Iterable[str]) -> None:
        self.resource_types = sorted(set(resource_types))
        super().__init__(f"Unknown resource type(s): {', '.join(self.resource_types)}")


@dataclass(frozen=True)
class ProviderResult:
    """Outcome of a successful create/read/update.

    Attributes:
        provider_id: Identifier assigned by the provider.
        outputs: Computed attributes returned by the provider.
    """

    provider_id: str
    outputs: dict[str, Any] = field(default_factory=dict)


class ResourceProvider(ABC):
    """Base class for resource providers.

    Operations are coroutines. Implementations raise
    ``TransientProviderError`` or ``PermanentProviderError``; any other
    exception escaping an operation is treated as permanent.
    """

    name: str = "provider"

    @abstractmethod
    def schemas(self) -> list[ResourceTypeSchema]:
        """Resource types handled by this provider."""

    def normalization_rules(self) -> list[NormalizationRule]:
        return []

    @abstractmethod
    async def create(self, resource_type: str, attributes: dict[str, Any]) -> ProviderResult:
        """Create an object and return its identifier."""

    @abstractmethod
    async def read(self, resource_type: str, provider_id: str) -> ProviderResult | None:
        """Read an object. Returns None when it no longer exists."""

    @abstractmethod
    async def update(
        self, resource_type: str, provider_id: str, attributes: dict[str, Any]
    ) -> ProviderResult:
        """Update an object in place with the full desired attributes."""

    @abstractmethod
    async def delete(self, resource_type: str, provider_id: str) -> None:
        """Delete an object. Deleting an object that is already gone succeeds."""


class ProviderRegistry:
    """Maps resource types to their provider and schema."""

    def __init__(self, providers: Iterable[ResourceProvider] | None = None) -> None:
        self._providers: dict[str, ResourceProvider] = {}
        self._schemas: dict[str, ResourceTypeSchema] = {}
        for provider in providers or ():
            self.register(provider)

    def register(self, provider: ResourceProvider) -> None:
        """Register every resource type a provider declares.

        Raises:
            ValueError: If a type is already handled by another provider.
        """
        for schema in provider.schemas():
            existing = self._providers.get(schema.type_name)
            if existing is not None and existing is not provider:
                raise ValueError(
                    f"Resource type '{schema.type_name}' already registered "
                    f"by provider '{existing.name}'"
                )
            self._providers[schema.type_name] = provider
            self._schemas[schema.type_name] = schema

        logger.debug(
            "Registered provider",
            extra={"provider": provider.name, "types": len(provider.schemas())},
        )

    @property
    def resource_types(self) -> list[str]:
        return sorted(self._providers)

    def provider_for(self, resource_type: str) -> ResourceProvider:
        try:
            return self._providers[resource_type]
        except KeyError:
            raise UnknownResourceTypeError([resource_type]) from None

    def schema_for(self, resource_type: str) -> ResourceTypeSchema:
        try:
            return self._schemas[resource_type]
        except KeyError:
            raise UnknownResourceTypeError([resource_type]) from None

    def normalization_rules(self) -> list[NormalizationRule]:
        rules: list[NormalizationRule] = []
        seen: set[int] = set()
        for provider in self._providers.values():
            if id(provider) in seen:
                continue
            seen.add(id(provider))
            rules.extend(provider.normalization_rules())
        return rules

    def validate_types(self, resource_types: Iterable[str]) -> None:
        """Fail before any provider call if a type is not registered.

        Raises:
            UnknownResourceTypeError: Naming every unknown type.
        """
        unknown = {t for t in resource_types if t not in self._providers}
        if unknown:
            raise UnknownResourceTypeError(unknown)
