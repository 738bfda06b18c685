"""Azure Resource Manager provider.

Resources are managed generically by ARM resource id through
``ResourceManagementClient.resources`` (PUT/GET/DELETE by id with a
per-type API version); resource groups go through ``resource_groups``.

Attribute layout of every Azure resource type:
- identity fields used to build the resource id (``name``,
  ``resource_group_name``, or a parent/scope id such as
  ``virtual_network_id``)
- ARM body fields: ``location``, ``tags``, ``sku``, ``kind``,
  ``identity``, ``properties``

EXAMPLE:
```yaml
- type: azure_subnet
  name: app
  attributes:
    name: snet-app
    virtual_network_id: "${azure_virtual_network.hub.id}"
    properties:
      addressPrefix: 10.0.1.0/24
```

ARM identifiers derive from names, so a replacement under the same name
must delete first; replacements that change the name can create first.

The SDK is synchronous: every call runs in the default executor with a
per-operation timeout.
"""

from __future__ import annotations

import asyncio
import logging
import string
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource, Identity, ResourceGroup, Sku

from .config import DEFAULT_OPERATION_TIMEOUT_SECONDS
from .models import ReplaceStrategy, ResourceTypeSchema
from .normalizer import NormalizationRule, NormalizationType
from .provider import (
    PermanentProviderError,
    ProviderError,
    ProviderResult,
    ResourceProvider,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

# Request timeout, conflict (operation in progress), throttling, server side
TRANSIENT_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})

BODY_ATTRIBUTES = ("location", "tags", "sku", "kind", "identity", "properties")

RESOURCE_GROUP_API_VERSION = "2022-09-01"

_RG_SCOPE = "/subscriptions/{subscription_id}/resourceGroups/{resource_group_name}/providers"


@dataclass(frozen=True)
class AzureResourceType:
    """Built-in Azure resource type.

    Attributes:
        type_name: Resource type used in definitions.
        arm_type: ARM resource type.
        api_version: API version for by-id operations.
        id_template: Resource id, formatted with ``subscription_id`` and the
            node's attributes.
        immutable: Attribute paths that force a replacement.
        replace_strategy: Forced replace ordering, if any.
    """

    type_name: str
    arm_type: str
    api_version: str
    id_template: str
    immutable: tuple[str, ...] = ()
    replace_strategy: ReplaceStrategy = ReplaceStrategy.AUTO

    @property
    def id_fields(self) -> tuple[str, ...]:
        return tuple(
            name
            for _, name, _, _ in string.Formatter().parse(self.id_template)
            if name and name != "subscription_id"
        )

    def schema(self) -> ResourceTypeSchema:
        return ResourceTypeSchema(
            type_name=self.type_name,
            immutable_attributes=self.immutable,
            replace_strategy=self.replace_strategy,
        )


_REGIONAL = ("name", "resource_group_name", "location")

AZURE_RESOURCE_TYPES: tuple[AzureResourceType, ...] = (
    AzureResourceType(
        type_name="azure_resource_group",
        arm_type="Microsoft.Resources/resourceGroups",
        api_version=RESOURCE_GROUP_API_VERSION,
        id_template="/subscriptions/{subscription_id}/resourceGroups/{name}",
        immutable=("name", "location"),
    ),
    AzureResourceType(
        type_name="azure_virtual_network",
        arm_type="Microsoft.Network/virtualNetworks",
        api_version="2023-09-01",
        id_template=_RG_SCOPE + "/Microsoft.Network/virtualNetworks/{name}",
        immutable=_REGIONAL,
    ),
    AzureResourceType(
        type_name="azure_subnet",
        arm_type="Microsoft.Network/virtualNetworks/subnets",
        api_version="2023-09-01",
        id_template="{virtual_network_id}/subnets/{name}",
        immutable=("name", "virtual_network_id"),
    ),
    AzureResourceType(
        type_name="azure_network_security_group",
        arm_type="Microsoft.Network/networkSecurityGroups",
        api_version="2023-09-01",
        id_template=_RG_SCOPE + "/Microsoft.Network/networkSecurityGroups/{name}",
        immutable=_REGIONAL,
    ),
    AzureResourceType(
        type_name="azure_public_ip",
        arm_type="Microsoft.Network/publicIPAddresses",
        api_version="2023-09-01",
        id_template=_RG_SCOPE + "/Microsoft.Network/publicIPAddresses/{name}",
        immutable=(*_REGIONAL, "sku", "properties.publicIPAddressVersion"),
    ),
    AzureResourceType(
        type_name="azure_user_assigned_identity",
        arm_type="Microsoft.ManagedIdentity/userAssignedIdentities",
        api_version="2023-01-31",
        id_template=_RG_SCOPE + "/Microsoft.ManagedIdentity/userAssignedIdentities/{name}",
        immutable=_REGIONAL,
    ),
    AzureResourceType(
        type_name="azure_role_assignment",
        arm_type="Microsoft.Authorization/roleAssignments",
        api_version="2022-04-01",
        id_template="{scope}/providers/Microsoft.Authorization/roleAssignments/{name}",
        immutable=("name", "scope", "properties.roleDefinitionId", "properties.principalId"),
        # ARM rejects a second assignment of the same role to the same principal
        replace_strategy=ReplaceStrategy.DELETE_BEFORE_CREATE,
    ),
    AzureResourceType(
        type_name="azure_log_analytics_workspace",
        arm_type="Microsoft.OperationalInsights/workspaces",
        api_version="2022-10-01",
        id_template=_RG_SCOPE + "/Microsoft.OperationalInsights/workspaces/{name}",
        immutable=_REGIONAL,
    ),
    AzureResourceType(
        type_name="azure_storage_account",
        arm_type="Microsoft.Storage/storageAccounts",
        api_version="2023-01-01",
        id_template=_RG_SCOPE + "/Microsoft.Storage/storageAccounts/{name}",
        immutable=(*_REGIONAL, "properties.isHnsEnabled"),
    ),
    AzureResourceType(
        type_name="azure_key_vault",
        arm_type="Microsoft.KeyVault/vaults",
        api_version="2023-07-01",
        id_template=_RG_SCOPE + "/Microsoft.KeyVault/vaults/{name}",
        immutable=(*_REGIONAL, "properties.tenantId"),
    ),
    AzureResourceType(
        type_name="azure_kubernetes_cluster",
        arm_type="Microsoft.ContainerService/managedClusters",
        api_version="2024-02-01",
        id_template=_RG_SCOPE + "/Microsoft.ContainerService/managedClusters/{name}",
        immutable=(*_REGIONAL, "properties.dnsPrefix", "properties.nodeResourceGroup"),
    ),
)

# Azure normalizes casing and fills defaults server-side
AZURE_NORMALIZATION_RULES: list[NormalizationRule] = [
    NormalizationRule(
        resource_type="azure_*",
        path_pattern="location",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Azure locations are case-insensitive",
    ),
    NormalizationRule(
        resource_type="azure_*",
        path_pattern="sku.name",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="SKU names may have case variations",
    ),
    NormalizationRule(
        resource_type="azure_*",
        path_pattern="sku.tier",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="SKU tiers may have case variations",
    ),
    NormalizationRule(
        resource_type="azure_network_security_group",
        path_pattern="properties.securityRules",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="NSG rules are ordered by priority, not array index",
    ),
    NormalizationRule(
        resource_type="azure_*",
        path_pattern="**.dnsServers",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty DNS servers equals Azure DNS",
    ),
    NormalizationRule(
        resource_type="azure_virtual_network",
        path_pattern="properties.enableDdosProtection",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": False},
        reason="DDoS protection defaults to false",
    ),
    NormalizationRule(
        resource_type="azure_storage_account",
        path_pattern="properties.supportsHttpsTrafficOnly",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": True},
        reason="HTTPS only defaults to true",
    ),
    NormalizationRule(
        resource_type="azure_storage_account",
        path_pattern="properties.minimumTlsVersion",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": "TLS1_2"},
        reason="Minimum TLS defaults to 1.2",
    ),
    NormalizationRule(
        resource_type="azure_log_analytics_workspace",
        path_pattern="properties.retentionInDays",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Retention may be given as string",
    ),
]


def classify_azure_error(error: AzureError, operation: str) -> ProviderError:
    """Map an Azure SDK error to a transient or permanent provider error."""
    if isinstance(error, HttpResponseError):
        status = error.status_code
        message = f"{operation}: {error.message or error}"
        if status is not None and (status in TRANSIENT_STATUS_CODES or status >= 500):
            return TransientProviderError(message, status_code=status)
        return PermanentProviderError(message, status_code=status)
    if isinstance(error, ServiceRequestError | ServiceResponseError):
        return TransientProviderError(f"{operation}: connection error: {error}")
    return PermanentProviderError(f"{operation}: {error}")


def _resource_group_name(resource_id: str) -> str:
    parts = resource_id.strip("/").split("/")
    try:
        return parts[parts.index("resourceGroups") + 1]
    except (ValueError, IndexError):
        raise PermanentProviderError(f"Not a resource group id: {resource_id}") from None


class AzureResourceProvider(ResourceProvider):
    """Provider for the built-in Azure resource types."""

    name = "azure"

    def __init__(
        self,
        subscription_id: str,
        credential: TokenCredential | None = None,
        client: Any | None = None,
        operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS,
        resource_types: tuple[AzureResourceType, ...] = AZURE_RESOURCE_TYPES,
    ) -> None:
        """Initialize the provider.

        Args:
            subscription_id: Target subscription.
            credential: Azure credential (ignored when ``client`` is given).
            client: Pre-built ResourceManagementClient.
            operation_timeout_seconds: Timeout per ARM operation.
            resource_types: Type catalog.
        """
        if client is None:
            if credential is None:
                raise ValueError("Either credential or client is required")
            client = ResourceManagementClient(
                credential=credential,
                subscription_id=subscription_id,
            )
        self._client = client
        self._subscription_id = subscription_id
        self._timeout = operation_timeout_seconds
        self._types = {t.type_name: t for t in resource_types}

    def schemas(self) -> list[ResourceTypeSchema]:
        return [t.schema() for t in self._types.values()]

    def normalization_rules(self) -> list[NormalizationRule]:
        return list(AZURE_NORMALIZATION_RULES)

    def _type(self, resource_type: str) -> AzureResourceType:
        try:
            return self._types[resource_type]
        except KeyError:
            raise PermanentProviderError(f"Unsupported resource type: {resource_type}") from None

    def resource_id(self, resource_type: str, attributes: dict[str, Any]) -> str:
        """Build the ARM resource id from a node's attributes.

        Raises:
            PermanentProviderError: If an id field is missing.
        """
        azure_type = self._type(resource_type)
        missing = [f for f in azure_type.id_fields if not attributes.get(f)]
        if missing:
            raise PermanentProviderError(
                f"{resource_type} requires attribute(s): {', '.join(missing)}"
            )
        values = {f: str(attributes[f]).rstrip("/") for f in azure_type.id_fields}
        return azure_type.id_template.format(subscription_id=self._subscription_id, **values)

    def _body(self, azure_type: AzureResourceType, attributes: dict[str, Any]) -> dict[str, Any]:
        unsupported = sorted(
            set(attributes) - set(azure_type.id_fields) - set(BODY_ATTRIBUTES) - {"name"}
        )
        if unsupported:
            raise PermanentProviderError(
                f"{azure_type.type_name} does not support attribute(s): {', '.join(unsupported)}"
            )
        return {k: attributes[k] for k in BODY_ATTRIBUTES if attributes.get(k) is not None}

    def _generic_resource(self, body: dict[str, Any]) -> GenericResource:
        sku = body.get("sku")
        identity = body.get("identity")
        return GenericResource(
            location=body.get("location"),
            tags=body.get("tags"),
            sku=Sku(**sku) if isinstance(sku, dict) else None,
            kind=body.get("kind"),
            identity=Identity(type=identity["type"]) if isinstance(identity, dict) else None,
            properties=body.get("properties"),
        )

    async def _run(
        self, operation: str, call: Callable[[], Any], read_only: bool = False
    ) -> Any:
        """Run a blocking SDK call (or LRO poller) with timeout.

        A timed-out call keeps running in its executor thread; it cannot be
        interrupted. Only reads are retried after a timeout, so a second PUT
        or DELETE is never sent while the first one may still be in flight.

        Args:
            operation: Description used in errors and logs.
            call: The blocking SDK call.
            read_only: Whether the call has no side effects.

        Raises:
            TransientProviderError: On retryable Azure errors, and on timeout
                of a read.
            PermanentProviderError: On any other Azure error, and on timeout
                of a mutating call.
        """
        loop = asyncio.get_running_loop()
        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, call), timeout=self._timeout
            )
            if hasattr(result, "result") and callable(result.result):
                result = await asyncio.wait_for(
                    loop.run_in_executor(None, result.result), timeout=self._timeout
                )
            return result
        except TimeoutError as e:
            logger.error(
                "Azure operation timed out",
                extra={
                    "operation": operation,
                    "timeout_seconds": self._timeout,
                    "read_only": read_only,
                },
            )
            message = f"{operation}: timed out after {self._timeout}s"
            if read_only:
                raise TransientProviderError(message, status_code=408) from e
            raise PermanentProviderError(
                message + " (the operation may still complete; refresh before retrying)",
                status_code=408,
            ) from e
        except AzureError as e:
            error = classify_azure_error(e, operation)
            logger.warning(
                "Azure operation failed",
                extra={
                    "operation": operation,
                    "status_code": error.status_code,
                    "transient": isinstance(error, TransientProviderError),
                },
            )
            raise error from e

    @staticmethod
    def _outputs(result: Any) -> dict[str, Any]:
        outputs: dict[str, Any] = {}
        properties = getattr(result, "properties", None)
        if isinstance(properties, dict):
            outputs["properties"] = properties
        elif properties is not None and hasattr(properties, "as_dict"):
            outputs["properties"] = properties.as_dict()
        identity = getattr(result, "identity", None)
        if identity is not None and hasattr(identity, "as_dict"):
            outputs["identity"] = identity.as_dict()
        return outputs

    async def _put(
        self, resource_type: str, resource_id: str, attributes: dict[str, Any], verb: str
    ) -> ProviderResult:
        azure_type = self._type(resource_type)
        body = self._body(azure_type, attributes)
        operation = f"{verb} {resource_id}"

        if resource_type == "azure_resource_group":
            group_name = str(attributes["name"])
            result = await self._run(
                operation,
                lambda: self._client.resource_groups.create_or_update(
                    group_name,
                    ResourceGroup(location=body.get("location"), tags=body.get("tags")),
                ),
            )
        else:
            parameters = self._generic_resource(body)
            result = await self._run(
                operation,
                lambda: self._client.resources.begin_create_or_update_by_id(
                    resource_id, azure_type.api_version, parameters
                ),
            )

        provider_id = getattr(result, "id", None) or resource_id
        logger.info(
            "Azure resource applied",
            extra={"operation": verb, "resource_id": provider_id, "type": resource_type},
        )
        return ProviderResult(provider_id=provider_id, outputs=self._outputs(result))

    async def create(self, resource_type: str, attributes: dict[str, Any]) -> ProviderResult:
        resource_id = self.resource_id(resource_type, attributes)
        return await self._put(resource_type, resource_id, attributes, "create")

    async def update(
        self, resource_type: str, provider_id: str, attributes: dict[str, Any]
    ) -> ProviderResult:
        return await self._put(resource_type, provider_id, attributes, "update")

    async def read(self, resource_type: str, provider_id: str) -> ProviderResult | None:
        azure_type = self._type(resource_type)
        try:
            if resource_type == "azure_resource_group":
                group_name = _resource_group_name(provider_id)
                result = await self._run(
                    f"read {provider_id}",
                    lambda: self._client.resource_groups.get(group_name),
                    read_only=True,
                )
            else:
                result = await self._run(
                    f"read {provider_id}",
                    lambda: self._client.resources.get_by_id(provider_id, azure_type.api_version),
                    read_only=True,
                )
        except ProviderError as e:
            if e.status_code == 404:
                return None
            raise
        return ProviderResult(
            provider_id=getattr(result, "id", None) or provider_id,
            outputs=self._outputs(result),
        )

    async def delete(self, resource_type: str, provider_id: str) -> None:
        azure_type = self._type(resource_type)
        try:
            if resource_type == "azure_resource_group":
                group_name = _resource_group_name(provider_id)
                await self._run(
                    f"delete {provider_id}",
                    lambda: self._client.resource_groups.begin_delete(group_name),
                )
            else:
                await self._run(
                    f"delete {provider_id}",
                    lambda: self._client.resources.begin_delete_by_id(
                        provider_id, azure_type.api_version
                    ),
                )
        except ProviderError as e:
            if e.status_code == 404:
                logger.info("Azure resource already gone", extra={"resource_id": provider_id})
                return
            raise
        logger.info("Azure resource deleted", extra={"resource_id": provider_id})
