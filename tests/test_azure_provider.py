"""Tests for the Azure Resource Manager provider."""

from __future__ import annotations

import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
)
from azure.mgmt.resource.resources.models import GenericResource, ResourceGroup

from converge.azure_provider import (
    AZURE_RESOURCE_TYPES,
    AzureResourceProvider,
    classify_azure_error,
)
from converge.models import ReplaceStrategy
from converge.provider import PermanentProviderError, TransientProviderError

SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"
RG_ID = f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg-core"
VNET_ID = f"{RG_ID}/providers/Microsoft.Network/virtualNetworks/vnet-hub"


def _http_error(status: int, message: str = "failed") -> HttpResponseError:
    error_class = ResourceNotFoundError if status == 404 else HttpResponseError
    error = error_class(message=message)
    error.status_code = status
    return error


def _poller(result: object) -> MagicMock:
    poller = MagicMock()
    poller.result.return_value = result
    return poller


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def provider(client: MagicMock) -> AzureResourceProvider:
    return AzureResourceProvider(SUBSCRIPTION_ID, client=client)


class TestResourceTypes:
    """Tests for the Azure type catalog."""

    def test_id_fields(self) -> None:
        """Test that id fields come from the id template."""
        types = {t.type_name: t for t in AZURE_RESOURCE_TYPES}

        assert types["azure_virtual_network"].id_fields == ("resource_group_name", "name")
        assert types["azure_subnet"].id_fields == ("virtual_network_id", "name")
        assert types["azure_resource_group"].id_fields == ("name",)

    def test_schemas(self, provider: AzureResourceProvider) -> None:
        """Test that immutables and forced strategies are declared."""
        schemas = {s.type_name: s for s in provider.schemas()}

        assert schemas["azure_role_assignment"].replace_strategy == (
            ReplaceStrategy.DELETE_BEFORE_CREATE
        )
        assert schemas["azure_virtual_network"].is_immutable("location")
        assert not schemas["azure_virtual_network"].is_immutable("tags")
        assert schemas["azure_kubernetes_cluster"].is_immutable("properties.dnsPrefix")

    def test_requires_credential_or_client(self) -> None:
        """Test that a provider needs a way to reach ARM."""
        with pytest.raises(ValueError):
            AzureResourceProvider(SUBSCRIPTION_ID)


class TestResourceId:
    """Tests for resource id construction."""

    def test_resource_group_scoped(self, provider: AzureResourceProvider) -> None:
        """Test an id built from the resource group and name."""
        resource_id = provider.resource_id(
            "azure_virtual_network", {"name": "vnet-hub", "resource_group_name": "rg-core"}
        )

        assert resource_id == VNET_ID

    def test_parent_scoped(self, provider: AzureResourceProvider) -> None:
        """Test an id built from a parent resource id."""
        resource_id = provider.resource_id(
            "azure_subnet", {"name": "snet-app", "virtual_network_id": VNET_ID + "/"}
        )

        assert resource_id == f"{VNET_ID}/subnets/snet-app"

    def test_missing_fields(self, provider: AzureResourceProvider) -> None:
        """Test that missing id fields are a permanent error."""
        with pytest.raises(PermanentProviderError, match="resource_group_name"):
            provider.resource_id("azure_virtual_network", {"name": "vnet-hub"})

    def test_unsupported_type(self, provider: AzureResourceProvider) -> None:
        """Test that unknown types are a permanent error."""
        with pytest.raises(PermanentProviderError, match="Unsupported resource type"):
            provider.resource_id("azure_toaster", {"name": "x"})


class TestClassifyAzureError:
    """Tests for classify_azure_error."""

    @pytest.mark.parametrize(
        ("status", "transient"),
        [(400, False), (403, False), (404, False), (409, True), (429, True), (503, True)],
    )
    def test_http_status(self, status: int, transient: bool) -> None:
        """Test classification by HTTP status."""
        error = classify_azure_error(_http_error(status, "nope"), "create x")

        assert isinstance(error, TransientProviderError) is transient
        assert isinstance(error, PermanentProviderError) is not transient
        assert error.status_code == status
        assert error.message == "create x: nope"

    def test_connection_error(self) -> None:
        """Test that connection failures are transient."""
        error = classify_azure_error(ServiceRequestError("reset"), "read x")

        assert isinstance(error, TransientProviderError)
        assert error.status_code is None

    def test_other_error(self) -> None:
        """Test that other SDK errors are permanent."""
        assert isinstance(
            classify_azure_error(AzureError("weird"), "delete x"), PermanentProviderError
        )


class TestAzureOperations:
    """Tests for create, read, update and delete against a mocked client."""

    @pytest.mark.asyncio
    async def test_create_generic_resource(
        self, provider: AzureResourceProvider, client: MagicMock
    ) -> None:
        """Test that resources are PUT by id with the type's API version."""
        client.resources.begin_create_or_update_by_id.return_value = _poller(
            SimpleNamespace(id=VNET_ID, properties={"provisioningState": "Succeeded"})
        )

        result = await provider.create(
            "azure_virtual_network",
            {
                "name": "vnet-hub",
                "resource_group_name": "rg-core",
                "location": "westeurope",
                "tags": {"env": "prod"},
                "properties": {"addressSpace": {"addressPrefixes": ["10.0.0.0/16"]}},
            },
        )

        assert result.provider_id == VNET_ID
        assert result.outputs == {"properties": {"provisioningState": "Succeeded"}}
        call = client.resources.begin_create_or_update_by_id.call_args
        resource_id, api_version, body = call.args
        assert (resource_id, api_version) == (VNET_ID, "2023-09-01")
        assert isinstance(body, GenericResource)
        assert body.location == "westeurope"
        assert body.tags == {"env": "prod"}
        assert body.properties == {"addressSpace": {"addressPrefixes": ["10.0.0.0/16"]}}

    @pytest.mark.asyncio
    async def test_create_with_sku(
        self, provider: AzureResourceProvider, client: MagicMock
    ) -> None:
        """Test that sku mappings become SDK models."""
        client.resources.begin_create_or_update_by_id.return_value = _poller(
            SimpleNamespace(id="/x", properties=None)
        )

        await provider.create(
            "azure_public_ip",
            {
                "name": "pip",
                "resource_group_name": "rg-core",
                "location": "westeurope",
                "sku": {"name": "Standard"},
            },
        )

        body = client.resources.begin_create_or_update_by_id.call_args.args[2]
        assert body.sku.name == "Standard"

    @pytest.mark.asyncio
    async def test_create_resource_group(
        self, provider: AzureResourceProvider, client: MagicMock
    ) -> None:
        """Test that resource groups use the resource group operations."""
        client.resource_groups.create_or_update.return_value = SimpleNamespace(
            id=RG_ID, properties=None
        )

        result = await provider.create(
            "azure_resource_group", {"name": "rg-core", "location": "westeurope"}
        )

        assert result.provider_id == RG_ID
        name, group = client.resource_groups.create_or_update.call_args.args
        assert name == "rg-core"
        assert isinstance(group, ResourceGroup)
        assert group.location == "westeurope"

    @pytest.mark.asyncio
    async def test_unsupported_attribute(self, provider: AzureResourceProvider) -> None:
        """Test that attributes outside the ARM body are rejected."""
        with pytest.raises(PermanentProviderError, match="colour"):
            await provider.create(
                "azure_virtual_network",
                {"name": "vnet-hub", "resource_group_name": "rg-core", "colour": "blue"},
            )

    @pytest.mark.asyncio
    async def test_update_uses_provider_id(
        self, provider: AzureResourceProvider, client: MagicMock
    ) -> None:
        """Test that updates PUT to the recorded id."""
        client.resources.begin_create_or_update_by_id.return_value = _poller(
            SimpleNamespace(id=VNET_ID, properties={})
        )

        await provider.update(
            "azure_virtual_network",
            VNET_ID,
            {"name": "vnet-hub", "resource_group_name": "rg-core", "tags": {"a": "b"}},
        )

        assert client.resources.begin_create_or_update_by_id.call_args.args[0] == VNET_ID

    @pytest.mark.asyncio
    async def test_read(self, provider: AzureResourceProvider, client: MagicMock) -> None:
        """Test that read returns the current outputs."""
        client.resources.get_by_id.return_value = SimpleNamespace(
            id=VNET_ID, properties={"provisioningState": "Succeeded"}
        )

        result = await provider.read("azure_virtual_network", VNET_ID)

        assert result.provider_id == VNET_ID
        client.resources.get_by_id.assert_called_once_with(VNET_ID, "2023-09-01")

    @pytest.mark.asyncio
    async def test_read_missing(self, provider: AzureResourceProvider, client: MagicMock) -> None:
        """Test that a 404 on read means the object is gone."""
        client.resources.get_by_id.side_effect = _http_error(404, "not found")

        assert await provider.read("azure_virtual_network", VNET_ID) is None

    @pytest.mark.asyncio
    async def test_read_resource_group(
        self, provider: AzureResourceProvider, client: MagicMock
    ) -> None:
        """Test that resource groups are read by name."""
        client.resource_groups.get.return_value = SimpleNamespace(id=RG_ID, properties=None)

        await provider.read("azure_resource_group", RG_ID)

        client.resource_groups.get.assert_called_once_with("rg-core")

    @pytest.mark.asyncio
    async def test_read_throttled(
        self, provider: AzureResourceProvider, client: MagicMock
    ) -> None:
        """Test that throttling surfaces as a transient error."""
        client.resources.get_by_id.side_effect = _http_error(429, "slow down")

        with pytest.raises(TransientProviderError) as exc_info:
            await provider.read("azure_virtual_network", VNET_ID)

        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_delete(self, provider: AzureResourceProvider, client: MagicMock) -> None:
        """Test that delete waits for the poller."""
        poller = _poller(None)
        client.resources.begin_delete_by_id.return_value = poller

        await provider.delete("azure_virtual_network", VNET_ID)

        client.resources.begin_delete_by_id.assert_called_once_with(VNET_ID, "2023-09-01")
        poller.result.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_delete_missing_is_success(
        self, provider: AzureResourceProvider, client: MagicMock
    ) -> None:
        """Test that deleting an object that is already gone succeeds."""
        client.resource_groups.begin_delete.side_effect = _http_error(404)

        await provider.delete("azure_resource_group", RG_ID)

        client.resource_groups.begin_delete.assert_called_once_with("rg-core")

    @pytest.mark.asyncio
    async def test_delete_conflict(
        self, provider: AzureResourceProvider, client: MagicMock
    ) -> None:
        """Test that a conflict on delete is retried by the caller."""
        client.resources.begin_delete_by_id.side_effect = _http_error(409, "in use")

        with pytest.raises(TransientProviderError):
            await provider.delete("azure_virtual_network", VNET_ID)

    @pytest.mark.asyncio
    async def test_read_timeout(self, client: MagicMock) -> None:
        """Test that a hung read times out as a transient error."""
        provider = AzureResourceProvider(
            SUBSCRIPTION_ID, client=client, operation_timeout_seconds=0.05
        )
        client.resources.get_by_id.side_effect = lambda *args: time.sleep(0.5)

        with pytest.raises(TransientProviderError) as exc_info:
            await provider.read("azure_virtual_network", VNET_ID)

        assert exc_info.value.status_code == 408

    @pytest.mark.asyncio
    async def test_mutating_timeout_is_not_retried(self, client: MagicMock) -> None:
        """Test that a hung PUT times out as a permanent error."""
        provider = AzureResourceProvider(
            SUBSCRIPTION_ID, client=client, operation_timeout_seconds=0.05
        )
        client.resources.begin_create_or_update_by_id.side_effect = (
            lambda *args: time.sleep(0.5)
        )

        with pytest.raises(PermanentProviderError) as exc_info:
            await provider.create(
                "azure_virtual_network",
                {"name": "vnet-hub", "resource_group_name": "rg-core", "location": "westeurope"},
            )

        assert exc_info.value.status_code == 408
        assert "may still complete" in exc_info.value.message
        client.resources.begin_create_or_update_by_id.assert_called_once()
