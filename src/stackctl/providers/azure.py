"""Azure Resource Manager provider.

Resources are managed through the generic resources API by resource id, so
any ARM resource type works once its capability row names an ``apiVersion``.
Template types are ARM types (``Microsoft.Storage/storageAccounts``).

Property mapping:
    Name, Location, Tags, Sku, Kind -> top-level GenericResource fields
    Properties                      -> the resource's ``properties`` body
    anything else                   -> merged into the ``properties`` body

A resource without an explicit name gets one derived from the create's
idempotency token, so ``find`` can locate it by id after a timeout.

SECURITY: Authentication is managed identity only (see security.py).
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
)
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource, Sku

from ..capabilities import CapabilityTable
from ..config import AzureSettings
from ..errors import ProviderError, ResourceNotFound
from ..security import get_managed_identity_credential
from .base import CreateResult, ResourceProvider

logger = logging.getLogger(__name__)

RESERVED_PROPERTIES = ("Name", "Location", "Tags", "Sku", "Kind", "Properties")
TOKEN_TAG = "stackctl-token"

# 408 and 429 plus server errors are worth retrying
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

VALID_ARM_TYPE_PATTERN = r"^[A-Za-z0-9.]+/[A-Za-z0-9]+(/[A-Za-z0-9]+)*$"


def _translate(error: AzureError, action: str, target: str) -> ProviderError:
    """Map an Azure SDK error onto the provider error taxonomy."""
    if isinstance(error, ResourceNotFoundError):
        return ResourceNotFound(target)
    if isinstance(error, HttpResponseError):
        status = error.status_code
        odata = getattr(error, "error", None)
        code = getattr(odata, "code", None)
        return ProviderError(
            f"Azure API error during {action} of {target} ({status}): {error.message}",
            transient=status in TRANSIENT_STATUS_CODES,
            code=code or str(status),
        )
    if isinstance(error, ServiceRequestError):
        return ProviderError(f"Azure request failed during {action} of {target}: {error}", transient=True)
    return ProviderError(f"Azure error during {action} of {target}: {error}")


class AzureResourceProvider(ResourceProvider):
    """Provider backed by ``ResourceManagementClient.resources``."""

    name = "azure"

    def __init__(
        self,
        settings: AzureSettings,
        capabilities: CapabilityTable | None = None,
        *,
        credential: TokenCredential | None = None,
        client: ResourceManagementClient | None = None,
    ) -> None:
        super().__init__(capabilities)
        self._settings = settings
        if client is None:
            credential = credential or get_managed_identity_credential(settings.client_id)
            client = ResourceManagementClient(
                credential=credential,
                subscription_id=settings.subscription_id,
            )
        self._client = client

    # -------------------------------------------------------------------------
    # Provider operations
    # -------------------------------------------------------------------------

    def create(
        self, resource_type: str, properties: dict[str, Any], *, token: str | None = None
    ) -> CreateResult:
        resource_id = self._resource_id(resource_type, properties, token)
        body = self._body(resource_type, properties, token)
        try:
            existing = self._client.resources.get_by_id(resource_id, self._api_version(resource_type))
        except ResourceNotFoundError:
            pass
        except AzureError as e:
            raise _translate(e, "create", resource_id) from e
        else:
            # A retry of a create whose response was lost finds its own resource
            if token is not None and (existing.tags or {}).get(TOKEN_TAG) == token:
                logger.info(
                    "Azure resource already created by this operation",
                    extra={"resource_type": resource_type, "resource_id": resource_id},
                )
                return CreateResult(resource_id, self._attributes(resource_type, existing))
            raise ProviderError(f"{resource_type} '{resource_id}' already exists", code="AlreadyExists")

        resource = self._put(resource_type, resource_id, body, "create")
        logger.info(
            "Azure resource created",
            extra={"resource_type": resource_type, "resource_id": resource_id},
        )
        return CreateResult(resource_id, self._attributes(resource_type, resource))

    def update(
        self, physical_id: str, resource_type: str, properties: dict[str, Any]
    ) -> dict[str, Any]:
        existing = self._get(physical_id, resource_type, "update")
        token = (existing.tags or {}).get(TOKEN_TAG)
        resource = self._put(resource_type, physical_id, self._body(resource_type, properties, token), "update")
        return self._attributes(resource_type, resource)

    def delete(self, physical_id: str, resource_type: str) -> None:
        try:
            poller = self._client.resources.begin_delete_by_id(
                physical_id, self._api_version(resource_type)
            )
            poller.result()
        except ResourceNotFoundError:
            return
        except AzureError as e:
            raise _translate(e, "delete", physical_id) from e
        logger.info(
            "Azure resource deleted",
            extra={"resource_type": resource_type, "resource_id": physical_id},
        )

    def describe(self, physical_id: str, resource_type: str) -> dict[str, Any]:
        return self._attributes(resource_type, self._get(physical_id, resource_type, "describe"))

    def find(
        self, resource_type: str, token: str, properties: dict[str, Any]
    ) -> CreateResult | None:
        resource_id = self._resource_id(resource_type, properties, token)
        try:
            resource = self._get(resource_id, resource_type, "find")
        except ResourceNotFound:
            return None
        if (resource.tags or {}).get(TOKEN_TAG) != token:
            return None
        return CreateResult(resource_id, self._attributes(resource_type, resource))

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _api_version(self, resource_type: str) -> str:
        row = self.capabilities(resource_type)
        if not row.api_version:
            raise ProviderError(
                f"No apiVersion configured for {resource_type}; add it to the capability table",
                code="MissingApiVersion",
            )
        return row.api_version

    def _resource_name(self, resource_type: str, properties: dict[str, Any], token: str | None) -> str:
        row = self.capabilities(resource_type)
        for key in (row.name_property, "Name"):
            if key and properties.get(key):
                return str(properties[key])
        if token is None:
            raise ProviderError(f"{resource_type} needs a Name or an idempotency token")
        digest = hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]
        leaf = re.sub(r"[^a-z0-9]", "", resource_type.rsplit("/", 1)[-1].lower())[:10]
        return f"{leaf}{digest}"

    def _resource_id(self, resource_type: str, properties: dict[str, Any], token: str | None) -> str:
        if not re.match(VALID_ARM_TYPE_PATTERN, resource_type):
            raise ProviderError(
                f"'{resource_type}' is not an ARM resource type (Namespace/type)",
                code="InvalidResourceType",
            )
        name = self._resource_name(resource_type, properties, token)
        return (
            f"/subscriptions/{self._settings.subscription_id}"
            f"/resourceGroups/{self._settings.resource_group}"
            f"/providers/{resource_type}/{name}"
        )

    def _body(
        self, resource_type: str, properties: dict[str, Any], token: str | None
    ) -> GenericResource:
        body = dict(properties.get("Properties") or {})
        for key, value in properties.items():
            if key not in RESERVED_PROPERTIES and key != self.capabilities(resource_type).name_property:
                body[key] = value

        tags = dict(properties.get("Tags") or {})
        if token:
            tags[TOKEN_TAG] = token

        sku = properties.get("Sku")
        return GenericResource(
            location=properties.get("Location") or self._settings.location or None,
            tags=tags or None,
            sku=Sku(**{k.lower(): v for k, v in sku.items()}) if isinstance(sku, dict) else None,
            kind=properties.get("Kind"),
            properties=body or None,
        )

    def _put(
        self, resource_type: str, resource_id: str, body: GenericResource, action: str
    ) -> GenericResource:
        try:
            poller = self._client.resources.begin_create_or_update_by_id(
                resource_id, self._api_version(resource_type), body
            )
            return poller.result()
        except AzureError as e:
            raise _translate(e, action, resource_id) from e

    def _get(self, resource_id: str, resource_type: str, action: str) -> GenericResource:
        try:
            return self._client.resources.get_by_id(resource_id, self._api_version(resource_type))
        except AzureError as e:
            raise _translate(e, action, resource_id) from e

    def _attributes(self, resource_type: str, resource: GenericResource) -> dict[str, Any]:
        attributes: dict[str, Any] = {
            "Id": resource.id,
            "Name": resource.name,
        }
        if resource.location:
            attributes["Location"] = resource.location
        body = resource.properties if isinstance(resource.properties, dict) else {}
        for name in self.capabilities(resource_type).attributes:
            if name in attributes:
                continue
            key = name[:1].lower() + name[1:]
            if key in body:
                attributes[name] = body[key]
            elif name in body:
                attributes[name] = body[name]
        return attributes
