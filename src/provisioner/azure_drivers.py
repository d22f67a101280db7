"""Azure drivers.

Thin adapters from engine resources to Azure Resource Manager:

- azure.resource_group: resource groups via `resource_groups`
- azure.<alias> / azure.resource: any ARM resource via the generic
  `resources.*_by_id` operations, addressed by provider type and name
- azure.container_sas: time-bounded container SAS, signed locally

All SDK calls are synchronous; they run in the default executor so that
concurrent appliers in a batch do not block each other. Timeouts and
retries are applied by the Driver base class.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, HttpResponseError, ResourceNotFoundError
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource, ResourceGroup, Sku
from azure.storage.blob import ContainerSasPermissions, generate_container_sas

from .credentials import CredentialWindow
from .drivers import Driver, DriverError, DriverRegistry, NamingRule, RetryPolicy, run_blocking
from .models import Resource

logger = logging.getLogger(__name__)

# HTTP statuses worth retrying: timeouts, throttling, transient server errors
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

MANAGED_BY_TAG = "managedBy"
MANAGED_BY_VALUE = "azure-provisioner"

RESOURCE_GROUP_NAMING = NamingRule(
    pattern=r"[-\w.()]*[-\w()]",
    max_length=90,
    description="letters, digits, '-', '_', '.', '(' and ')', not ending in '.'",
)
STORAGE_ACCOUNT_NAMING = NamingRule(
    pattern=r"[a-z0-9]+",
    min_length=3,
    max_length=24,
    description="lowercase letters and digits only",
)
FUNCTION_APP_NAMING = NamingRule(
    pattern=r"[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?",
    min_length=2,
    max_length=60,
    description="letters, digits and hyphens, not starting or ending with a hyphen",
)
COSMOSDB_ACCOUNT_NAMING = NamingRule(
    pattern=r"[a-z0-9](?:[a-z0-9-]*[a-z0-9])?",
    min_length=3,
    max_length=44,
    description="lowercase letters, digits and hyphens",
)
AUTOMATION_ACCOUNT_NAMING = NamingRule(
    pattern=r"[A-Za-z][A-Za-z0-9-]*[A-Za-z0-9]",
    min_length=6,
    max_length=50,
    description="starts with a letter, letters, digits and hyphens",
)
GENERAL_NAMING = NamingRule(
    pattern=r"[A-Za-z0-9][-\w.]*[\w]",
    max_length=80,
    description="letters, digits, '-', '_' and '.'",
)


@dataclass(frozen=True)
class ArmKind:
    """Provider type, default API version and naming rule for an ARM kind."""

    resource_type: str | None
    api_version: str | None
    naming: NamingRule | None = None


# Kind -> ARM provider type. `azure.resource` takes type/apiVersion from attributes.
ARM_KINDS: dict[str, ArmKind] = {
    "azure.resource": ArmKind(None, None),
    "azure.storage_account": ArmKind(
        "Microsoft.Storage/storageAccounts", "2023-01-01", STORAGE_ACCOUNT_NAMING
    ),
    "azure.storage_container": ArmKind(
        "Microsoft.Storage/storageAccounts/blobServices/containers", "2023-01-01"
    ),
    "azure.cosmosdb_account": ArmKind(
        "Microsoft.DocumentDB/databaseAccounts", "2023-04-15", COSMOSDB_ACCOUNT_NAMING
    ),
    "azure.app_service_plan": ArmKind("Microsoft.Web/serverfarms", "2022-09-01", GENERAL_NAMING),
    "azure.function_app": ArmKind("Microsoft.Web/sites", "2022-09-01", FUNCTION_APP_NAMING),
    "azure.virtual_network": ArmKind(
        "Microsoft.Network/virtualNetworks", "2023-05-01", GENERAL_NAMING
    ),
    "azure.subnet": ArmKind("Microsoft.Network/virtualNetworks/subnets", "2023-05-01"),
    "azure.public_ip": ArmKind(
        "Microsoft.Network/publicIPAddresses", "2023-05-01", GENERAL_NAMING
    ),
    "azure.network_security_group": ArmKind(
        "Microsoft.Network/networkSecurityGroups", "2023-05-01", GENERAL_NAMING
    ),
    "azure.network_interface": ArmKind(
        "Microsoft.Network/networkInterfaces", "2023-05-01", GENERAL_NAMING
    ),
    "azure.virtual_machine": ArmKind(
        "Microsoft.Compute/virtualMachines", "2023-03-01", GENERAL_NAMING
    ),
    "azure.automation_account": ArmKind(
        "Microsoft.Automation/automationAccounts", "2022-08-08", AUTOMATION_ACCOUNT_NAMING
    ),
}


def translate_azure_error(error: AzureError, operation: str, resource: Resource) -> DriverError:
    """Map an Azure SDK error onto a DriverError with a retryable flag."""
    if isinstance(error, HttpResponseError):
        status = error.status_code
        retryable = status in RETRYABLE_STATUS_CODES
        return DriverError(
            f"{operation} of '{resource.name}' failed: Azure API error ({status}): {error.message}",
            retryable=retryable,
        )
    # Connection resets, DNS failures and similar transport errors
    return DriverError(f"{operation} of '{resource.name}' failed: Azure error: {error}", retryable=True)


def build_resource_id(
    subscription_id: str, resource_group: str, resource_type: str, name: str
) -> str:
    """Build an ARM resource ID, interleaving child types and names.

    "Microsoft.Storage/storageAccounts/blobServices/containers" with name
    "acct/default/data" yields
    ".../providers/Microsoft.Storage/storageAccounts/acct/blobServices/default/containers/data".

    Raises:
        DriverError: If the number of name segments does not match the type.
    """
    namespace, _, types_part = resource_type.partition("/")
    types = types_part.split("/") if types_part else []
    names = name.split("/")
    if not types or len(types) != len(names):
        raise DriverError(
            f"Name '{name}' does not match resource type '{resource_type}' "
            f"({len(types)} segment(s) expected)"
        )
    path = "/".join(f"{t}/{n}" for t, n in zip(types, names, strict=True))
    return (
        f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
        f"/providers/{namespace}/{path}"
    )


def _require(attributes: Mapping[str, Any], key: str, resource: Resource) -> Any:
    value = attributes.get(key)
    if value is None or value == "":
        raise DriverError(f"Resource '{resource.name}' ({resource.kind}) requires attribute '{key}'")
    return value


def _is_subset(desired: Any, current: Any) -> bool:
    """Whether every key/value in `desired` is present in `current`."""
    if isinstance(desired, Mapping):
        if not isinstance(current, Mapping):
            return False
        return all(key in current and _is_subset(value, current[key]) for key, value in desired.items())
    if isinstance(desired, list):
        return isinstance(current, list) and len(desired) == len(current) and all(
            _is_subset(d, c) for d, c in zip(desired, current, strict=True)
        )
    return desired == current


def _managed_tags(attributes: Mapping[str, Any]) -> dict[str, str]:
    tags = {str(k): str(v) for k, v in (attributes.get("tags") or {}).items()}
    tags.setdefault(MANAGED_BY_TAG, MANAGED_BY_VALUE)
    return tags


class _AzureDriver(Driver):
    """Shared plumbing for drivers backed by ResourceManagementClient."""

    def __init__(self, client: ResourceManagementClient, retry: RetryPolicy | None = None) -> None:
        super().__init__(retry)
        self._client = client

    async def _call(self, operation: str, resource: Resource, func: Any, *args: Any) -> Any:
        try:
            return await run_blocking(func, *args)
        except ResourceNotFoundError:
            raise
        except AzureError as e:
            logger.error(
                f"Azure API error during {operation}",
                extra={
                    "resource": resource.name,
                    "kind": resource.kind,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise translate_azure_error(e, operation, resource) from e

    async def _wait(self, operation: str, resource: Resource, poller: Any) -> Any:
        return await self._call(operation, resource, poller.result)


class ResourceGroupDriver(_AzureDriver):
    """Driver for azure.resource_group."""

    naming = RESOURCE_GROUP_NAMING

    @staticmethod
    def _outputs(group: Any) -> dict[str, Any]:
        return {
            "id": group.id,
            "name": group.name,
            "location": group.location,
            "tags": dict(group.tags or {}),
        }

    async def read(self, resource: Resource, attributes: Mapping[str, Any]) -> dict[str, Any] | None:
        name = _require(attributes, "name", resource)
        groups = self._client.resource_groups
        if not await self._call("read", resource, groups.check_existence, name):
            return None
        return self._outputs(await self._call("read", resource, groups.get, name))

    async def create(self, resource: Resource, attributes: Mapping[str, Any]) -> dict[str, Any]:
        name = _require(attributes, "name", resource)
        parameters = ResourceGroup(
            location=_require(attributes, "location", resource),
            tags=_managed_tags(attributes),
        )
        group = await self._call(
            "create", resource, self._client.resource_groups.create_or_update, name, parameters
        )
        logger.info("Resource group ensured", extra={"resource": resource.name, "group_name": name})
        return self._outputs(group)

    async def update(
        self,
        resource: Resource,
        attributes: Mapping[str, Any],
        current: Mapping[str, Any],
    ) -> dict[str, Any]:
        location = _require(attributes, "location", resource)
        if str(current.get("location", "")).lower() != str(location).lower():
            raise DriverError(
                f"Resource group '{current.get('name')}' exists in '{current.get('location')}', "
                f"cannot move it to '{location}'"
            )
        return await self.create(resource, attributes)

    def needs_update(self, attributes: Mapping[str, Any], current: Mapping[str, Any]) -> bool:
        return _managed_tags(attributes) != current.get("tags", {}) or (
            str(attributes.get("location", "")).lower() != str(current.get("location", "")).lower()
        )

    async def delete(self, resource: Resource, attributes: Mapping[str, Any]) -> None:
        name = _require(attributes, "name", resource)
        poller = await self._call("delete", resource, self._client.resource_groups.begin_delete, name)
        await self._wait("delete", resource, poller)


class ArmResourceDriver(_AzureDriver):
    """Generic ARM resource driver.

    Attributes:
        name: Resource name ("parent/child" for child resources)
        resource_group: Resource group the resource lives in
        location, properties, sku, kind, tags: ARM resource body
        type / api_version: Only for `azure.resource`; override the kind's defaults
    """

    def __init__(
        self,
        client: ResourceManagementClient,
        subscription_id: str,
        arm_kind: ArmKind,
        retry: RetryPolicy | None = None,
    ) -> None:
        super().__init__(client, retry)
        self._subscription_id = subscription_id
        self._arm_kind = arm_kind
        self.naming = arm_kind.naming

    def _target(self, resource: Resource, attributes: Mapping[str, Any]) -> tuple[str, str]:
        resource_type = attributes.get("type") or self._arm_kind.resource_type
        api_version = attributes.get("api_version") or self._arm_kind.api_version
        if not resource_type or not api_version:
            raise DriverError(
                f"Resource '{resource.name}' needs 'type' and 'api_version' attributes"
            )
        resource_id = build_resource_id(
            attributes.get("subscription_id") or self._subscription_id,
            _require(attributes, "resource_group", resource),
            resource_type,
            _require(attributes, "name", resource),
        )
        return resource_id, api_version

    @staticmethod
    def _outputs(generic: Any) -> dict[str, Any]:
        properties = dict(generic.properties or {})
        outputs: dict[str, Any] = {
            "id": generic.id,
            "name": generic.name,
            "type": generic.type,
            "location": generic.location,
            "properties": properties,
            "tags": dict(generic.tags or {}),
        }

        # Well-known endpoints flattened for templates
        endpoints = properties.get("primaryEndpoints") or {}
        for service in ("blob", "web", "table", "queue", "file"):
            endpoint = endpoints.get(service)
            if endpoint:
                outputs[f"primary_{service}_endpoint"] = endpoint
                outputs[f"primary_{service}_host"] = urlparse(endpoint).netloc
        if properties.get("defaultHostName"):
            outputs["default_hostname"] = properties["defaultHostName"]
        if properties.get("documentEndpoint"):
            outputs["endpoint"] = properties["documentEndpoint"]
        if properties.get("ipAddress"):
            outputs["ip_address"] = properties["ipAddress"]
        return outputs

    def _body(self, attributes: Mapping[str, Any]) -> GenericResource:
        sku = attributes.get("sku")
        if isinstance(sku, str):
            sku = Sku(name=sku)
        elif isinstance(sku, Mapping):
            sku = Sku(**sku)
        return GenericResource(
            location=attributes.get("location"),
            properties=dict(attributes.get("properties") or {}),
            sku=sku,
            kind=attributes.get("kind"),
            tags=_managed_tags(attributes),
        )

    async def read(self, resource: Resource, attributes: Mapping[str, Any]) -> dict[str, Any] | None:
        resource_id, api_version = self._target(resource, attributes)
        try:
            generic = await self._call(
                "read", resource, self._client.resources.get_by_id, resource_id, api_version
            )
        except ResourceNotFoundError:
            return None
        return self._outputs(generic)

    async def create(self, resource: Resource, attributes: Mapping[str, Any]) -> dict[str, Any]:
        resource_id, api_version = self._target(resource, attributes)
        poller = await self._call(
            "create",
            resource,
            self._client.resources.begin_create_or_update_by_id,
            resource_id,
            api_version,
            self._body(attributes),
        )
        generic = await self._wait("create", resource, poller)
        logger.info(
            "ARM resource ensured",
            extra={"resource": resource.name, "kind": resource.kind, "resource_id": resource_id},
        )
        return self._outputs(generic)

    def needs_update(self, attributes: Mapping[str, Any], current: Mapping[str, Any]) -> bool:
        desired_properties = attributes.get("properties") or {}
        if not _is_subset(desired_properties, current.get("properties", {})):
            return True
        return not _is_subset(_managed_tags(attributes), current.get("tags", {}))

    async def delete(self, resource: Resource, attributes: Mapping[str, Any]) -> None:
        resource_id, api_version = self._target(resource, attributes)
        poller = await self._call(
            "delete",
            resource,
            self._client.resources.begin_delete_by_id,
            resource_id,
            api_version,
        )
        await self._wait("delete", resource, poller)


@dataclass(frozen=True)
class _IssuedToken:
    fingerprint: str
    window: CredentialWindow
    outputs: dict[str, Any]


class ContainerSasDriver(Driver):
    """Signs a read/list SAS for a blob container.

    Attributes:
        account_name: Storage account name
        account_key: Storage account key (pass as ${secret.NAME})
        container: Container name
        window: {credentialWindow: {...}} computed at apply time
        permissions: SAS permission string (default "rl")

    Signing is local, so the only idempotency concern is output stability:
    re-applying with unchanged inputs returns the token already issued in
    this process as long as its window covers the start of the newly
    requested one. `token` and `sas` are masked in persisted records.
    """

    naming = None
    sensitive_outputs = frozenset({"token", "sas"})

    def __init__(self, retry: RetryPolicy | None = None) -> None:
        super().__init__(retry)
        self._issued: dict[str, _IssuedToken] = {}

    @staticmethod
    def _fingerprint(attributes: Mapping[str, Any]) -> str:
        material = "\x1f".join(
            str(attributes.get(key, ""))
            for key in ("account_name", "account_key", "container", "permissions")
        )
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    async def read(self, resource: Resource, attributes: Mapping[str, Any]) -> dict[str, Any] | None:
        issued = self._issued.get(resource.name)
        if issued is None or issued.fingerprint != self._fingerprint(attributes):
            return None
        # Judged at the start of the window requested by this apply
        requested = attributes.get("window")
        if not isinstance(requested, CredentialWindow):
            return None
        if not issued.window.is_valid_at(requested.start):
            return None
        return dict(issued.outputs)

    async def create(self, resource: Resource, attributes: Mapping[str, Any]) -> dict[str, Any]:
        credential_window = _require(attributes, "window", resource)
        if not isinstance(credential_window, CredentialWindow):
            raise DriverError(
                f"Resource '{resource.name}': 'window' must be a credentialWindow expression"
            )
        container = _require(attributes, "container", resource)
        try:
            token = generate_container_sas(
                account_name=_require(attributes, "account_name", resource),
                container_name=container,
                account_key=_require(attributes, "account_key", resource),
                permission=ContainerSasPermissions.from_string(attributes.get("permissions") or "rl"),
                start=credential_window.start,
                expiry=credential_window.expiry,
                protocol="https",
            )
        except (ValueError, TypeError) as e:
            raise DriverError(f"Could not sign SAS for '{resource.name}': {e}") from e

        outputs = {
            "container": container,
            "token": token,
            "sas": f"?{token}",
            "start": credential_window.start_text,
            "expiry": credential_window.expiry_text,
        }
        self._issued[resource.name] = _IssuedToken(
            self._fingerprint(attributes), credential_window, outputs
        )
        logger.info(
            "Container SAS issued",
            extra={
                "resource": resource.name,
                "container": container,
                "expiry": credential_window.expiry_text,
            },
        )
        return dict(outputs)

    async def update(
        self,
        resource: Resource,
        attributes: Mapping[str, Any],
        current: Mapping[str, Any],
    ) -> dict[str, Any]:
        return await self.create(resource, attributes)

    async def delete(self, resource: Resource, attributes: Mapping[str, Any]) -> None:
        # A SAS without a stored access policy cannot be revoked, only forgotten
        self._issued.pop(resource.name, None)


def register_azure_drivers(
    registry: DriverRegistry,
    credential: TokenCredential,
    subscription_id: str,
    retry: RetryPolicy | None = None,
) -> None:
    """Register the resource group, ARM and SAS drivers on a registry."""
    client = ResourceManagementClient(credential=credential, subscription_id=subscription_id)
    registry.register("azure.resource_group", ResourceGroupDriver(client, retry))
    for kind, arm_kind in ARM_KINDS.items():
        registry.register(kind, ArmResourceDriver(client, subscription_id, arm_kind, retry))
    registry.register("azure.container_sas", ContainerSasDriver(retry))
